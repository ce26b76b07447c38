"""
File IO helpers with atomic replace and bounded retries.

Writes go to a temporary file in the destination directory, are fsynced and
then renamed over the live file with os.replace, so readers only ever see a
complete old or complete new file.
"""

import hashlib
import logging
import os
import uuid
from pathlib import Path

from tenacity import Retrying, retry_if_exception, stop_after_attempt, wait_exponential

from .errors import FileAccessError

logger = logging.getLogger(__name__)

DEFAULT_ATTEMPTS = 3
DEFAULT_WAIT = 0.05


def _is_transient(exc: BaseException) -> bool:
    """Missing files and permission problems will not fix themselves."""
    if not isinstance(exc, OSError):
        return False
    return not isinstance(
        exc, (FileNotFoundError, IsADirectoryError, NotADirectoryError, PermissionError)
    )


def _retrying(attempts: int, wait: float) -> Retrying:
    return Retrying(
        retry=retry_if_exception(_is_transient),
        stop=stop_after_attempt(max(1, attempts)),
        wait=wait_exponential(multiplier=wait, max=max(wait * 8, wait)),
        reraise=True,
    )


def text_digest(content: str | bytes) -> str:
    """SHA-256 hex digest of text or bytes."""
    if isinstance(content, str):
        content = content.encode("utf-8")
    return hashlib.sha256(content).hexdigest()


def file_digest(path: Path) -> str | None:
    """SHA-256 of a file's bytes, or None if it cannot be read."""
    try:
        return text_digest(Path(path).read_bytes())
    except OSError:
        return None


def read_bytes(path: Path, attempts: int = DEFAULT_ATTEMPTS, wait: float = DEFAULT_WAIT) -> bytes:
    """
    Read a file with retries on transient errors.

    Raises:
        FileNotFoundError: If the file does not exist
        FileAccessError: For any other IO failure after retries
    """
    path = Path(path)
    try:
        for attempt in _retrying(attempts, wait):
            with attempt:
                return path.read_bytes()
    except FileNotFoundError:
        raise
    except OSError as e:
        raise FileAccessError(f"Failed to read {path}: {e}", path=str(path)) from e
    raise AssertionError("unreachable")


def read_text(path: Path, attempts: int = DEFAULT_ATTEMPTS, wait: float = DEFAULT_WAIT) -> str:
    """Read a UTF-8 text file. Same error contract as read_bytes."""
    data = read_bytes(path, attempts=attempts, wait=wait)
    try:
        return data.decode("utf-8")
    except UnicodeDecodeError as e:
        raise FileAccessError(f"{path} is not valid UTF-8: {e}", path=str(path)) from e


def write_atomic(
    path: Path, content: str | bytes, attempts: int = DEFAULT_ATTEMPTS, wait: float = DEFAULT_WAIT
) -> None:
    """
    Replace a file's content atomically.

    Raises:
        FileAccessError: If the content could not be written after retries.
            The previous file (if any) is left untouched.
    """
    path = Path(path)
    data = content.encode("utf-8") if isinstance(content, str) else content
    try:
        for attempt in _retrying(attempts, wait):
            with attempt:
                _replace_once(path, data)
    except OSError as e:
        raise FileAccessError(f"Failed to write {path}: {e}", path=str(path)) from e


def copy_atomic(
    source: Path, destination: Path, attempts: int = DEFAULT_ATTEMPTS, wait: float = DEFAULT_WAIT
) -> None:
    """Copy a file byte-for-byte via temp file + rename."""
    data = read_bytes(source, attempts=attempts, wait=wait)
    write_atomic(destination, data, attempts=attempts, wait=wait)


def _replace_once(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.with_name(f".{path.name}.{os.getpid()}.{uuid.uuid4().hex[:8]}.tmp")
    try:
        with open(tmp_path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            tmp_path.unlink()
        except FileNotFoundError:
            pass
        except OSError as cleanup_error:
            logger.warning(f"Could not remove temporary file {tmp_path}: {cleanup_error}")
        raise
