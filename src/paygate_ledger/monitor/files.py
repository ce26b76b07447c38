"""
Registry of the JSON document files and their structural validators.

Every file the gateway keeps under the data directory is described once
here: where it lives, whether the gateway can run without it, what an empty
valid instance looks like and how to tell a valid one from a broken one.
The sync engine, integrity monitor and backup manager all work from this
registry.
"""

import json
import logging
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from ..errors import ParseError, SchemaError

logger = logging.getLogger(__name__)


class DocumentKind(str, Enum):
    """What a document file holds."""

    KEYS = "keys"
    MERCHANT = "merchant"
    PROCESSOR = "processor"
    ADDRESS_INDEX = "address_index"


@dataclass
class ValidationResult:
    """Outcome of a structural check."""

    valid: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, error: str) -> "ValidationResult":
        return cls(valid=False, error=error)


Validator = Callable[[Any], ValidationResult]


def validate_keys(data: Any) -> ValidationResult:
    """keys.json: object with a mnemonic and an activeAddresses map."""
    if not isinstance(data, dict):
        return ValidationResult.fail("keys file must be an object")
    if "mnemonic" not in data:
        return ValidationResult.fail("keys file has no mnemonic field")
    if not isinstance(data.get("activeAddresses"), dict):
        return ValidationResult.fail("activeAddresses must be an object")
    return ValidationResult.ok()


def validate_merchant(data: Any) -> ValidationResult:
    """merchant_transactions.json: array of objects."""
    if not isinstance(data, list):
        return ValidationResult.fail("merchant transactions must be an array")
    for i, entry in enumerate(data):
        if not isinstance(entry, dict):
            return ValidationResult.fail(f"merchant transaction #{i} is not an object")
    return ValidationResult.ok()


def validate_processor(data: Any) -> ValidationResult:
    """processor_payments.json: object with a payments array."""
    if not isinstance(data, dict):
        return ValidationResult.fail("processor payments file must be an object")
    payments = data.get("payments")
    if not isinstance(payments, list):
        return ValidationResult.fail("payments must be an array")
    for i, entry in enumerate(payments):
        if not isinstance(entry, dict):
            return ValidationResult.fail(f"payment #{i} is not an object")
    return ValidationResult.ok()


def validate_object(data: Any) -> ValidationResult:
    if not isinstance(data, dict):
        return ValidationResult.fail("expected a JSON object")
    return ValidationResult.ok()


def parse_json(text: str) -> Any:
    """
    Parse document text.

    Raises:
        ParseError: If the text is empty or not JSON
    """
    if not text.strip():
        raise ParseError("file is empty")
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ParseError(f"invalid JSON: {e}") from e


def render_json(data: Any) -> str:
    """Canonical on-disk form of a document."""
    return json.dumps(data, indent=2, ensure_ascii=False) + "\n"


@dataclass
class DatabaseFile:
    """A JSON document file managed by the gateway."""

    name: str
    path: Path
    required: bool
    default_content: Any
    validator: Validator
    kind: DocumentKind

    def default_text(self) -> str:
        return render_json(self.default_content)

    def validate_data(self, data: Any) -> ValidationResult:
        return self.validator(data)

    def validate_text(self, text: str) -> ValidationResult:
        """Parse and validate; parse failures are reported, not raised."""
        try:
            data = parse_json(text)
        except ParseError as e:
            return ValidationResult.fail(str(e))
        return self.validator(data)

    def load(self, text: str) -> Any:
        """
        Parse and validate, returning the data.

        Raises:
            ParseError: Unparseable content
            SchemaError: Valid JSON of the wrong shape
        """
        data = parse_json(text)
        result = self.validator(data)
        if not result.valid:
            raise SchemaError(f"{self.name}: {result.error}")
        return data


class FileRegistry:
    """Ordered collection of DatabaseFile entries, addressable by name or kind."""

    def __init__(self, files: list[DatabaseFile]):
        self._files = list(files)
        self._by_name = {f.name: f for f in self._files}

    def __iter__(self) -> Iterator[DatabaseFile]:
        return iter(self._files)

    def __len__(self) -> int:
        return len(self._files)

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def get(self, name: str) -> DatabaseFile | None:
        return self._by_name.get(name)

    def by_kind(self, kind: DocumentKind) -> DatabaseFile | None:
        for f in self._files:
            if f.kind == kind:
                return f
        return None

    def for_path(self, path: Path) -> DatabaseFile | None:
        """Entry whose live path is ``path``."""
        resolved = Path(path).resolve()
        for f in self._files:
            if f.path.resolve() == resolved:
                return f
        return None

    @property
    def names(self) -> list[str]:
        return [f.name for f in self._files]


def default_registry(data_dir: Path) -> FileRegistry:
    """The standard set of gateway documents under ``data_dir``."""
    data_dir = Path(data_dir)
    return FileRegistry(
        [
            DatabaseFile(
                name="keys.json",
                path=data_dir / "keys.json",
                required=True,
                default_content={"mnemonic": "", "activeAddresses": {}},
                validator=validate_keys,
                kind=DocumentKind.KEYS,
            ),
            DatabaseFile(
                name="merchant_transactions.json",
                path=data_dir / "merchant_transactions.json",
                required=True,
                default_content=[],
                validator=validate_merchant,
                kind=DocumentKind.MERCHANT,
            ),
            DatabaseFile(
                name="processor_payments.json",
                path=data_dir / "processor_payments.json",
                required=True,
                default_content={"payments": []},
                validator=validate_processor,
                kind=DocumentKind.PROCESSOR,
            ),
            DatabaseFile(
                name="address_index_map.json",
                path=data_dir / "address_index_map.json",
                required=False,
                default_content={},
                validator=validate_object,
                kind=DocumentKind.ADDRESS_INDEX,
            ),
        ]
    )
