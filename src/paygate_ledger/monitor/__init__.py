"""
Document file health: registry and validators, integrity monitor and
startup validation.

Only the registry is imported here; the backup package depends on it and
the monitor depends on the backup package.
"""

from .files import (
    DatabaseFile,
    DocumentKind,
    FileRegistry,
    ValidationResult,
    default_registry,
    parse_json,
    render_json,
)

__all__ = [
    "DatabaseFile",
    "DocumentKind",
    "FileRegistry",
    "ValidationResult",
    "default_registry",
    "parse_json",
    "render_json",
]
