"""
CLI runner module.

Provides commands:
- status: Document health
- backup / list / verify / restore / cleanup: Backup lifecycle
- repair / startup: Recovery
- sync / watch: Store <-> document synchronisation
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
