"""
CLI runner module.

Provides commands:
- import: Load a bank statement CSV into a batch
- auto-match / candidates / match / split / amend / unmatch / ignore / reopen
- validate / archive: Batch lifecycle
- rules: Matching rule administration
- payments / overview / documents: Derived reports
"""

from .main import create_cli, main

__all__ = [
    "create_cli",
    "main",
]
