"""Exception types raised across the bridge."""

from __future__ import annotations


class BridgeError(Exception):
    """Base class for bridge failures."""


class NoSessionError(BridgeError):
    """Raised when a command targets a printer without a live device session."""

    def __init__(self, serial: str) -> None:
        super().__init__(f"No live session for printer {serial}")
        self.serial = serial


class ExecutableNotFoundError(BridgeError):
    """Raised when a supervised helper binary cannot be located."""

    def __init__(self, name: str, searched: list[str]) -> None:
        super().__init__(f"{name} not found (searched: {', '.join(searched)})")
        self.name = name
        self.searched = searched
