"""Transport and publisher interfaces."""

from __future__ import annotations

from typing import Any, Protocol


class Transport(Protocol):
    @property
    def is_open(self) -> bool:
        """Whether writes can currently be issued."""

    def write(self, data: bytes) -> None:
        """Write one encoded frame to the device."""

    def close(self) -> None:
        """Close the link; the close callback fires once the port is released."""


class Publisher(Protocol):
    def publish(self, topic: str, payload: dict[str, Any]) -> None:
        """Forward a structured message to the backend under ``topic``."""
