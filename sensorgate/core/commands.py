"""Parsing of console lines and backend command messages into send requests."""

from __future__ import annotations

import re
from typing import Any, Literal

from sensorgate.core.errors import CommandError
from sensorgate.core.model import BROADCAST_ADDRESS, SendRequest

_ADDRESSED_RE = re.compile(r"^([0-9a-fA-F]{1,4})#(.*)$", re.DOTALL)
_HEX_RE = re.compile(r"^[0-9a-fA-F]{1,4}$")

ConsoleAction = Literal["reconnect", "help"]


def help_text(server: bool) -> str:
    if server:
        send = (
            "Any message not starting with '.' is sent to address 0xffff.\n"
            "An address can be given with a XXXX# prefix."
        )
    else:
        send = "Any message not starting with '.' is sent to the SensorTag."
    return (
        "Supported commands:\n"
        "  .reconnect   Force port reconnect\n"
        "  .help        Show this help\n"
        f"{send}"
    )


def normalize_address(address: str) -> str:
    address = address.strip()
    if not _HEX_RE.match(address):
        raise CommandError(f"Address has to be 1-4 hex digits: {address!r}")
    return address.lower().zfill(4)


def parse_console_line(line: str, *, server: bool) -> SendRequest | ConsoleAction | None:
    """Translate one terminal line.

    Returns ``None`` for blank lines, a console action name for ``.``-commands, and a
    send request for anything else.
    """
    line = line.rstrip("\r\n")
    if not line.strip():
        return None
    if line.startswith("."):
        command = line.strip()
        if command == ".reconnect":
            return "reconnect"
        if command == ".help":
            return "help"
        raise CommandError(f"Unknown command '{command}'. Type .help for the list of commands.")

    if not server:
        return SendRequest(text=line)
    match = _ADDRESSED_RE.match(line)
    if match:
        return SendRequest(text=match.group(2), address=normalize_address(match.group(1)))
    return SendRequest(text=line, address=BROADCAST_ADDRESS)


def parse_backend_command(payload: Any) -> SendRequest:
    """Accept ``{"address", "text"}`` or the older ``{"send": {"addr", "str"}}`` form."""
    if not isinstance(payload, dict):
        raise CommandError("Backend command must be a JSON object")

    if "send" in payload:
        inner = payload["send"]
        if not isinstance(inner, dict):
            raise CommandError("'send' must be an object with 'addr' and 'str'")
        address, text = inner.get("addr"), inner.get("str")
    else:
        address, text = payload.get("address"), payload.get("text")

    if not isinstance(text, str):
        raise CommandError("Backend command is missing its text")
    if address is None:
        return SendRequest(text=text, address=BROADCAST_ADDRESS)
    if not isinstance(address, str):
        raise CommandError(f"Backend command address must be a string: {address!r}")
    return SendRequest(text=text, address=normalize_address(address))
