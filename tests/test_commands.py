from __future__ import annotations

import pytest

from sensorgate.core.commands import help_text, normalize_address, parse_backend_command, parse_console_line
from sensorgate.core.errors import CommandError
from sensorgate.core.model import SendRequest


def test_addressed_console_line_in_server_mode() -> None:
    assert parse_console_line("23#LOST GAME\n", server=True) == SendRequest(text="LOST GAME", address="0023")


def test_plain_console_line_is_broadcast_in_server_mode() -> None:
    assert parse_console_line("hello", server=True) == SendRequest(text="hello", address="ffff")


def test_peer_mode_sends_line_unchanged() -> None:
    assert parse_console_line("23#x", server=False) == SendRequest(text="23#x")


def test_dot_commands() -> None:
    assert parse_console_line(".reconnect", server=True) == "reconnect"
    assert parse_console_line(".help", server=False) == "help"
    assert parse_console_line("   \n", server=True) is None
    with pytest.raises(CommandError, match="Unknown command '.mute'"):
        parse_console_line(".mute", server=True)


def test_help_text_depends_on_mode() -> None:
    assert "XXXX#" in help_text(True)
    assert "XXXX#" not in help_text(False)


def test_normalize_address() -> None:
    assert normalize_address("AB") == "00ab"
    with pytest.raises(CommandError):
        normalize_address("xyz")


def test_backend_command_forms() -> None:
    assert parse_backend_command({"address": "0023", "text": "WIN"}) == SendRequest(text="WIN", address="0023")
    assert parse_backend_command({"send": {"addr": "23", "str": "WIN"}}) == SendRequest(
        text="WIN", address="0023"
    )
    assert parse_backend_command({"text": "all"}) == SendRequest(text="all", address="ffff")


@pytest.mark.parametrize(
    "payload",
    [["not", "an", "object"], {"address": "0023"}, {"send": "WIN"}, {"address": 23, "text": "x"}],
)
def test_bad_backend_commands_are_rejected(payload) -> None:
    with pytest.raises(CommandError):
        parse_backend_command(payload)
