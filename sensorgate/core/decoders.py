"""Field decoders referenced by name from the message schema table.

A decoder receives the raw token value (``None`` when the token had no colon) and
returns the decoded value, raising ``ValueError`` with a short reason otherwise.
"""

from __future__ import annotations

import re
from collections.abc import Callable
from typing import Any

Decoder = Callable[[str | None], Any]

_INTEGER_RE = re.compile(r"^[+-]?[0-9]+$")
_NUMBER_RE = re.compile(r"^[+-]?(?:[0-9]+\.?[0-9]*|\.[0-9]+)(?:[eE][+-]?[0-9]+)?$")
_HEX_ID_RE = re.compile(r"^[0-9a-fA-F]{1,4}$")
EFFECT_SLOTS = 3


def _require(raw: str | None) -> str:
    if raw is None or raw == "":
        raise ValueError("missing value")
    return raw


def _integer(options: dict[str, Any]) -> Decoder:
    def decode(raw: str | None) -> int:
        value = _require(raw)
        if not _INTEGER_RE.match(value):
            raise ValueError("not an integer")
        return int(value)

    return decode


def _number(options: dict[str, Any]) -> Decoder:
    def decode(raw: str | None) -> float:
        value = _require(raw)
        if not _NUMBER_RE.match(value):
            raise ValueError("not a number")
        return float(value)

    return decode


def _hex_id(options: dict[str, Any]) -> Decoder:
    def decode(raw: str | None) -> str:
        value = _require(raw)
        if not _HEX_ID_RE.match(value):
            raise ValueError("address has to be at most 4 hex digits")
        return value.lower().zfill(4)

    return decode


def _choice(options: dict[str, Any]) -> Decoder:
    choices = tuple(options.get("choices", ()))

    def decode(raw: str | None) -> str:
        value = _require(raw)
        if value not in choices:
            raise ValueError(f"expected one of {', '.join(choices)}")
        return value

    return decode


def _session(options: dict[str, Any]) -> Decoder:
    def decode(raw: str | None) -> str:
        value = _require(raw)
        if value not in ("start", "end"):
            raise ValueError("expected start or end")
        return value

    return decode


def _ping(options: dict[str, Any]) -> Decoder:
    reply = str(options.get("reply", "pong"))

    def decode(raw: str | None) -> str:
        return raw or reply

    return decode


def _effect(options: dict[str, Any]) -> Decoder:
    slot = int(options.get("slot", 0))
    if not 0 <= slot < EFFECT_SLOTS:
        raise ValueError(f"effect slot must be in range 0..{EFFECT_SLOTS - 1}")
    as_integer = _integer(options)

    def decode(raw: str | None) -> tuple[int, ...]:
        effect = [0] * EFFECT_SLOTS
        effect[slot] = as_integer(raw)
        return tuple(effect)

    return decode


DECODERS: dict[str, Callable[[dict[str, Any]], Decoder]] = {
    "integer": _integer,
    "number": _number,
    "hex_id": _hex_id,
    "choice": _choice,
    "session": _session,
    "ping": _ping,
    "effect": _effect,
}


def build_decoder(kind: str, options: dict[str, Any] | None = None) -> Decoder:
    try:
        factory = DECODERS[kind]
    except KeyError:
        raise ValueError(f"unknown decoder '{kind}'") from None
    return factory(options or {})
