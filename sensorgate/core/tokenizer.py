"""Schema-driven tokenizer for ``name[:value]`` frames."""

from __future__ import annotations

from collections.abc import Iterable
from typing import Any

from sensorgate.core.errors import FieldValueError, MissingIdError, UnknownFieldError
from sensorgate.core.model import DecodedMessage, MessageSchema


def levenshtein(first: str, second: str) -> int:
    if not first:
        return len(second)
    if not second:
        return len(first)
    previous = list(range(len(second) + 1))
    for i, a in enumerate(first, start=1):
        current = [i]
        for j, b in enumerate(second, start=1):
            cost = 0 if a == b else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def closest_match(name: str, candidates: Iterable[str]) -> str | None:
    """Nearest candidate by edit distance; ties go to the first one seen."""
    best: str | None = None
    best_distance = 0
    for candidate in candidates:
        distance = levenshtein(name, candidate)
        if best is None or distance < best_distance:
            best = candidate
            best_distance = distance
    return best


def _split_token(token: str) -> tuple[str, str | None]:
    name, sep, value = token.partition(":")
    name = name.replace("\x00", "").strip()
    if not sep:
        return name, None
    return name, value.replace("\x00", "").strip()


def tokenize(text: str, schema: MessageSchema) -> DecodedMessage:
    """Decode ``text`` into a sender address and per-topic field maps.

    Raises a ``DecodeError`` subclass on the first unknown field or rejected value, or
    when no identity field is present. Topics listed in ``schema.topics`` that no
    force-sending field touched are dropped from the result.
    """
    address: str | None = None
    sends: list[str] = []
    by_topic: dict[str, dict[str, Any]] = {}
    entries: list[tuple[str, Any]] = []

    for token in text.split(","):
        name, raw = _split_token(token)
        if not name and raw is None:
            continue
        spec = schema.get(name)
        if spec is None:
            raise UnknownFieldError(name, closest_match(name, schema.short_names))

        try:
            value = spec.decode(raw)
        except ValueError as exc:
            raise FieldValueError(spec.short_name, raw, str(exc)) from exc

        entries.append((spec.short_name, value))
        for topic in spec.topics:
            if spec.identity:
                address = value
            if spec.force_send and topic not in sends:
                sends.append(topic)
            by_topic.setdefault(topic, {})[spec.db_name] = value

    if address is None:
        raise MissingIdError("No sender ID given")

    for topic in schema.topics:
        if topic not in sends:
            by_topic.pop(topic, None)

    return DecodedMessage(
        sender_address=address,
        topics_to_send=tuple(sends),
        by_topic=by_topic,
        entries=tuple(entries),
    )
