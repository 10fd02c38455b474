"""Unwrapping of received frames into backend publications."""

from __future__ import annotations

import logging
import struct
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from sensorgate.core import codec
from sensorgate.core.model import DecodedMessage, GatewayConfig, Publication, SendRequest
from sensorgate.core.session import SessionAccumulator
from sensorgate.core.tokenizer import tokenize
from sensorgate.transports.base import Publisher

HEARTBEAT_ECHO = "id:fefe,\x01HB"
ACTION_TOPIC = "tamaActions"
EVENT_TOPIC = "event"
DEVICE_LOG_MARK = "|"
LOGGER = logging.getLogger(__name__)


@dataclass(frozen=True)
class UnwrapResult:
    address: str | None = None
    publications: tuple[Publication, ...] = ()
    heartbeat: bool = False
    device_log: str | None = None


def _utc_stamp() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _printable(text: str) -> str:
    return text.encode("unicode_escape").decode("ascii")


class FramePipeline:
    """Turns raw frames into publications and session flushes.

    One frame is handled completely before the next one starts. Errors raised by the
    tokenizer or the session accumulator leave nothing published for that frame.
    """

    def __init__(
        self,
        config: GatewayConfig,
        sessions: SessionAccumulator,
        send: Callable[[SendRequest], Any],
        publisher: Publisher | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.sessions = sessions
        self.publisher = publisher
        self._send = send
        self._clock = clock
        self._heard: dict[str, float] = {}

    def frame_text(self, frame: bytes) -> tuple[str, str]:
        """Return ``(sender prefix, text)``; server frames gain an ``id:`` token."""
        data = codec.decode(frame)
        if not self.config.server:
            return "", data.decode("latin-1").strip("\x00")
        if len(data) < 2:
            return "", data.decode("latin-1").strip("\x00")
        (raw_address,) = struct.unpack_from("<H", data)
        address = f"{raw_address:04x}"
        return address, f"id:{address}," + data[2:].decode("latin-1").strip("\x00")

    def process(self, frame: bytes) -> UnwrapResult:
        prefix, text = self.frame_text(frame)

        if text == HEARTBEAT_ECHO:
            return UnwrapResult(address="fefe", heartbeat=True)

        body = text[len(f"id:{prefix},"):] if prefix else text
        if body.startswith(DEVICE_LOG_MARK):
            LOGGER.info("%s", body[1:])
            return UnwrapResult(address=prefix or None, device_log=body[1:])

        LOGGER.info("%s> %s", prefix, _printable(body))
        message = tokenize(text, self.config.schema)
        return self._route(message)

    def _route(self, message: DecodedMessage) -> UnwrapResult:
        address = message.sender_address
        by_topic = {topic: dict(values) for topic, values in message.by_topic.items()}
        sends = list(message.topics_to_send)

        actions = by_topic.get(ACTION_TOPIC)
        if actions:
            total = [sum(parts) for parts in zip(*actions.values())]
            event = by_topic.setdefault(EVENT_TOPIC, {self.config.schema.identity.db_name: address})
            event[ACTION_TOPIC] = total
            if EVENT_TOPIC not in sends:
                sends.append(EVENT_TOPIC)

        self._heard[address] = self._clock()
        session_payload = self.sessions.apply(message, self._reply)

        publications: list[Publication] = []
        for topic in self.config.schema.topics:
            if topic == self.config.session_topic or topic not in sends or topic not in by_topic:
                continue
            payload = by_topic[topic]
            payload.setdefault("timeStamp", _utc_stamp())
            publications.append(Publication(topic, payload))
        if session_payload is not None:
            publications.append(Publication(self.config.session_topic, session_payload))

        for publication in publications:
            self._publish(publication)
        return UnwrapResult(address=address, publications=tuple(publications))

    def _reply(self, address: str, text: str) -> None:
        self._send(SendRequest(text=text, address=address, coalesce=False))

    def _publish(self, publication: Publication) -> None:
        if self.publisher is None:
            LOGGER.debug("Offline, not publishing %s: %s", publication.topic, publication.payload)
            return
        self.publisher.publish(publication.topic, publication.payload)

    def heard_within(self, address: str, seconds: float) -> bool:
        heard = self._heard.get(address)
        return heard is not None and self._clock() - heard <= seconds
