"""Connection lifecycle: identify handshake, heartbeat and reconnect."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from functools import partial

from sensorgate.core import codec
from sensorgate.core.discovery import PortDiscovery
from sensorgate.core.errors import (
    DecodeError,
    HandshakeTimeout,
    SessionError,
    TransportOpenError,
)
from sensorgate.core.model import ConnectionState, GatewayConfig, SendRequest, UartSettings
from sensorgate.core.outbound import OutboundQueue
from sensorgate.core.pipeline import FramePipeline
from sensorgate.transports.base import Transport
from sensorgate.transports.serial_link import open_serial_link

CHALLENGE_HEADER = b"\xfe\xfe\x01"
IDENTIFY = "\x00\x00\x01Identify"
HEARTBEAT = "\x00\x00\x01HB"
_NOT_OPEN = (ConnectionState.DISCOVERING, ConnectionState.CLOSING)
LOGGER = logging.getLogger(__name__)

Opener = Callable[
    [str, UartSettings, Callable[[bytes], None], Callable[[Exception | None], None]],
    Awaitable[Transport],
]


def is_challenge_response(data: bytes) -> bool:
    return data[: len(CHALLENGE_HEADER)] == CHALLENGE_HEADER


class ConnectionSupervisor:
    """Owns the single live transport and restarts discovery when it closes.

    Callbacks from a transport carry the generation they were opened under; frames or
    timers from an older generation are ignored once a new cycle has begun.
    """

    def __init__(
        self,
        config: GatewayConfig,
        discovery: PortDiscovery,
        pipeline: FramePipeline,
        outbound: OutboundQueue,
        *,
        opener: Opener = open_serial_link,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.discovery = discovery
        self.pipeline = pipeline
        self.outbound = outbound
        self.state = ConnectionState.DISCOVERING
        self.responded = False
        self.last_seen: float | None = None
        self.generation = 0
        self._opener = opener
        self._clock = clock
        self._link: Transport | None = None
        self._closed = asyncio.Event()
        self._timers: list[asyncio.TimerHandle] = []
        self._heartbeat_task: asyncio.Task[None] | None = None

    @property
    def is_live(self) -> bool:
        return self.state is ConnectionState.CONNECTED

    async def run(self) -> None:
        while True:
            await self.connect_once()

    async def connect_once(self) -> None:
        self.state = ConnectionState.DISCOVERING
        path = await self.discovery.find()

        self.generation += 1
        generation = self.generation
        self._closed = asyncio.Event()
        try:
            link = await self._opener(
                path,
                self.config.uart,
                partial(self.handle_frame, generation),
                partial(self.handle_close, generation),
            )
        except TransportOpenError as exc:
            LOGGER.error("%s", exc)
            await asyncio.sleep(self.config.settle_delay)
            return

        self._link = link
        self.outbound.attach(link)
        self.on_open(generation)
        await self._closed.wait()
        await self._teardown()

    def on_open(self, generation: int) -> None:
        LOGGER.info("UART connection opened.")
        self.last_seen = self._clock()
        if not self.config.server:
            self.responded = True
            self.state = ConnectionState.CONNECTED
            return

        self.state = ConnectionState.AWAITING_CHALLENGE_RESPONSE
        loop = asyncio.get_running_loop()
        self._timers.append(loop.call_later(self.config.challenge_delay, self.send_challenge, generation))
        self._heartbeat_task = loop.create_task(self._heartbeat_loop(generation))

    def send_challenge(self, generation: int) -> None:
        if generation != self.generation or self.responded:
            return
        self.outbound.enqueue(SendRequest(text=IDENTIFY, internal=True), report=False)
        loop = asyncio.get_running_loop()
        self._timers.append(
            loop.call_later(self.config.challenge_timeout, self._on_challenge_timer, generation)
        )

    def check_challenge(self, generation: int) -> None:
        if generation == self.generation and not self.responded:
            raise HandshakeTimeout(
                "Connection challenge timed out. Is a SensorTag server connected to this port?"
            )

    def _on_challenge_timer(self, generation: int) -> None:
        if self.state in _NOT_OPEN:
            return
        try:
            self.check_challenge(generation)
        except HandshakeTimeout as exc:
            LOGGER.error("%s", exc)
            self.discovery.record_handshake_timeout()
            self.close_transport()

    def handle_frame(self, generation: int, frame: bytes) -> None:
        if generation != self.generation or self.state in _NOT_OPEN:
            LOGGER.debug("Ignoring frame from a closed connection")
            return

        now = self._clock()
        gap = now - self.last_seen if self.last_seen is not None else 0.0
        self.last_seen = now

        if not self.responded:
            data = codec.decode(frame)
            if not is_challenge_response(data):
                LOGGER.debug("Ignoring frame received before the challenge response")
                return
            identity = data[len(CHALLENGE_HEADER):].rstrip(b"\x00").decode("latin-1")
            LOGGER.info("Connected to %s", identity or "SensorTag server")
            self.responded = True
            self.discovery.clear_blacklist()
            self.state = ConnectionState.CONNECTED
            return

        try:
            result = self.pipeline.process(frame)
        except (DecodeError, SessionError) as exc:
            LOGGER.error("%s", exc)
            return
        if result.heartbeat and gap > self.config.heartbeat_interval * 1.5:
            LOGGER.info("Heartbeat: SensorTag server reconnected.")

    def heartbeat_tick(self) -> None:
        if self.last_seen is not None:
            gap = self._clock() - self.last_seen
            interval = self.config.heartbeat_interval
            if interval * 1.5 < gap < interval * 2.5:
                LOGGER.warning("Heartbeat: the SensorTag server has possibly crashed!")
        self.outbound.enqueue(SendRequest(text=HEARTBEAT, internal=True), report=False)

    async def _heartbeat_loop(self, generation: int) -> None:
        while generation == self.generation:
            await asyncio.sleep(self.config.heartbeat_interval)
            if generation != self.generation or self.state is ConnectionState.CLOSING:
                return
            self.heartbeat_tick()

    def handle_close(self, generation: int, exc: Exception | None) -> None:
        if generation != self.generation:
            return
        if exc is not None:
            LOGGER.error("UART connection lost: %s. Attempting to reconnect.", exc)
        else:
            LOGGER.info("UART connection closed.")
        self.state = ConnectionState.CLOSING
        self._cancel_timers()
        self._closed.set()

    def close_transport(self) -> None:
        if self._link is not None and self._link.is_open:
            self._link.close()
        else:
            self.state = ConnectionState.CLOSING
            self._cancel_timers()
            self._closed.set()

    def _cancel_timers(self) -> None:
        for timer in self._timers:
            timer.cancel()
        self._timers = []
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None

    def request_reconnect(self) -> None:
        LOGGER.info("Reconnecting...")
        self.close_transport()

    async def _teardown(self) -> None:
        self.state = ConnectionState.CLOSING
        self._cancel_timers()
        await asyncio.sleep(self.config.settle_delay)
        self.outbound.detach()
        self._link = None
        self.responded = False
        self.last_seen = None
        self.discovery.reset()
        self.state = ConnectionState.DISCOVERING
