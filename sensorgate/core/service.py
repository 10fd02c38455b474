"""Service layer wiring the gateway components together for the CLI."""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from sensorgate.core.commands import help_text, parse_backend_command, parse_console_line
from sensorgate.core.discovery import Lister, PortDiscovery
from sensorgate.core.errors import CommandError
from sensorgate.core.model import (
    BROADCAST_ADDRESS,
    ConnectionState,
    DecodedMessage,
    DiscoveryState,
    GatewayConfig,
    SendRequest,
)
from sensorgate.core.outbound import OutboundQueue
from sensorgate.core.pipeline import FramePipeline
from sensorgate.core.session import SessionAccumulator
from sensorgate.core.supervisor import ConnectionSupervisor, Opener
from sensorgate.core.tokenizer import tokenize
from sensorgate.transports.base import Publisher
from sensorgate.transports.serial_link import list_serial_devices, open_serial_link

_SELECTING = (DiscoveryState.ENUMERATING, DiscoveryState.MANUAL_SELECTION_PENDING)
LOGGER = logging.getLogger(__name__)


class GatewayService:
    def __init__(
        self,
        config: GatewayConfig,
        *,
        publisher: Publisher | None = None,
        lister: Lister = list_serial_devices,
        opener: Opener = open_serial_link,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.load_warnings = config.warnings
        self.outbound = OutboundQueue(tx_length=config.uart.tx_length, server=config.server)
        self.sessions = SessionAccumulator.from_config(config, clock=clock)
        self.pipeline = FramePipeline(config, self.sessions, self.outbound.enqueue, publisher, clock=clock)
        self.discovery = PortDiscovery(config.ports, lister=lister)
        self.supervisor = ConnectionSupervisor(
            config,
            self.discovery,
            self.pipeline,
            self.outbound,
            opener=opener,
            clock=clock,
        )

    def attach_publisher(self, publisher: Publisher | None) -> None:
        self.pipeline.publisher = publisher

    def list_devices(self) -> list[str]:
        self.discovery.poll()
        return self.discovery.describe()

    def decode(self, text: str) -> DecodedMessage:
        return tokenize(text, self.config.schema)

    def handle_line(self, line: str) -> None:
        """Route one terminal line to the port selector or the console commands."""
        if self.supervisor.state is ConnectionState.DISCOVERING and self.discovery.state in _SELECTING:
            self.discovery.feed_line(line)
            return

        try:
            action = parse_console_line(line, server=self.config.server)
        except CommandError as exc:
            LOGGER.warning("%s", exc)
            return

        if action is None:
            return
        if action == "reconnect":
            self.supervisor.request_reconnect()
        elif action == "help":
            LOGGER.info("%s", help_text(self.config.server))
        else:
            self.send(action)

    def handle_backend_command(self, payload: Any) -> None:
        try:
            request = parse_backend_command(payload)
        except CommandError as exc:
            LOGGER.error("Bad backend command: %s", exc)
            return

        timeout = self.config.address_timeout
        if (
            timeout is not None
            and request.address != BROADCAST_ADDRESS
            and not self.pipeline.heard_within(request.address, timeout)
        ):
            LOGGER.debug("Dropping command for 0x%s, not heard from recently", request.address)
            return
        self.send(request)

    def send(self, request: SendRequest) -> None:
        try:
            self.outbound.enqueue(request)
        except CommandError as exc:
            LOGGER.warning("%s", exc)

    async def run(self) -> None:
        await asyncio.gather(
            self.outbound.run(self.config.pacing_interval),
            self.supervisor.run(),
        )
