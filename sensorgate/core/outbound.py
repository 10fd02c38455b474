"""Paced FIFO of writes to the serial device."""

from __future__ import annotations

import asyncio
import logging
import re
import struct
from collections import deque
from collections.abc import Callable

from sensorgate.core.errors import CommandError, TransportError
from sensorgate.core.model import BROADCAST_ADDRESS, OutboundJob, SendRequest
from sensorgate.transports.base import Transport

_ADDRESS_RE = re.compile(r"^[0-9a-f]{4}$")
LOGGER = logging.getLogger(__name__)

CompletionHook = Callable[[OutboundJob, Exception | None], None]


class OutboundQueue:
    """Serializes writes so the firmware receives one command per UART transaction.

    ``tick`` writes at most one job. Jobs stay queued while no transport is attached.
    In server mode a job is packed into its wire buffer when enqueued (address prefix,
    truncated text, zero padding); in peer mode the raw text is packed at dequeue.
    """

    def __init__(
        self,
        *,
        tx_length: int,
        server: bool,
        suppress_duplicates: bool = True,
        on_complete: CompletionHook | None = None,
    ) -> None:
        self.tx_length = tx_length
        self.server = server
        self.suppress_duplicates = suppress_duplicates
        self.on_complete = on_complete
        self._jobs: deque[OutboundJob] = deque()
        self._transport: Transport | None = None

    def __len__(self) -> int:
        return len(self._jobs)

    @property
    def pending(self) -> tuple[OutboundJob, ...]:
        return tuple(self._jobs)

    def attach(self, transport: Transport) -> None:
        self._transport = transport

    def detach(self) -> None:
        self._transport = None

    def enqueue(self, request: SendRequest, *, report: bool = True) -> OutboundJob:
        internal = request.internal or not self.server
        destination = (request.address or BROADCAST_ADDRESS).lower()
        if not internal and not _ADDRESS_RE.match(destination):
            raise CommandError(f"Destination address must be 4 hex digits: {request.address}")

        if self.suppress_duplicates and request.coalesce and not internal and self._jobs:
            tail = self._jobs[-1]
            if (
                tail.coalesce
                and not tail.internal
                and tail.destination == destination
                and tail.text == request.text
            ):
                tail.duplicate_count += 1
                return tail

        job = OutboundJob(
            destination=destination,
            text=request.text,
            internal=internal,
            report=report,
            coalesce=request.coalesce,
        )
        if self.server:
            job.wire = self.encode(job)
        self._jobs.append(job)
        return job

    def encode(self, job: OutboundJob) -> bytes:
        buffer = bytearray(self.tx_length)
        payload = job.text.encode("ascii", errors="replace")
        if job.internal:
            # keep one trailing zero byte as terminator
            payload = payload[: self.tx_length - 1]
            buffer[: len(payload)] = payload
        else:
            struct.pack_into("<H", buffer, 0, int(job.destination, 16))
            payload = payload[: self.tx_length - 3]
            buffer[2 : 2 + len(payload)] = payload
        return bytes(buffer)

    def tick(self) -> OutboundJob | None:
        transport = self._transport
        if not self._jobs or transport is None or not transport.is_open:
            return None

        job = self._jobs.popleft()
        wire = job.wire if job.wire is not None else self.encode(job)
        try:
            transport.write(wire)
        except TransportError as exc:
            LOGGER.error("UART write error: %s", exc)
            self._complete(job, exc)
            return job

        if job.report:
            duplicates = f" ({job.duplicate_count} duplicates suppressed)" if job.duplicate_count else ""
            if job.internal:
                LOGGER.info("Sent '%s'%s", job.text, duplicates)
            else:
                LOGGER.info("Sent '%s' to 0x%s%s", job.text, job.destination, duplicates)
        self._complete(job, None)
        return job

    def _complete(self, job: OutboundJob, error: Exception | None) -> None:
        if self.on_complete is not None:
            self.on_complete(job, error)

    async def run(self, interval: float) -> None:
        while True:
            self.tick()
            await asyncio.sleep(interval)
