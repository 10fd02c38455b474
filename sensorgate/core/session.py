"""Per-address accumulation of multi-row sensor sessions."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from sensorgate.core.errors import CapacityError, EmptySessionError, NoSessionError, SessionError
from sensorgate.core.model import DecodedMessage, GatewayConfig

LOGGER = logging.getLogger(__name__)


@dataclass
class SessionBuffer:
    sensortag_id: str
    started_clock: float
    columns: dict[str, list[Any]] = field(default_factory=dict)

    @property
    def row_count(self) -> int:
        return len(next(iter(self.columns.values()), []))

    def append_row(self, values: dict[str, Any], time_column: str, elapsed_ms: int) -> None:
        # every column grows by exactly one entry
        for name, column in self.columns.items():
            if name == time_column and name not in values:
                column.append(elapsed_ms)
            else:
                column.append(values.get(name))

    def to_payload(self, id_name: str) -> dict[str, Any]:
        return {id_name: self.sensortag_id, **{name: list(col) for name, col in self.columns.items()}}


class SessionAccumulator:
    """Collects sensor-data rows between ``session:start`` and ``session:end``.

    ``apply`` handles one decoded message in a fixed order: session start, data row,
    ping reply, session end. The ping reply is issued before the end is evaluated so
    a device can confirm the end command got through even when ending fails.
    """

    def __init__(
        self,
        columns: tuple[str, ...],
        *,
        max_rows: int,
        data_topic: str = "sensordata",
        session_field: str = "session",
        ping_field: str = "ping",
        time_column: str = "timeStamp",
        id_name: str = "sensortagID",
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.columns = columns
        self.max_rows = max_rows
        self.data_topic = data_topic
        self.session_field = session_field
        self.ping_field = ping_field
        self.time_column = time_column
        self.id_name = id_name
        self._clock = clock
        self._buffers: dict[str, SessionBuffer] = {}

    @classmethod
    def from_config(cls, config: GatewayConfig, **kwargs: Any) -> SessionAccumulator:
        return cls(
            config.schema.columns_for(config.session_topic),
            max_rows=config.max_session_rows,
            data_topic=config.session_topic,
            id_name=config.schema.identity.db_name,
            **kwargs,
        )

    def has_session(self, address: str) -> bool:
        return address in self._buffers

    def row_count(self, address: str) -> int:
        buffer = self._buffers.get(address)
        return buffer.row_count if buffer else 0

    def start(self, address: str) -> None:
        if address in self._buffers:
            LOGGER.info("Restarting session for %s, discarding %d rows", address, self.row_count(address))
        self._buffers[address] = SessionBuffer(
            sensortag_id=address,
            started_clock=self._clock(),
            columns={name: [] for name in self.columns},
        )

    def add_row(self, address: str, values: dict[str, Any]) -> int:
        buffer = self._buffers.get(address)
        if buffer is None:
            raise NoSessionError("Sensor data received while no session has been started")
        if buffer.row_count >= self.max_rows:
            raise CapacityError(f"Sensor data session is full ({self.max_rows} rows)")
        elapsed_ms = int((self._clock() - buffer.started_clock) * 1000)
        buffer.append_row(values, self.time_column, elapsed_ms)
        return buffer.row_count

    def end(self, address: str) -> dict[str, Any]:
        buffer = self._buffers.get(address)
        if buffer is None:
            raise NoSessionError("No session was started, session data send prevented")
        if buffer.row_count == 0:
            del self._buffers[address]
            raise EmptySessionError("The session was empty, it will not be sent")
        del self._buffers[address]
        LOGGER.info("Session from %s ended, sending %d rows of data", address, buffer.row_count)
        return buffer.to_payload(self.id_name)

    def apply(
        self,
        message: DecodedMessage,
        reply: Callable[[str, str], None],
    ) -> dict[str, Any] | None:
        """Run the session state machine for one message.

        Returns the completed session payload when the message ends a session. A
        rejected data row does not stop the ping reply or the end; its error is
        raised afterwards unless the end produced a payload, in which case it is
        only logged.
        """
        address = message.sender_address
        controls = message.values_of(self.session_field)

        if "start" in controls:
            self.start(address)

        row_error: SessionError | None = None
        row = message.by_topic.get(self.data_topic)
        if row is not None:
            try:
                self.add_row(address, row)
            except SessionError as exc:
                row_error = exc

        for text in message.values_of(self.ping_field):
            reply(address, text)

        payload = self.end(address) if "end" in controls else None
        if row_error is not None:
            if payload is None:
                raise row_error
            LOGGER.error("%s", row_error)
        return payload
