"""Core data models used across loader, pipeline, discovery, and CLI."""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

BROADCAST_ADDRESS = "ffff"


class ConnectionState(Enum):
    DISCOVERING = "discovering"
    AWAITING_CHALLENGE_RESPONSE = "awaiting-challenge-response"
    CONNECTED = "connected"
    CLOSING = "closing"


class DiscoveryState(Enum):
    IDLE = "idle"
    ENUMERATING = "enumerating"
    CANDIDATE_FOUND = "candidate-found"
    MANUAL_SELECTION_PENDING = "manual-selection-pending"
    CONNECTING = "connecting"


@dataclass(frozen=True)
class FieldSpec:
    short_name: str
    db_name: str
    topics: tuple[str, ...]
    force_send: bool
    decoder: str
    decode: Callable[[str | None], Any]
    identity: bool = False


@dataclass(frozen=True)
class MessageSchema:
    fields: tuple[FieldSpec, ...]
    topics: tuple[str, ...]

    def get(self, short_name: str) -> FieldSpec | None:
        return next((spec for spec in self.fields if spec.short_name == short_name), None)

    @property
    def identity(self) -> FieldSpec:
        return next(spec for spec in self.fields if spec.identity)

    @property
    def short_names(self) -> tuple[str, ...]:
        return tuple(spec.short_name for spec in self.fields)

    def columns_for(self, topic: str) -> tuple[str, ...]:
        """Output names of non-identity fields routed to ``topic``, in table order."""
        return tuple(
            spec.db_name for spec in self.fields if topic in spec.topics and not spec.identity
        )


@dataclass(frozen=True)
class DecodedMessage:
    sender_address: str
    topics_to_send: tuple[str, ...]
    by_topic: dict[str, dict[str, Any]]
    entries: tuple[tuple[str, Any], ...] = ()

    def values_of(self, short_name: str) -> list[Any]:
        return [value for name, value in self.entries if name == short_name]


@dataclass(frozen=True)
class DeviceCandidate:
    path: str
    hardware_id: str


@dataclass(frozen=True)
class SendRequest:
    text: str
    address: str | None = None
    internal: bool = False
    coalesce: bool = True


@dataclass
class OutboundJob:
    destination: str
    text: str
    internal: bool = False
    report: bool = True
    coalesce: bool = True
    duplicate_count: int = 0
    wire: bytes | None = None


@dataclass(frozen=True)
class Publication:
    topic: str
    payload: dict[str, Any]


@dataclass(frozen=True)
class UartSettings:
    baud_rate: int = 57600
    framing: str = "length"
    rx_length: int = 32
    tx_length: int = 17
    delimiter: int = 0x00


@dataclass(frozen=True)
class PortSettings:
    autofind: bool = True
    max_tries: int = 3
    poll_interval: float = 1.0
    allow_pattern: str = r"Texas.*if00$|USB\\VID_0451.*0000$|VID:PID=0451:.*:1\.0$"


@dataclass(frozen=True)
class MqttSettings:
    host: str = "localhost"
    port: int = 1883
    client_id: str = ""
    command_topic: str = "commands"
    ca_certs: str | None = None
    certfile: str | None = None
    keyfile: str | None = None


@dataclass(frozen=True)
class GatewayConfig:
    schema: MessageSchema
    server: bool = False
    uart: UartSettings = field(default_factory=UartSettings)
    ports: PortSettings = field(default_factory=PortSettings)
    mqtt: MqttSettings = field(default_factory=MqttSettings)
    max_session_rows: int = 1000
    session_topic: str = "sensordata"
    heartbeat_interval: float = 15.0
    pacing_interval: float = 0.05
    challenge_timeout: float = 3.0
    challenge_delay: float = 1.0
    settle_delay: float = 1.5
    address_timeout: float | None = 60.0
    warnings: tuple[str, ...] = ()
