"""Asyncio serial link with fixed-length or delimiter framing."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable

import serial
import serial_asyncio
from serial.tools import list_ports

from sensorgate.core.errors import TransportOpenError, TransportWriteError
from sensorgate.core.model import DeviceCandidate, UartSettings

FrameHandler = Callable[[bytes], None]
CloseHandler = Callable[[Exception | None], None]
LOGGER = logging.getLogger(__name__)


class ByteLengthFramer:
    def __init__(self, length: int) -> None:
        self.length = length
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[bytes]:
        self._buffer.extend(data)
        frames: list[bytes] = []
        while len(self._buffer) >= self.length:
            frames.append(bytes(self._buffer[: self.length]))
            del self._buffer[: self.length]
        return frames

    def reset(self) -> None:
        self._buffer.clear()


class DelimiterFramer:
    """Splits on a single delimiter byte, which is not included in the frames."""

    def __init__(self, delimiter: int) -> None:
        self.delimiter = bytes([delimiter])
        self._buffer = bytearray()

    def feed(self, data: bytes) -> list[bytes]:
        self._buffer.extend(data)
        *frames, rest = bytes(self._buffer).split(self.delimiter)
        self._buffer = bytearray(rest)
        return [frame for frame in frames if frame]

    def reset(self) -> None:
        self._buffer.clear()


def make_framer(uart: UartSettings) -> ByteLengthFramer | DelimiterFramer:
    if uart.framing == "length":
        return ByteLengthFramer(uart.rx_length)
    return DelimiterFramer(uart.delimiter)


class SerialLinkProtocol(asyncio.Protocol):
    def __init__(
        self,
        framer: ByteLengthFramer | DelimiterFramer,
        on_frame: FrameHandler,
        on_close: CloseHandler,
    ) -> None:
        self.framer = framer
        self.on_frame = on_frame
        self.on_close = on_close

    def data_received(self, data: bytes) -> None:
        LOGGER.debug("RX (%d bytes): %s", len(data), data.hex(" "))
        for frame in self.framer.feed(data):
            self.on_frame(frame)

    def connection_lost(self, exc: Exception | None) -> None:
        self.framer.reset()
        self.on_close(exc)


class SerialLink:
    def __init__(self, path: str, transport: asyncio.Transport) -> None:
        self.path = path
        self._transport = transport

    @property
    def is_open(self) -> bool:
        return not self._transport.is_closing()

    def write(self, data: bytes) -> None:
        if not self.is_open:
            raise TransportWriteError(f"Serial port {self.path} is not open")
        try:
            self._transport.write(data)
        except (serial.SerialException, OSError) as exc:
            raise TransportWriteError(f"Write to {self.path} failed: {exc}") from exc
        LOGGER.debug("TX (%d bytes): %s", len(data), data.hex(" "))

    def close(self) -> None:
        self._transport.close()

    def __repr__(self) -> str:
        status = "open" if self.is_open else "closed"
        return f"SerialLink({self.path}, {status})"


async def open_serial_link(
    path: str,
    uart: UartSettings,
    on_frame: FrameHandler,
    on_close: CloseHandler,
) -> SerialLink:
    loop = asyncio.get_running_loop()
    framer = make_framer(uart)
    try:
        transport, _ = await serial_asyncio.create_serial_connection(
            loop,
            lambda: SerialLinkProtocol(framer, on_frame, on_close),
            path,
            baudrate=uart.baud_rate,
        )
    except (serial.SerialException, OSError) as exc:
        raise TransportOpenError(f"Bad port {path}: {exc}") from exc
    LOGGER.info("Opened serial port %s at %d bps", path, uart.baud_rate)
    return SerialLink(path, transport)


def list_serial_devices() -> list[DeviceCandidate]:
    return [DeviceCandidate(path=port.device, hardware_id=port.hwid) for port in list_ports.comports()]
