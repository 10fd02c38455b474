"""Serial device discovery with allow-list matching and per-device blacklisting."""

from __future__ import annotations

import asyncio
import logging
import math
import re
from collections.abc import Awaitable, Callable

from sensorgate.core.errors import PortSelectionError
from sensorgate.core.model import DeviceCandidate, DiscoveryState, PortSettings
from sensorgate.transports.serial_link import list_serial_devices

Lister = Callable[[], list[DeviceCandidate]]
LineSource = Callable[[], Awaitable[str]]
LOGGER = logging.getLogger(__name__)


class PortDiscovery:
    """Finds the serial device to connect to.

    Devices whose hardware id matches ``settings.allow_pattern`` are queued as
    candidates and tried round-robin. Each hardware id carries a counter of failed
    identify handshakes; ids above ``settings.max_tries`` are skipped until
    ``clear_blacklist`` runs. Counters survive ``reset`` between discovery cycles.
    """

    def __init__(
        self,
        settings: PortSettings,
        *,
        lister: Lister = list_serial_devices,
        line_source: LineSource | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.settings = settings
        self.state = DiscoveryState.IDLE
        self.blacklist: dict[str, int] = {}
        self._pattern = re.compile(settings.allow_pattern, re.IGNORECASE)
        self._lister = lister
        self._lines: asyncio.Queue[str] = asyncio.Queue()
        self._line_source = line_source or self._next_line
        self._sleep = sleep
        self._known: dict[str, str] = {}
        self._candidates: list[DeviceCandidate] = []
        self._cursor = 0
        self._last: DeviceCandidate | None = None

    @property
    def devices(self) -> list[DeviceCandidate]:
        return [DeviceCandidate(path=path, hardware_id=hwid) for path, hwid in self._known.items()]

    @property
    def candidates(self) -> list[DeviceCandidate]:
        return list(self._candidates)

    def is_accepted(self, hardware_id: str) -> bool:
        return self._pattern.search(hardware_id) is not None

    def is_blacklisted(self, hardware_id: str) -> bool:
        return self.blacklist.get(hardware_id, 0) > self.settings.max_tries

    def reset(self) -> None:
        """Forget the device list before a new cycle.

        The round-robin position and the blacklist counters are kept, so the next
        cycle starts at the candidate after the one tried last. Console lines queued
        before the new cycle are dropped.
        """
        self._known = {}
        self._candidates = []
        self.state = DiscoveryState.IDLE
        self._lines = asyncio.Queue()

    def feed_line(self, line: str) -> None:
        self._lines.put_nowait(line)

    async def _next_line(self) -> str:
        return await self._lines.get()

    def poll(self) -> tuple[list[DeviceCandidate], list[DeviceCandidate]]:
        """Re-list devices; return ``(arrived, departed)`` since the previous poll."""
        listed = {device.path: device.hardware_id for device in self._lister()}
        departed = [
            DeviceCandidate(path=path, hardware_id=hwid)
            for path, hwid in self._known.items()
            if path not in listed
        ]
        arrived = [
            DeviceCandidate(path=path, hardware_id=hwid)
            for path, hwid in listed.items()
            if path not in self._known
        ]

        for device in departed:
            del self._known[device.path]
        for device in arrived:
            self._known[device.path] = device.hardware_id

        gone = {device.path for device in departed}
        self._candidates = [c for c in self._candidates if c.path not in gone]
        accepted_ids = {c.hardware_id for c in self._candidates}
        for path, hwid in self._known.items():
            if hwid in accepted_ids or not self.is_accepted(hwid):
                continue
            self._candidates.append(DeviceCandidate(path=path, hardware_id=hwid))
            accepted_ids.add(hwid)
            self.blacklist.setdefault(hwid, 0)

        return arrived, departed

    def next_candidate(self) -> DeviceCandidate | None:
        for _ in range(len(self._candidates)):
            candidate = self._candidates[self._cursor % len(self._candidates)]
            self._cursor += 1
            if self.is_blacklisted(candidate.hardware_id):
                LOGGER.debug("Skipping blacklisted device %s (%s)", candidate.path, candidate.hardware_id)
                continue
            self._last = candidate
            return candidate
        return None

    def record_handshake_timeout(self) -> None:
        if self._last is None:
            return
        hwid = self._last.hardware_id
        self.blacklist[hwid] = self.blacklist.get(hwid, 0) + 1
        LOGGER.info("Device %s failed the handshake %d time(s)", self._last.path, self.blacklist[hwid])

    def clear_blacklist(self) -> None:
        for hwid in self.blacklist:
            self.blacklist[hwid] = 0

    def select(self, line: str) -> str:
        """Resolve a 1-based device number typed by the operator."""
        try:
            number = float(line.strip())
        except ValueError:
            raise PortSelectionError("The input should be a number.") from None
        if not math.isfinite(number):
            raise PortSelectionError("The input should be a number.")
        index = round(number)
        devices = self.devices
        if index < 1 or index > len(devices):
            raise PortSelectionError("Please choose one of the numbers above.")
        device = devices[index - 1]
        self.blacklist.setdefault(device.hardware_id, 0)
        self._last = device
        return device.path

    def describe(self) -> list[str]:
        lines = []
        for number, device in enumerate(self.devices, start=1):
            marker = "blacklisted" if self.is_blacklisted(device.hardware_id) else (
                "accepted" if self.is_accepted(device.hardware_id) else "-"
            )
            lines.append(f"{number}: {device.path} {device.hardware_id} [{marker}]")
        return lines

    async def _enumerate(self) -> str:
        while True:
            arrived, departed = self.poll()
            if arrived or departed:
                for line in self.describe():
                    LOGGER.info("%s", line)
            if self.settings.autofind:
                candidate = self.next_candidate()
                if candidate is not None:
                    self.state = DiscoveryState.CANDIDATE_FOUND
                    LOGGER.info("Device automatically found.")
                    return candidate.path
            await self._sleep(self.settings.poll_interval)

    async def _await_selection(self) -> str:
        while True:
            line = await self._line_source()
            try:
                return self.select(line)
            except PortSelectionError as exc:
                LOGGER.warning("%s", exc)

    async def find(self) -> str:
        """Resolve with exactly one device path."""
        self.reset()
        self.state = DiscoveryState.ENUMERATING
        LOGGER.info("Discovering serial devices...")

        if not self.settings.autofind:
            self.state = DiscoveryState.MANUAL_SELECTION_PENDING
            LOGGER.info("Choose port number:")
        tasks = [
            asyncio.ensure_future(self._enumerate()),
            asyncio.ensure_future(self._await_selection()),
        ]

        try:
            done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in tasks:
                task.cancel()
        path = next(iter(done)).result()
        self.state = DiscoveryState.CONNECTING
        LOGGER.info("Connecting to %s.", path)
        return path
