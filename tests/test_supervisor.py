from __future__ import annotations

import asyncio
import dataclasses

from sensorgate.core.discovery import PortDiscovery
from sensorgate.core.errors import TransportOpenError
from sensorgate.core.model import ConnectionState, DeviceCandidate
from sensorgate.core.outbound import OutboundQueue
from sensorgate.core.pipeline import FramePipeline
from sensorgate.core.session import SessionAccumulator
from sensorgate.core.supervisor import HEARTBEAT, IDENTIFY, ConnectionSupervisor, is_challenge_response

SERVER_TAG = "USB VID:PID=0451:BEF3 SER=L400 LOCATION=1-1:1.0"
OTHER_TAG = "USB VID:PID=0451:BEF3 SER=L401 LOCATION=1-2:1.0"


class FakeClock:
    def __init__(self) -> None:
        self.now = 1000.0

    def __call__(self) -> float:
        return self.now


class FakePublisher:
    def __init__(self) -> None:
        self.published = []

    def publish(self, topic, payload):
        self.published.append((topic, payload))


class FakeTransport:
    def __init__(self, on_close) -> None:
        self.is_open = True
        self.writes = []
        self._on_close = on_close

    def write(self, data: bytes) -> None:
        self.writes.append(data)

    def close(self) -> None:
        self.is_open = False
        asyncio.get_running_loop().call_soon(self._on_close, None)


class FakeOpener:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.paths = []
        self.on_frame = None
        self.on_close = None
        self.transport = None

    async def __call__(self, path, uart, on_frame, on_close):
        self.paths.append(path)
        if self.fail:
            raise TransportOpenError(f"Bad port {path}: busy")
        self.on_frame = on_frame
        self.on_close = on_close
        self.transport = FakeTransport(on_close)
        return self.transport


async def _no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


def _build(config, *, server: bool = True, opener: FakeOpener | None = None, devices=None, **overrides):
    devices = devices or [DeviceCandidate("/dev/ttyACM0", SERVER_TAG)]
    settings = dict(challenge_delay=0, challenge_timeout=5, settle_delay=0, heartbeat_interval=100)
    settings.update(overrides)
    config = dataclasses.replace(config, server=server, **settings)
    clock = FakeClock()
    publisher = FakePublisher()
    outbound = OutboundQueue(tx_length=config.uart.tx_length, server=server)
    sessions = SessionAccumulator.from_config(config, clock=clock)
    pipeline = FramePipeline(config, sessions, outbound.enqueue, publisher, clock=clock)
    discovery = PortDiscovery(
        config.ports,
        lister=lambda: list(devices),
        sleep=_no_sleep,
    )
    opener = opener or FakeOpener()
    supervisor = ConnectionSupervisor(config, discovery, pipeline, outbound, opener=opener, clock=clock)
    return supervisor, opener, publisher, clock


async def _wait_for_state(supervisor: ConnectionSupervisor, state: ConnectionState) -> None:
    while supervisor.state is not state:
        await asyncio.sleep(0)


def test_challenge_header_signature() -> None:
    assert is_challenge_response(b"\xfe\xfe\x01ServerTag")
    assert not is_challenge_response(b"\xfe\xfe\x02")
    assert not is_challenge_response(b"\xfe")


def test_challenge_response_connects_and_clears_blacklist(config) -> None:
    supervisor, opener, publisher, _ = _build(config)
    supervisor.discovery.blacklist["some other tag"] = 7

    async def scenario() -> None:
        task = asyncio.create_task(supervisor.connect_once())
        await _wait_for_state(supervisor, ConnectionState.AWAITING_CHALLENGE_RESPONSE)
        opener.on_frame(b"\x15\x00event:UP")
        assert supervisor.state is ConnectionState.AWAITING_CHALLENGE_RESPONSE

        opener.on_frame(b"\xfe\xfe\x01ServerTag v2")
        assert supervisor.state is ConnectionState.CONNECTED
        assert supervisor.discovery.blacklist == {"some other tag": 0, SERVER_TAG: 0}

        opener.on_frame(b"\x15\x00event:UP")
        supervisor.request_reconnect()
        await task

    asyncio.run(scenario())
    assert [topic for topic, _ in publisher.published] == ["event"]
    assert supervisor.state is ConnectionState.DISCOVERING
    assert supervisor.responded is False


def test_challenge_timeout_blacklists_and_closes(config) -> None:
    supervisor, opener, _, _ = _build(config, challenge_timeout=0.01)
    asyncio.run(asyncio.wait_for(supervisor.connect_once(), 2))

    assert supervisor.discovery.blacklist[SERVER_TAG] == 1
    assert opener.transport.is_open is False
    assert supervisor.outbound.pending[0].text == IDENTIFY
    assert supervisor.outbound.pending[0].internal is True


def test_next_cycle_tries_the_other_candidate(config) -> None:
    devices = [DeviceCandidate("/dev/ttyACM0", SERVER_TAG), DeviceCandidate("/dev/ttyACM2", OTHER_TAG)]
    supervisor, opener, _, _ = _build(config, devices=devices, challenge_timeout=0.01)

    async def two_cycles() -> None:
        await supervisor.connect_once()
        await supervisor.connect_once()

    asyncio.run(asyncio.wait_for(two_cycles(), 2))
    assert opener.paths == ["/dev/ttyACM0", "/dev/ttyACM2"]
    assert supervisor.discovery.blacklist == {SERVER_TAG: 1, OTHER_TAG: 1}


def test_unplug_during_handshake_does_not_blacklist(config) -> None:
    supervisor, opener, _, _ = _build(config, challenge_timeout=0.05, settle_delay=0.2)

    async def scenario() -> None:
        task = asyncio.create_task(supervisor.connect_once())
        await _wait_for_state(supervisor, ConnectionState.AWAITING_CHALLENGE_RESPONSE)
        await asyncio.sleep(0.01)
        opener.transport.is_open = False
        opener.on_close(OSError("device unplugged"))
        await task

    asyncio.run(asyncio.wait_for(scenario(), 2))
    assert supervisor.discovery.blacklist[SERVER_TAG] == 0
    assert supervisor.state is ConnectionState.DISCOVERING


def test_challenge_timer_is_ignored_while_closing(config) -> None:
    supervisor, _, _, _ = _build(config)
    supervisor.discovery.poll()
    supervisor.discovery.next_candidate()
    supervisor.state = ConnectionState.CLOSING
    supervisor._on_challenge_timer(supervisor.generation)
    assert supervisor.discovery.blacklist[SERVER_TAG] == 0


def test_frames_after_teardown_are_ignored(config) -> None:
    supervisor, opener, _, _ = _build(config, challenge_timeout=0.01)
    asyncio.run(asyncio.wait_for(supervisor.connect_once(), 2))

    opener.on_frame(b"\xfe\xfe\x01ServerTag")
    assert supervisor.responded is False
    assert supervisor.state is ConnectionState.DISCOVERING


def test_peer_mode_is_connected_without_challenge(config) -> None:
    supervisor, opener, publisher, _ = _build(config, server=False)

    async def scenario() -> None:
        task = asyncio.create_task(supervisor.connect_once())
        await _wait_for_state(supervisor, ConnectionState.CONNECTED)
        opener.on_frame(b"id:15,event:UP")
        supervisor.request_reconnect()
        await task

    asyncio.run(scenario())
    assert supervisor.outbound.pending == ()
    assert publisher.published[0][1]["sensortagID"] == "0015"


def test_open_failure_returns_to_discovery(config) -> None:
    supervisor, opener, _, _ = _build(config, opener=FakeOpener(fail=True))
    asyncio.run(supervisor.connect_once())
    assert opener.paths == ["/dev/ttyACM0"]
    assert supervisor.state is ConnectionState.DISCOVERING


def test_decode_errors_do_not_escape_frame_handler(config, caplog) -> None:
    supervisor, _, publisher, _ = _build(config, server=False)
    supervisor.generation = 1
    supervisor.on_open(1)

    supervisor.handle_frame(1, b"id:15,evnt:UP")

    assert publisher.published == []
    assert 'Did you mean "event"?' in caplog.text


def test_heartbeat_warns_only_inside_window(config, caplog) -> None:
    supervisor, _, _, clock = _build(config, heartbeat_interval=10)
    supervisor.last_seen = clock.now

    clock.now += 16
    supervisor.heartbeat_tick()
    assert "possibly crashed" in caplog.text

    caplog.clear()
    clock.now += 10
    supervisor.heartbeat_tick()
    assert "possibly crashed" not in caplog.text

    assert [job.text for job in supervisor.outbound.pending] == [HEARTBEAT, HEARTBEAT]


def test_heartbeat_echo_after_silence_logs_reconnect(config, caplog) -> None:
    supervisor, _, publisher, clock = _build(config, heartbeat_interval=10)
    supervisor.generation = 1
    supervisor.responded = True
    supervisor.state = ConnectionState.CONNECTED
    supervisor.last_seen = clock.now

    clock.now += 20
    with caplog.at_level("INFO"):
        supervisor.handle_frame(1, b"\xfe\xfe\x01HB")

    assert "reconnected" in caplog.text
    assert supervisor.last_seen == clock.now
    assert publisher.published == []
