from __future__ import annotations

import dataclasses

import pytest

from sensorgate.core.errors import CapacityError, NoSessionError, UnknownFieldError
from sensorgate.core.pipeline import FramePipeline
from sensorgate.core.session import SessionAccumulator


class FakePublisher:
    def __init__(self) -> None:
        self.published: list[tuple[str, dict]] = []

    def publish(self, topic, payload):
        self.published.append((topic, payload))


class FakeClock:
    def __init__(self) -> None:
        self.now = 10.0

    def __call__(self) -> float:
        return self.now


def _pipeline(config, *, server: bool = False, max_rows: int | None = None):
    config = dataclasses.replace(
        config,
        server=server,
        max_session_rows=max_rows or config.max_session_rows,
    )
    clock = FakeClock()
    sent = []
    publisher = FakePublisher()
    sessions = SessionAccumulator.from_config(config, clock=clock)
    pipeline = FramePipeline(config, sessions, sent.append, publisher, clock=clock)
    return pipeline, publisher, sent, clock


def test_session_flush_and_pong_from_single_frame(config) -> None:
    pipeline, publisher, sent, _ = _pipeline(config)
    result = pipeline.process(b"id:15,session:start,temp:27.82,session:end,ping")

    assert result.address == "0015"
    assert len(publisher.published) == 1
    topic, payload = publisher.published[0]
    assert topic == "sensordata"
    assert payload["sensortagID"] == "0015"
    assert payload["temperature"] == [27.82]
    assert len(sent) == 1
    assert sent[0].address == "0015"
    assert sent[0].text == "pong"


def test_data_rows_are_absorbed_into_open_session(config) -> None:
    pipeline, publisher, _, _ = _pipeline(config)
    pipeline.process(b"id:15,session:start")
    pipeline.process(b"id:15,temp:1.5")
    pipeline.process(b"id:15,temp:2.5,humid:30")
    assert publisher.published == []
    pipeline.process(b"id:15,session:end")
    payload = publisher.published[0][1]
    assert payload["temperature"] == [1.5, 2.5]
    assert payload["humidity"] == [None, 30.0]


def test_event_topic_gets_timestamp(config) -> None:
    pipeline, publisher, _, _ = _pipeline(config)
    pipeline.process(b"id:7,event:LEFT")
    topic, payload = publisher.published[0]
    assert topic == "event"
    assert payload["sensortagID"] == "0007"
    assert payload["movement"] == "LEFT"
    assert payload["timeStamp"].endswith("Z")


def test_device_time_is_kept(config) -> None:
    pipeline, publisher, _, _ = _pipeline(config)
    pipeline.process(b"id:7,time:1234,event:UP")
    assert publisher.published[0][1]["timeStamp"] == 1234


def test_action_effects_are_summed_into_event(config) -> None:
    pipeline, publisher, _, _ = _pipeline(config)
    pipeline.process(b"id:0023,EAT:8,PET:2")
    assert [topic for topic, _ in publisher.published] == ["event"]
    payload = publisher.published[0][1]
    assert payload["sensortagID"] == "0023"
    assert payload["tamaActions"] == [8, 0, 2]


def test_server_frames_carry_sender_address(config) -> None:
    pipeline, publisher, _, _ = _pipeline(config, server=True)
    frame = b"\x23\x00event:DOWN".ljust(32, b"\x00")
    result = pipeline.process(frame)
    assert result.address == "0023"
    assert publisher.published[0][1]["sensortagID"] == "0023"


def test_heartbeat_echo_is_not_tokenized(config) -> None:
    pipeline, publisher, _, _ = _pipeline(config, server=True)
    result = pipeline.process(b"\xfe\xfe\x01HB".ljust(32, b"\x00"))
    assert result.heartbeat is True
    assert publisher.published == []


def test_device_log_lines_are_not_tokenized(config) -> None:
    pipeline, publisher, _, _ = _pipeline(config, server=True)
    result = pipeline.process(b"\x01\x00|radio up")
    assert result.device_log == "radio up"
    assert publisher.published == []


def test_escaped_terminator_is_decoded_before_tokenizing(config) -> None:
    pipeline, _, _, _ = _pipeline(config, server=True)
    address, text = pipeline.frame_text(b"\x10\x1a\x01temp:1")
    assert address == "0100"
    assert text == "id:0100,temp:1"


def test_decode_error_publishes_nothing(config) -> None:
    pipeline, publisher, sent, _ = _pipeline(config)
    with pytest.raises(UnknownFieldError):
        pipeline.process(b"id:15,ping,bogus:1")
    assert publisher.published == []
    assert sent == []


def test_capacity_error_keeps_session(config) -> None:
    pipeline, publisher, _, _ = _pipeline(config, max_rows=1)
    pipeline.process(b"id:15,session:start,temp:1")
    with pytest.raises(CapacityError):
        pipeline.process(b"id:15,temp:2")
    pipeline.process(b"id:15,session:end")
    assert publisher.published[0][1]["temperature"] == [1.0]


def test_heard_within_tracks_last_frame(config) -> None:
    pipeline, _, _, clock = _pipeline(config)
    pipeline.process(b"id:15,event:UP")
    assert pipeline.heard_within("0015", 60)
    clock.now += 61
    assert not pipeline.heard_within("0015", 60)
    assert not pipeline.heard_within("0099", 60)


def test_rejected_row_still_marks_address_heard(config) -> None:
    pipeline, _, _, _ = _pipeline(config)
    with pytest.raises(NoSessionError):
        pipeline.process(b"id:15,temp:1")
    assert pipeline.heard_within("0015", 60)


def test_ping_replies_are_not_coalesced(config) -> None:
    pipeline, _, sent, _ = _pipeline(config)
    pipeline.process(b"id:15,ping")
    pipeline.process(b"id:15,ping")
    assert [request.text for request in sent] == ["pong", "pong"]
    assert all(request.coalesce is False for request in sent)
