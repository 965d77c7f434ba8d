import pytest

from scanlink.core.errors import MalformedTelemetryError
from scanlink.core.telemetry_codec import TelemetryCodec, parse_frame, parse_line

from conftest import wait_for


@pytest.fixture
def codec(config):
    c = TelemetryCodec(config)
    yield c
    c.stop()


def collect(codec):
    received = []
    codec.field_updated.connect(lambda field: received.append((field.key, field.value)))
    return received


def test_parse_line_formats():
    assert parse_line('HOME:"210029585,1057336577"').value == "210029585,1057336577"
    assert parse_line('BATTERY : "87"').value == "87"
    field = parse_line("STATUS:1 ")
    assert (field.key, field.value) == ("STATUS", "1")
    assert parse_line('WP:3/5').value == "3/5"


@pytest.mark.parametrize("line", ["", "hello world", "lower:1", "KEY:", ":value", "1KEY:2"])
def test_parse_line_rejects_noise(line):
    with pytest.raises(MalformedTelemetryError):
        parse_line(line)


def test_parse_frame_keeps_every_valid_line():
    fields = parse_frame('STATUS:1\r\n~~noise~~\nBATTERY:"55"\n\nEKF:0\n')
    assert [(f.key, f.value) for f in fields] == [("STATUS", "1"), ("BATTERY", "55"), ("EKF", "0")]


def test_parse_frame_of_noise_is_empty():
    assert parse_frame("garbage\n###") == []


def test_duplicates_are_suppressed_except_progress(codec):
    codec.feed("BATTERY:87")
    codec.feed("BATTERY:87")
    codec.feed("BATTERY:86")
    codec.feed("WP:1/5")
    codec.feed("WP:1/5")

    received = collect(codec)
    codec.drain()

    assert received == [("BATTERY", "87"), ("BATTERY", "86"), ("WP", "1/5"), ("WP", "1/5")]


def test_latest_value_lookup(codec):
    codec.feed('HOME:"1,2"\nSTATUS:0')
    codec.feed("STATUS:1")

    assert codec.latest_value("STATUS") == "1"
    assert codec.get("HOME").value == "1,2"
    assert codec.latest_value("EKF") is None
    assert set(codec.snapshot()) == {"HOME", "STATUS"}


def test_forget_allows_same_value_again(codec):
    codec.feed("STATUS:1")
    codec.forget("STATUS")
    assert codec.latest_value("STATUS") is None
    assert [f.key for f in codec.feed("STATUS:1")] == ["STATUS"]


def test_bounded_queue_drops_oldest(codec):
    # queue_size is 8 in the test config
    for i in range(12):
        codec.feed(f"EKF:{i}")

    received = collect(codec)
    codec.drain()

    assert codec.dropped == 4
    assert [value for _, value in received] == [str(i) for i in range(4, 12)]


def test_dispatcher_thread_forwards(codec):
    received = collect(codec)
    codec.start()

    codec.feed('BATTERY:"90"\nWP:"2/4"')

    assert wait_for(lambda: len(received) == 2)
    assert received == [("BATTERY", "90"), ("WP", "2/4")]


def test_reset_clears_everything(codec):
    codec.feed("STATUS:1")
    codec.reset()
    assert codec.snapshot() == {}
    assert codec.pending() == 0
