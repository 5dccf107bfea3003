"""
Tests for reassembler.py: receiver-side session tracking.
"""

import asyncio
import json

import pytest

from filedrop.reassembler import Reassembler


class FakeClock:
    def __init__(self, now: float = 100.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


def metadata(name, size, mime_type=None):
    frame = {"type": "file-metadata", "name": name, "size": size}
    if mime_type is not None:
        frame["mimeType"] = mime_type
    return json.dumps(frame)


COMPLETE = json.dumps({"type": "file-complete"})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def reassembler(clock):
    return Reassembler(idle_timeout=30, clock=clock)


class TestSingleFile:
    def test_scenario_small_text_file(self, reassembler):
        content = b"hello, world!"
        reassembler.feed(metadata("x.txt", 13))
        reassembler.feed(content)
        reassembler.feed(COMPLETE)

        received = reassembler.materialize("x.txt")
        assert received.data == content
        assert received.mime_type == "application/octet-stream"

    def test_empty_mime_type_defaults(self, reassembler):
        reassembler.feed(metadata("a", 1, mime_type=""))
        assert reassembler.sessions["a"].metadata.mime_type == "application/octet-stream"

    def test_progress_is_monotonic_and_ends_at_100(self, reassembler, clock):
        reassembler.feed(metadata("f", 10))
        seen = [reassembler.progress("f")]
        for _ in range(5):
            clock.now += 1
            reassembler.feed(b"xx")
            seen.append(reassembler.progress("f"))

        assert seen == sorted(seen)
        assert seen[:-1] == pytest.approx([0, 20, 40, 60, 80])
        assert seen[-1] == 100

    def test_speed_measured_from_session_start(self, reassembler, clock):
        reassembler.feed(metadata("f", 1000))
        clock.now += 2
        reassembler.feed(b"x" * 500)
        assert reassembler.sessions["f"].speed == 250

    def test_materialize_requires_completion(self, reassembler):
        with pytest.raises(KeyError):
            reassembler.materialize("missing")
        reassembler.feed(metadata("f", 4))
        reassembler.feed(b"ab")
        with pytest.raises(KeyError):
            reassembler.materialize("f")


class TestOutOfPlaceFrames:
    def test_data_without_metadata_is_ignored(self, reassembler):
        reassembler.feed(b"orphan")
        assert reassembler.sessions == {}
        assert reassembler.current is None

    def test_repeated_completion_is_a_no_op(self, reassembler):
        completed = []
        reassembler.on_file_complete = completed.append
        reassembler.feed(metadata("f", 3))
        reassembler.feed(b"abc")
        reassembler.feed(COMPLETE)
        reassembler.feed(COMPLETE)

        assert reassembler.materialize("f").data == b"abc"
        assert len(completed) == 1

    def test_early_completion_keeps_session_open(self, reassembler):
        reassembler.feed(metadata("f", 6))
        reassembler.feed(b"abc")
        reassembler.feed(COMPLETE)
        assert not reassembler.sessions["f"].completed
        assert reassembler.current is reassembler.sessions["f"]

        reassembler.feed(b"def")
        reassembler.feed(COMPLETE)
        assert reassembler.materialize("f").data == b"abcdef"

    def test_extra_data_after_declared_size_is_ignored(self, reassembler):
        reassembler.feed(metadata("f", 3))
        reassembler.feed(b"abc")
        reassembler.feed(b"late")
        reassembler.feed(COMPLETE)
        assert reassembler.materialize("f").data == b"abc"

    @pytest.mark.parametrize("frame", [
        "not json",
        json.dumps(["file-metadata"]),
        json.dumps({"type": "mystery"}),
        metadata("", 10),
        metadata("f", -1),
    ])
    def test_bad_control_frames_are_ignored(self, reassembler, frame):
        reassembler.feed(frame)
        assert reassembler.sessions == {}


class TestSessionSwitching:
    def test_new_metadata_displaces_incomplete_session(self, reassembler):
        reassembler.feed(metadata("first", 10))
        reassembler.feed(b"12345")
        reassembler.feed(metadata("second", 2))
        reassembler.feed(b"ab")
        reassembler.feed(COMPLETE)

        assert "first" not in reassembler.sessions
        assert reassembler.materialize("second").data == b"ab"

    def test_data_after_second_metadata_belongs_to_second(self, reassembler):
        reassembler.feed(metadata("one", 2))
        reassembler.feed(b"11")
        reassembler.feed(COMPLETE)
        reassembler.feed(metadata("two", 2))
        reassembler.feed(b"22")
        reassembler.feed(COMPLETE)

        assert reassembler.materialize("one").data == b"11"
        assert reassembler.materialize("two").data == b"22"
        assert reassembler.completed_files() == ["one", "two"]

    def test_stalled_session_expires(self, reassembler, clock):
        reassembler.feed(metadata("f", 10))
        reassembler.feed(b"12345")

        clock.now += 29
        assert reassembler.expire_stalled() is None
        clock.now += 1
        assert reassembler.expire_stalled() == "f"
        assert reassembler.current is None
        assert "f" not in reassembler.sessions

        reassembler.feed(b"67890")
        assert reassembler.sessions == {}

    async def test_expiry_loop_abandons_stalled_session(self, clock):
        reassembler = Reassembler(idle_timeout=30, clock=clock, check_interval=0.01)
        reassembler.feed(metadata("f", 10))
        reassembler.feed(b"123")

        task = asyncio.create_task(reassembler.run_expiry())
        try:
            await asyncio.sleep(0.03)
            assert reassembler.current is not None
            clock.now += 30
            await asyncio.sleep(0.05)
            assert reassembler.current is None
            assert reassembler.sessions == {}
        finally:
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task

    def test_reset_discards_everything(self, reassembler):
        reassembler.feed(metadata("f", 1))
        reassembler.feed(b"x")
        reassembler.feed(COMPLETE)
        reassembler.feed(metadata("g", 5))

        reassembler.reset()

        assert reassembler.sessions == {}
        assert reassembler.current is None
