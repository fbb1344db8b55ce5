"""Tests for the file-based progress channel."""

from __future__ import annotations

import threading
import time
from pathlib import Path

import pytest

from sprint_runner.channel import CompletionSignal, ProgressChannel
from sprint_runner.errors import IPCError, SessionConflictError


@pytest.fixture
def channel(tmp_path: Path) -> ProgressChannel:
    return ProgressChannel(tmp_path / ".sprint_runner", poll_interval_seconds=0.05, ipc_backoff_seconds=0.001)


class TestProgress:
    def test_progress_records_are_appended(self, channel: ProgressChannel) -> None:
        channel.report_progress("t1", "session-1", 10, "started")
        channel.heartbeat("t1", "session-1", message="still going")
        records = channel.progress("t1")
        assert [r.message for r in records] == ["started", "still going"]
        assert records[0].percent == 10.0
        assert records[1].percent is None

    def test_last_heartbeat_filters_by_session(self, channel: ProgressChannel) -> None:
        assert channel.last_heartbeat("t1") is None
        channel.report_progress("t1", "session-old")
        assert channel.last_heartbeat("t1", "session-new") is None
        channel.report_progress("t1", "session-new")
        assert channel.last_heartbeat("t1", "session-new") is not None


class TestSignals:
    def test_signal_is_written_once(self, channel: ProgressChannel) -> None:
        channel.signal_success("t1", "session-1", summary="done", files_changed=["a.py"])
        with pytest.raises(FileExistsError):
            channel.signal_failure("t1", "session-1", {"reason": "late"})
        signal = channel.read_signal("t1")
        assert signal.success
        assert signal.files_changed == ["a.py"]
        assert not list(channel.signals_dir.glob(".*.tmp"))

    def test_read_missing_signal(self, channel: ProgressChannel) -> None:
        assert channel.read_signal("nope") is None

    def test_poll_and_acknowledge_exactly_once(self, channel: ProgressChannel) -> None:
        channel.signal_success("t1", "session-1", summary="one")
        channel.signal_failure("t2", "session-2", {"reason": "crashed", "exit_code": 3})

        first = channel.poll_completions()
        assert {s.task_id for s in first} == {"t1", "t2"}
        failure = next(s for s in first if s.task_id == "t2")
        assert not failure.success
        assert failure.error["exit_code"] == 3

        for signal in first:
            channel.acknowledge(signal)
        assert channel.poll_completions() == []
        # a fresh channel over the same directory agrees
        assert ProgressChannel(channel.state_dir).poll_completions() == []

    def test_invalidate_allows_new_signal(self, channel: ProgressChannel) -> None:
        channel.signal_failure("t1", "session-1", {"reason": "stalled"})
        target = channel.invalidate("t1")
        assert target is not None and target.name == "t1.1.json"
        assert channel.read_signal("t1") is None
        channel.signal_success("t1", "session-2", summary="second try")
        channel.invalidate("t1")
        archived = channel.invalidated("t1")
        assert [s.session_id for s in archived] == ["session-1", "session-2"]
        assert channel.invalidate("t1") is None

    def test_claim_archives_earlier_signal_and_refuses_other_sessions(self, channel: ProgressChannel) -> None:
        channel.signal_failure("t1", "session-1", {"reason": "stalled"})
        target = channel.claim("t1", "session-2")
        assert target is not None and target.name == "t1.1.json"
        assert channel.owner("t1") == "session-2"

        with pytest.raises(SessionConflictError):
            channel.signal_success("t1", "session-1", summary="late result")
        assert channel.read_signal("t1") is None

        channel.signal_success("t1", "session-2", summary="retry result")
        assert channel.read_signal("t1").summary == "retry result"
        assert [s.signal_id for s in channel.poll_completions()] == [channel.read_signal("t1").signal_id]

    def test_release_claim_reopens_the_slot(self, channel: ProgressChannel) -> None:
        channel.claim("t1", "session-1")
        channel.claim("t2", "session-9")
        channel.release_claim("t1")
        channel.release_claim("t1")
        assert channel.owner("t1") is None
        assert channel.owner("t2") == "session-9"
        channel.signal_success("t1", "manual", summary="done by hand")
        assert channel.read_signal("t1").session_id == "manual"

    def test_from_dict_accepts_camel_case(self) -> None:
        signal = CompletionSignal.from_dict(
            {
                "taskId": "t1",
                "sessionId": "s",
                "status": "success",
                "summary": "ok",
                "filesChanged": ["x.py"],
                "designDecisions": ["d"],
                "error": "ignored on success",
            }
        )
        assert signal.task_id == "t1"
        assert signal.files_changed == ["x.py"]
        assert signal.completion_notes()["design_decisions"] == ["d"]
        assert signal.error == {"reason": "ignored on success"}

    def test_missing_status_means_failure(self) -> None:
        assert not CompletionSignal.from_dict({"task_id": "t1"}).success


class TestRetry:
    def test_transient_errors_are_retried(self, channel: ProgressChannel) -> None:
        calls = []

        def flaky() -> str:
            calls.append(1)
            if len(calls) < 3:
                raise OSError("disk busy")
            return "ok"

        assert channel._with_retry("test op", flaky) == "ok"
        assert len(calls) == 3

    def test_gives_up_with_ipc_error(self, channel: ProgressChannel) -> None:
        def always_fails() -> None:
            raise OSError("read-only file system")

        with pytest.raises(IPCError) as exc_info:
            channel._with_retry("test op", always_fails)
        assert exc_info.value.details["attempts"] == channel.ipc_max_attempts
        assert "read-only" in exc_info.value.message


class TestWatch:
    def test_wait_times_out(self, channel: ProgressChannel) -> None:
        channel.wait(0)
        started = time.monotonic()
        assert channel.wait(0.05) is False
        assert time.monotonic() - started >= 0.04

    def test_signal_write_wakes_waiter(self, channel: ProgressChannel) -> None:
        channel.wait(0)
        woke = []
        waiter = threading.Thread(target=lambda: woke.append(channel.wait(5)))
        waiter.start()
        time.sleep(0.05)
        channel.signal_success("t1", "session-1", summary="done")
        waiter.join(timeout=5)
        assert woke == [True]
