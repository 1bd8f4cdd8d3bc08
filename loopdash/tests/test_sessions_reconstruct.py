import json
import tempfile
import unittest
from datetime import datetime, timezone
from pathlib import Path

from loopdash.models import CompletionEvent, StartEvent
from loopdash.parsers.events import read_log_entries
from loopdash.sessions import (
    UNKNOWN_ORIGIN_TASK,
    StateSnapshot,
    extract_completion_promise,
    list_sessions,
    reconstruct_sessions,
)

NOW = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)


def _start(loop_id: str | None, started_at: str, **extra) -> StartEvent:
    payload = {
        "loop_id": loop_id,
        "session_id": extra.pop("session_id", f"sess-{loop_id}"),
        "status": "active",
        "project": "/work/demo",
        "project_name": "demo",
        "task": "Build the thing",
        "started_at": started_at,
        "max_iterations": 10,
    }
    payload.update(extra)
    return StartEvent.model_validate(payload)


def _completion(loop_id: str | None, ended_at: str, outcome: str = "success", **extra) -> CompletionEvent:
    payload = {
        "loop_id": loop_id,
        "session_id": extra.pop("session_id", f"sess-{loop_id}"),
        "status": "completed",
        "outcome": outcome,
        "ended_at": ended_at,
        "duration_seconds": 120,
        "iterations": 4,
    }
    payload.update(extra)
    return CompletionEvent.model_validate(payload)


def _present(iteration: int | None = 2):
    return lambda path: StateSnapshot(exists=True, iteration=iteration)


def _missing(path: str) -> StateSnapshot:
    return StateSnapshot(exists=False)


class SessionReconstructionTests(unittest.TestCase):
    def test_reconstruction_is_idempotent(self) -> None:
        entries = [
            _start("loop-a", "2026-03-01T10:00:00Z", state_file_path="/x/a.md"),
            _start("loop-b", "2026-03-01T09:00:00Z"),
            _completion("loop-b", "2026-03-01T09:30:00Z"),
        ]

        first = reconstruct_sessions(entries, now=NOW, state_reader=_present())
        second = reconstruct_sessions(entries, now=NOW, state_reader=_present())

        self.assertEqual(first, second)

    def test_active_first_then_newest_first(self) -> None:
        entries = [
            _start("old", "2026-03-01T08:00:00Z"),
            _completion("old", "2026-03-01T08:10:00Z"),
            _start("running-1", "2026-03-01T07:00:00Z"),
            _start("new", "2026-03-01T11:00:00Z"),
            _completion("new", "2026-03-01T11:10:00Z", outcome="max_iterations"),
            _start("running-2", "2026-03-01T11:30:00Z"),
        ]

        sessions = reconstruct_sessions(entries, now=NOW, state_reader=_present())

        self.assertEqual([s.loop_id for s in sessions], ["running-1", "running-2", "new", "old"])
        self.assertEqual(sessions[2].status, "max_iterations")

    def test_active_session_reports_elapsed_duration_and_live_iteration(self) -> None:
        entries = [_start("loop-a", "2026-03-01T11:58:00Z", state_file_path="/x/a.md")]

        session = reconstruct_sessions(entries, now=NOW, state_reader=_present(7))[0]

        self.assertEqual(session.status, "active")
        self.assertIsNone(session.outcome)
        self.assertEqual(session.duration_seconds, 120)
        self.assertEqual(session.iterations, 7)
        self.assertIsNone(session.ended_at)

    def test_completed_session_uses_stored_values(self) -> None:
        entries = [
            _start("loop-a", "2026-03-01T10:00:00Z"),
            _completion("loop-a", "2026-03-01T10:02:00Z", outcome="success", duration_seconds=95, iterations=3),
        ]

        session = reconstruct_sessions(entries, now=NOW, state_reader=_present())[0]

        self.assertEqual(session.status, "success")
        self.assertEqual(session.outcome, "success")
        self.assertEqual(session.duration_seconds, 95)
        self.assertEqual(session.iterations, 3)
        self.assertEqual(session.ended_at, "2026-03-01T10:02:00Z")

    def test_error_reason_only_kept_for_error_outcome(self) -> None:
        entries = [
            _start("failed", "2026-03-01T10:00:00Z"),
            _completion("failed", "2026-03-01T10:01:00Z", outcome="error", error_reason="hook crashed"),
            _start("ok", "2026-03-01T10:05:00Z"),
            _completion("ok", "2026-03-01T10:06:00Z", outcome="success", error_reason="stale"),
        ]

        by_id = {s.loop_id: s for s in reconstruct_sessions(entries, now=NOW, state_reader=_present())}

        self.assertEqual(by_id["failed"].error_reason, "hook crashed")
        self.assertIsNone(by_id["ok"].error_reason)

    def test_latest_start_and_completion_win(self) -> None:
        entries = [
            _start("loop-a", "2026-03-01T09:00:00Z", task="first"),
            _start("loop-a", "2026-03-01T09:05:00Z", task="second"),
            _completion("loop-a", "2026-03-01T09:10:00Z", outcome="error"),
            _completion("loop-a", "2026-03-01T09:20:00Z", outcome="cancelled"),
        ]

        sessions = reconstruct_sessions(entries, now=NOW, state_reader=_present())

        self.assertEqual(len(sessions), 1)
        self.assertEqual(sessions[0].task, "second")
        self.assertEqual(sessions[0].outcome, "cancelled")

    def test_completion_without_start_is_dropped_by_default(self) -> None:
        entries = [_completion("ghost", "2026-03-01T09:00:00Z")]

        self.assertEqual(reconstruct_sessions(entries, now=NOW, state_reader=_present()), [])

    def test_completion_without_start_can_be_surfaced_as_orphan(self) -> None:
        entries = [_completion("ghost", "2026-03-01T09:00:00Z", outcome="success")]

        sessions = reconstruct_sessions(entries, now=NOW, state_reader=_present(), include_unmatched=True)

        self.assertEqual(len(sessions), 1)
        self.assertEqual(sessions[0].status, "orphaned")
        self.assertEqual(sessions[0].task, UNKNOWN_ORIGIN_TASK)
        self.assertEqual(sessions[0].loop_id, "ghost")

    def test_active_session_with_missing_state_file_is_orphaned(self) -> None:
        entries = [_start("loop-a", "2026-03-01T10:00:00Z", state_file_path="/gone/state.md")]

        session = reconstruct_sessions(entries, now=NOW, state_reader=_missing)[0]

        self.assertEqual(session.status, "orphaned")
        self.assertIsNone(session.outcome)

    def test_active_session_without_state_path_stays_active(self) -> None:
        calls: list[str] = []

        def reader(path: str) -> StateSnapshot:
            calls.append(path)
            return StateSnapshot(exists=False)

        session = reconstruct_sessions([_start("loop-a", "2026-03-01T10:00:00Z")], now=NOW, state_reader=reader)[0]

        self.assertEqual(session.status, "active")
        self.assertEqual(calls, [])

    def test_legacy_restart_supersedes_earlier_completion(self) -> None:
        entries = [
            _start(None, "2026-03-01T09:00:00Z", session_id="term-1"),
            _completion(None, "2026-03-01T09:30:00Z", session_id="term-1"),
            _start(None, "2026-03-01T10:00:00Z", session_id="term-1"),
        ]

        session = reconstruct_sessions(entries, now=NOW, state_reader=_present())[0]

        self.assertEqual(session.loop_id, "term-1")
        self.assertEqual(session.status, "active")
        self.assertIsNone(session.outcome)
        self.assertIsNone(session.ended_at)

    def test_legacy_completion_after_restart_completes(self) -> None:
        entries = [
            _start(None, "2026-03-01T09:00:00Z", session_id="term-1"),
            _start(None, "2026-03-01T10:00:00Z", session_id="term-1"),
            _completion(None, "2026-03-01T10:30:00Z", session_id="term-1"),
        ]

        session = reconstruct_sessions(entries, now=NOW, state_reader=_present())[0]

        self.assertEqual(session.status, "success")

    def test_loop_ids_keep_sessions_in_same_terminal_apart(self) -> None:
        entries = [
            _start("loop-1", "2026-03-01T09:00:00Z", session_id="term-1"),
            _completion("loop-1", "2026-03-01T09:30:00Z", session_id="term-1"),
            _start("loop-2", "2026-03-01T10:00:00Z", session_id="term-1"),
        ]

        by_id = {s.loop_id: s for s in reconstruct_sessions(entries, now=NOW, state_reader=_present())}

        self.assertEqual(by_id["loop-1"].status, "success")
        self.assertEqual(by_id["loop-2"].status, "active")


class CompletionPromiseTests(unittest.TestCase):
    def test_unquoted_promise_is_extracted_and_stripped(self) -> None:
        task, promise = extract_completion_promise("Fix the bug --completion-promise=DONE and ship")
        self.assertEqual(task, "Fix the bug and ship")
        self.assertEqual(promise, "DONE")

    def test_quoted_multi_word_promise_keeps_first_word_only(self) -> None:
        task, promise = extract_completion_promise('Do X --completion-promise="ALL DONE"')
        self.assertEqual(task, "Do X")
        self.assertEqual(promise, "ALL")

    def test_single_quoted_promise(self) -> None:
        task, promise = extract_completion_promise("Refactor --completion-promise='FINISHED'")
        self.assertEqual(task, "Refactor")
        self.assertEqual(promise, "FINISHED")

    def test_task_without_flag_is_untouched(self) -> None:
        self.assertEqual(extract_completion_promise("Plain task"), ("Plain task", None))
        self.assertEqual(extract_completion_promise(""), ("", None))

    def test_explicit_promise_wins_over_extracted(self) -> None:
        entries = [
            _start(
                "loop-a",
                "2026-03-01T10:00:00Z",
                task="Ship it --completion-promise=SHIPPED",
                completion_promise="EXPLICIT",
            )
        ]

        session = reconstruct_sessions(entries, now=NOW, state_reader=_present())[0]

        self.assertEqual(session.task, "Ship it")
        self.assertEqual(session.completion_promise, "EXPLICIT")

    def test_extracted_promise_fills_missing_value(self) -> None:
        entries = [_start("loop-a", "2026-03-01T10:00:00Z", task="Ship it --completion-promise=SHIPPED")]

        session = reconstruct_sessions(entries, now=NOW, state_reader=_present())[0]

        self.assertEqual(session.completion_promise, "SHIPPED")


class SessionsFromLogFileTests(unittest.TestCase):
    def _write_log(self, lines: list[str]) -> Path:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)
        path = Path(tmpdir.name) / "sessions.jsonl"
        path.write_text("".join(f"{line}\n" for line in lines), encoding="utf-8")
        return path

    def test_fresh_reads_yield_identical_sessions(self) -> None:
        path = self._write_log(
            [
                json.dumps({"loop_id": "a", "session_id": "s", "status": "active", "started_at": "2026-03-01T10:00:00Z"}),
                "not json at all",
                "",
                json.dumps({"loop_id": "a", "session_id": "s", "status": "completed", "outcome": "success",
                            "ended_at": "2026-03-01T10:05:00Z", "duration_seconds": 300, "iterations": 2}),
            ]
        )

        first = reconstruct_sessions(read_log_entries(path), now=NOW, state_reader=_present())
        second = reconstruct_sessions(read_log_entries(path), now=NOW, state_reader=_present())

        self.assertEqual(first, second)
        self.assertEqual(len(first), 1)
        self.assertEqual(first[0].status, "success")

    def test_list_sessions_on_missing_log_is_empty(self) -> None:
        tmpdir = tempfile.TemporaryDirectory()
        self.addCleanup(tmpdir.cleanup)

        self.assertEqual(list_sessions(Path(tmpdir.name) / "missing.jsonl", with_checklists=False), [])


if __name__ == "__main__":
    unittest.main()
