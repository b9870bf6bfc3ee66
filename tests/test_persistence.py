"""
Tests for persistence — state recorder and run ledger.
"""

import json
import threading
from pathlib import Path

from provisioner.core.persistence.audit import RunEntry, RunLedger, ledger_path_for
from provisioner.core.persistence.state_file import (
    StateRecorder,
    default_state_path,
    load_store,
)


class TestStateRecorder:
    def test_unknown_step_is_none(self, recorder):
        assert recorder.get("nope") is None
        assert recorder.record("nope") is None
        assert recorder.all_records() == []

    def test_set_and_get(self, recorder):
        recorder.set("a", "pending")
        assert recorder.get("a") == "pending"
        recorder.set("a", "succeeded", fingerprint="abc", duration_ms=12)
        rec = recorder.record("a")
        assert rec.status == "succeeded"
        assert rec.fingerprint == "abc"
        assert rec.duration_ms == 12

    def test_error_and_timestamp_kept(self, recorder):
        recorder.set("a", "failed", timestamp="2024-01-01T00:00:00+00:00", error="boom")
        rec = recorder.record("a")
        assert rec.timestamp == "2024-01-01T00:00:00+00:00"
        assert rec.error == "boom"

    def test_persists_across_instances(self, state_path):
        StateRecorder(state_path).set("a", "succeeded", environment={"X": "1"})
        rec = StateRecorder(state_path).record("a")
        assert rec.status == "succeeded"
        assert rec.environment == {"X": "1"}

    def test_file_is_json_keyed_by_step(self, recorder, state_path):
        recorder.set("a", "succeeded")
        data = json.loads(state_path.read_text())
        assert data["schema_version"] == 1
        assert data["records"]["a"]["status"] == "succeeded"

    def test_no_temp_files_left_behind(self, recorder, state_path):
        for i in range(5):
            recorder.set(f"s{i}", "succeeded")
        leftovers = [p.name for p in state_path.parent.iterdir() if p.suffix == ".tmp"]
        assert leftovers == []

    def test_corrupt_state_is_empty(self, state_path, caplog):
        state_path.parent.mkdir(parents=True)
        state_path.write_text("{not json")

        with caplog.at_level("WARNING"):
            recorder = StateRecorder(state_path)
        assert recorder.get("a") is None
        assert "Corrupt state file" in caplog.text

    def test_corrupt_state_warns_once(self, state_path, caplog):
        state_path.parent.mkdir(parents=True)
        state_path.write_text("{not json")

        with caplog.at_level("WARNING"):
            recorder = StateRecorder(state_path)
            recorder.get("a")
            recorder.record("b")
            recorder.all_records()
        warnings = [r for r in caplog.records if r.levelname == "WARNING"]
        assert len(warnings) == 1

    def test_warns_again_after_file_rewritten_and_corrupted(self, state_path, caplog):
        state_path.parent.mkdir(parents=True)
        state_path.write_text("{not json")
        recorder = StateRecorder(state_path)
        recorder.set("a", "succeeded")
        state_path.write_text("{still not json")

        with caplog.at_level("WARNING"):
            assert recorder.get("a") is None
        assert "Corrupt state file" in caplog.text

    def test_invalid_schema_is_empty(self, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text(json.dumps({"records": {"a": {"status": "exploded"}}}))
        assert load_store(state_path).records == {}

    def test_corrupt_state_overwritten_by_next_write(self, state_path):
        state_path.parent.mkdir(parents=True)
        state_path.write_text("garbage")
        recorder = StateRecorder(state_path)
        recorder.set("a", "succeeded")
        assert StateRecorder(state_path).get("a") == "succeeded"

    def test_clear_all(self, recorder):
        recorder.set("a", "succeeded")
        recorder.set("b", "failed")
        assert recorder.clear() == 2
        assert recorder.all_records() == []

    def test_clear_some(self, recorder):
        recorder.set("a", "succeeded")
        recorder.set("b", "succeeded")
        assert recorder.clear(["a", "missing"]) == 1
        assert recorder.get("a") is None
        assert recorder.get("b") == "succeeded"

    def test_concurrent_writers_keep_every_record(self, state_path):
        recorders = [StateRecorder(state_path) for _ in range(4)]
        errors: list[BaseException] = []

        def write(rec: StateRecorder, prefix: str) -> None:
            try:
                for i in range(10):
                    rec.set(f"{prefix}-{i}", "succeeded")
            except BaseException as e:  # surfaced by the assertion below
                errors.append(e)

        threads = [
            threading.Thread(target=write, args=(rec, f"t{n}"))
            for n, rec in enumerate(recorders)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert len(StateRecorder(state_path).all_records()) == 40


class TestDefaultStatePath:
    def test_beside_plan(self, tmp_path: Path):
        assert default_state_path(tmp_path) == tmp_path / ".state" / "provision.json"

    def test_user_fallback(self):
        path = default_state_path(None)
        assert path.name == "provision.json"
        assert path.parent.name == "provisioner"


class TestRunLedger:
    def test_write_and_read(self, tmp_path: Path):
        ledger = RunLedger(tmp_path / "history.ndjson")
        ledger.write(RunEntry(run_id="run-1", plan="p", status="ok", steps_total=3, steps_run=3))
        ledger.write(RunEntry(run_id="run-2", plan="p", status="failed", failed_step="b"))

        entries = ledger.read_all()
        assert [e.run_id for e in entries] == ["run-1", "run-2"]
        assert entries[1].failed_step == "b"

    def test_one_line_per_entry(self, tmp_path: Path):
        path = tmp_path / "history.ndjson"
        ledger = RunLedger(path)
        ledger.write(RunEntry(run_id="a"))
        ledger.write(RunEntry(run_id="b"))
        lines = path.read_text().splitlines()
        assert len(lines) == 2
        assert json.loads(lines[0])["run_id"] == "a"

    def test_missing_ledger_is_empty(self, tmp_path: Path):
        assert RunLedger(tmp_path / "none.ndjson").read_all() == []

    def test_corrupt_lines_skipped(self, tmp_path: Path):
        path = tmp_path / "history.ndjson"
        ledger = RunLedger(path)
        ledger.write(RunEntry(run_id="good"))
        with path.open("a") as f:
            f.write("{broken\n")
        ledger.write(RunEntry(run_id="also-good"))
        assert [e.run_id for e in ledger.read_all()] == ["good", "also-good"]

    def test_read_recent(self, tmp_path: Path):
        ledger = RunLedger(tmp_path / "history.ndjson")
        for i in range(5):
            ledger.write(RunEntry(run_id=f"run-{i}"))
        assert [e.run_id for e in ledger.read_recent(2)] == ["run-3", "run-4"]

    def test_ledger_beside_state(self, state_path: Path):
        assert ledger_path_for(state_path) == state_path.parent / "history.ndjson"
