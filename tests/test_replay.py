"""Tests for replay.py — driving a standalone session from a JSONL log."""

from __future__ import annotations

import json

from napsync.replay import ReplayClock, replay_file

from tests.conftest import ACTIVE, RESTING, write_jsonl

T0 = 1_000.0


def sample_entry(timestamp: float, values: dict = RESTING) -> dict:
    return {"timestamp": timestamp, **values}


def resting_entries(start: float, count: int, spacing: float = 6.0) -> list[dict]:
    return [sample_entry(start + spacing * (i + 1)) for i in range(count)]


# ===================================================================
# Clock
# ===================================================================


class TestReplayClock:
    def test_only_moves_forward(self):
        clock = ReplayClock(10.0)
        clock.advance_to(20.0)
        clock.advance_to(15.0)
        assert clock() == 20.0


# ===================================================================
# replay_file
# ===================================================================


class TestReplayFile:
    def test_missing_file(self, tmp_path, capsys):
        result = replay_file(str(tmp_path / "nope.jsonl"))
        assert result == {}
        assert "File not found" in capsys.readouterr().out

    def test_implicit_schedule_at_first_sample(self, tmp_path):
        path = write_jsonl(tmp_path / "nap.jsonl", resting_entries(T0, 10))
        result = replay_file(str(path))

        assert result["samples"] == 10
        assert result["rejected"] == 0
        assert len(result["classifications"]) == 10
        session = result["session"]
        assert session["started_at"] == T0 + 6
        # asleep from the 5th sample on, detected once the settle period has passed
        assert session["sleep_detected_at"] == T0 + 36
        assert session["state"] == "WAKE_WINDOW"
        states = [t["new_state"] for t in result["transitions"]]
        assert states == ["SCHEDULED", "MONITORING", "SLEEP_DETECTED", "WAKE_WINDOW"]

    def test_explicit_schedule_and_cancel(self, tmp_path):
        entries = [{"timestamp": T0, "command": "schedule", "duration": 1200}]
        entries += resting_entries(T0, 3)
        entries.append({"timestamp": T0 + 20, "command": "cancel"})
        path = write_jsonl(tmp_path / "nap.jsonl", entries)

        session = replay_file(str(path))["session"]
        assert session["scheduled_duration"] == 1200
        assert session["started_at"] == T0
        assert session["state"] == "ABORTED"
        assert session["end_reason"] == "USER_CANCELLED"
        assert session["ended_at"] == T0 + 20

    def test_duration_argument_for_implicit_schedule(self, tmp_path):
        path = write_jsonl(tmp_path / "nap.jsonl", resting_entries(T0, 1))
        session = replay_file(str(path), duration=1800.0)["session"]
        assert session["scheduled_duration"] == 1800.0

    def test_out_of_order_samples_rejected(self, tmp_path):
        entries = [sample_entry(T0 + 10), sample_entry(T0 + 5), sample_entry(T0 + 20)]
        path = write_jsonl(tmp_path / "nap.jsonl", entries)
        result = replay_file(str(path))
        assert result["samples"] == 3
        assert result["rejected"] == 1
        assert len(result["classifications"]) == 2

    def test_skips_bad_lines(self, tmp_path):
        path = tmp_path / "nap.jsonl"
        with open(path, "w") as f:
            f.write(json.dumps(sample_entry(T0)) + "\n")
            f.write("{not json\n")
            f.write("\n")
            f.write(json.dumps({"note": "no timestamp"}) + "\n")
            f.write(json.dumps({"timestamp": T0 + 1, "heart_rate": 60}) + "\n")
            f.write(json.dumps(sample_entry(T0 + 6, ACTIVE)) + "\n")
        result = replay_file(str(path), verbose=True)
        assert result["samples"] == 2
        assert result["classifications"][-1]["window_end_time"] == T0 + 6

    def test_output_written(self, tmp_path):
        path = write_jsonl(tmp_path / "nap.jsonl", resting_entries(T0, 6))
        out = tmp_path / "summary.json"
        result = replay_file(str(path), output_path=str(out))
        with open(out) as f:
            written = json.load(f)
        assert written["samples"] == 6
        assert written["session"]["id"] == result["session"]["id"]

    def test_prints_summary(self, tmp_path, capsys):
        path = write_jsonl(tmp_path / "nap.jsonl", resting_entries(T0, 2))
        replay_file(str(path))
        out = capsys.readouterr().out
        assert "Replaying nap.jsonl" in out
        assert "Summary: 2 samples, 0 rejected, 2 transitions" in out
        assert "MONITORING" in out

    def test_deterministic(self, tmp_path):
        path = write_jsonl(tmp_path / "nap.jsonl", resting_entries(T0, 12))
        a = replay_file(str(path))
        b = replay_file(str(path))
        assert a["classifications"] == b["classifications"]
        assert [t["new_state"] for t in a["transitions"]] == [t["new_state"] for t in b["transitions"]]
