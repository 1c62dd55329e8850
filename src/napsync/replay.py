"""Replay recorded sample logs through a standalone orchestrator.

A log is JSONL, one object per line.  Sample lines carry
``timestamp``, ``heart_rate``, ``hrv`` and ``motion``.  Optional command
lines steer the session:

    {"timestamp": 1000.0, "command": "schedule", "duration": 1800}
    {"timestamp": 2500.0, "command": "cancel"}

Without a schedule command a nap is scheduled and started at the first
sample.  Session time follows the log's timestamps, so a replay is fully
deterministic.
"""

from __future__ import annotations

import json
import sys
from pathlib import Path

from napsync.analytics.classifier import ClassificationResult
from napsync.analytics.window import SensorSample
from napsync.config import DEFAULT_CONFIG, NapConfig
from napsync.exceptions import SessionActiveError
from napsync.orchestrator import Role, SessionOrchestrator
from napsync.session import SessionTransition


class ReplayClock:
    """Clock that only moves when the replay advances it."""

    def __init__(self, start: float = 0.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_to(self, t: float) -> None:
        if t > self.now:
            self.now = t


def replay_file(
    log_path: str,
    config: NapConfig = DEFAULT_CONFIG,
    duration: float | None = None,
    output_path: str | None = None,
    verbose: bool = False,
) -> dict:
    """Replay a .jsonl sample log and return a summary.

    Args:
        log_path: Path to the .jsonl log.
        config: Configuration for the orchestrator.
        duration: Nap length in seconds for the implicit schedule.
        output_path: Optional path to write the summary as JSON.
        verbose: If True, print every classification and skipped line.

    Returns:
        Dict with the final session, all transitions and classifications.
    """
    path = Path(log_path)
    if not path.exists():
        print(f"File not found: {log_path}")
        return {}

    clock = ReplayClock()
    classifications: list[dict] = []
    transitions: list[dict] = []

    def _on_classification(result: ClassificationResult) -> None:
        classifications.append(result.to_dict())
        if verbose:
            print(f"  [{result.window_end_time:.1f}] {result}")

    def _on_transition(t: SessionTransition) -> None:
        transitions.append(t.to_dict())
        reason = f" ({t.reason.description})" if t.reason else ""
        print(f"  [{t.at:.1f}] {t.new_state.name}{reason}")

    orch = SessionOrchestrator(
        Role.STANDALONE,
        config,
        clock=clock,
        on_classification=_on_classification,
        on_session_event=_on_transition,
    )

    total = 0
    rejected = 0
    print(f"Replaying {path.name}...\n")

    with open(path) as f:
        for line_num, line in enumerate(f, 1):
            line = line.strip()
            if not line:
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError:
                if verbose:
                    print(f"  [line {line_num}] Invalid JSON, skipping")
                continue

            timestamp = entry.get("timestamp")
            if timestamp is None:
                continue
            clock.advance_to(float(timestamp))

            command = entry.get("command")
            if command == "schedule":
                try:
                    orch.schedule_nap(entry.get("duration", duration))
                except SessionActiveError:
                    if verbose:
                        print(f"  [line {line_num}] session already active, ignoring schedule")
                continue
            if command == "cancel":
                orch.cancel_nap()
                continue

            try:
                sample = SensorSample.from_dict(entry)
            except (KeyError, TypeError, ValueError):
                if verbose:
                    print(f"  [line {line_num}] not a sample, skipping")
                continue

            if orch.session is None:
                orch.schedule_nap(duration)
            total += 1
            if orch.ingest(sample) is None:
                rejected += 1

    session = orch.session
    summary = {
        "source": str(path),
        "samples": total,
        "rejected": rejected,
        "session": session.to_dict() if session else None,
        "transitions": transitions,
        "classifications": classifications,
    }

    print(f"\nSummary: {total} samples, {rejected} rejected, {len(transitions)} transitions")
    if session is not None:
        ended = session.end_reason.description if session.end_reason else "still running"
        print(f"Session {session.id}: {session.state.name} ({ended})")

    if output_path:
        with open(output_path, "w") as out:
            json.dump(summary, out, indent=2)
        print(f"Output written to {output_path}")

    return summary


def main() -> None:
    args = [a for a in sys.argv[1:] if not a.startswith("-")]
    if not args:
        print("Usage: python -m napsync.replay <samples.jsonl> [output.json]")
        sys.exit(1)

    log_path = args[0]
    output_path = args[1] if len(args) > 1 else None
    verbose = "--verbose" in sys.argv or "-v" in sys.argv

    replay_file(log_path, output_path=output_path, verbose=verbose)


if __name__ == "__main__":
    main()
