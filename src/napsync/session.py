"""Nap session lifecycle.

States and the transitions between them:

    SCHEDULED -> MONITORING -> SLEEP_DETECTED -> WAKE_WINDOW -> COMPLETED
        \\            \\              \\              \\
         +------------+--------------+--------------+----> ABORTED

The machine is a pure function of its inputs: every method takes the
current time explicitly and returns the transitions it made, so it can be
driven by live clocks, recorded sessions or a peer's event stream alike.
Completed and aborted sessions are frozen; a new nap needs a new session.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from enum import IntEnum

from napsync.analytics.classifier import ClassificationResult, SleepState
from napsync.config import DEFAULT_CONFIG, NapConfig
from napsync.exceptions import InvalidTransition, SessionActiveError

logger = logging.getLogger(__name__)


class NapState(IntEnum):
    """Session states (values are wire codes)."""

    SCHEDULED = 1
    MONITORING = 2
    SLEEP_DETECTED = 3
    WAKE_WINDOW = 4
    COMPLETED = 5
    ABORTED = 6

    @property
    def terminal(self) -> bool:
        return self in (NapState.COMPLETED, NapState.ABORTED)


class EndReason(IntEnum):
    """Why a session ended (values are wire codes; 0 means none)."""

    NATURAL_WAKE = 1
    TIMED_WAKE = 2
    TIMED_OUT_WAITING_FOR_SLEEP = 3
    USER_CANCELLED = 4
    DATA_STARVATION = 5
    LINK_LOST = 6
    PROTOCOL_DESYNC = 7

    @property
    def description(self) -> str:
        return _REASON_TEXT[self]


_REASON_TEXT = {
    EndReason.NATURAL_WAKE: "Woke up naturally",
    EndReason.TIMED_WAKE: "Nap time is up",
    EndReason.TIMED_OUT_WAITING_FOR_SLEEP: "No sleep detected within the maximum nap duration",
    EndReason.USER_CANCELLED: "Nap cancelled",
    EndReason.DATA_STARVATION: "Lost sensor data from the watch",
    EndReason.LINK_LOST: "Lost connection to the paired device",
    EndReason.PROTOCOL_DESYNC: "Devices fell out of sync",
}


_ALLOWED: dict[NapState, frozenset[NapState]] = {
    NapState.SCHEDULED: frozenset({NapState.MONITORING, NapState.ABORTED}),
    NapState.MONITORING: frozenset({NapState.SLEEP_DETECTED, NapState.ABORTED}),
    NapState.SLEEP_DETECTED: frozenset({NapState.WAKE_WINDOW, NapState.ABORTED}),
    NapState.WAKE_WINDOW: frozenset({NapState.COMPLETED, NapState.ABORTED}),
    NapState.COMPLETED: frozenset(),
    NapState.ABORTED: frozenset(),
}


def can_transition(current: NapState, new: NapState) -> bool:
    return new in _ALLOWED[current]


@dataclass
class NapSession:
    """A single nap attempt, owned by one :class:`NapSessionStateMachine`."""

    id: uuid.UUID
    scheduled_duration: float
    state: NapState = NapState.SCHEDULED
    created_at: float = 0.0
    started_at: float | None = None
    sleep_detected_at: float | None = None
    wake_window_deadline: float | None = None
    ended_at: float | None = None
    end_reason: EndReason | None = None

    @property
    def is_active(self) -> bool:
        return not self.state.terminal

    def elapsed(self, now: float) -> float:
        """Seconds since monitoring started (0 before start)."""
        if self.started_at is None:
            return 0.0
        end = self.ended_at if self.ended_at is not None else now
        return max(0.0, end - self.started_at)

    def time_remaining(self, now: float) -> float | None:
        """Seconds left until the wake deadline, once one is known."""
        if not self.is_active:
            return 0.0
        if self.wake_window_deadline is None:
            return None
        return max(0.0, self.wake_window_deadline - now)

    def progress(self, now: float) -> float:
        """Fraction of the sleep portion elapsed, 0 before sleep onset."""
        if self.state is NapState.COMPLETED:
            return 1.0
        if self.sleep_detected_at is None or self.scheduled_duration <= 0:
            return 0.0
        end = self.ended_at if self.ended_at is not None else now
        return min(max((end - self.sleep_detected_at) / self.scheduled_duration, 0.0), 1.0)

    def to_dict(self) -> dict:
        return {
            "id": str(self.id),
            "scheduled_duration": self.scheduled_duration,
            "state": self.state.name,
            "created_at": self.created_at,
            "started_at": self.started_at,
            "sleep_detected_at": self.sleep_detected_at,
            "wake_window_deadline": self.wake_window_deadline,
            "ended_at": self.ended_at,
            "end_reason": self.end_reason.name if self.end_reason else None,
        }


@dataclass(frozen=True)
class SessionTransition:
    """A state change, as surfaced to the UI and relayed to the peer."""

    session_id: uuid.UUID
    previous: NapState | None
    new_state: NapState
    at: float
    reason: EndReason | None = None
    scheduled_duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "session_id": str(self.session_id),
            "previous": self.previous.name if self.previous else None,
            "new_state": self.new_state.name,
            "at": self.at,
            "reason": self.reason.name if self.reason else None,
        }

    def __repr__(self) -> str:
        prev = self.previous.name if self.previous else "-"
        reason = f", reason={self.reason.name}" if self.reason else ""
        return (
            f"SessionTransition({str(self.session_id)[:8]}: {prev} -> "
            f"{self.new_state.name} at {self.at:.1f}{reason})"
        )


@dataclass
class _AwakeTracker:
    since: float | None = None


class NapSessionStateMachine:
    """Owns the lifecycle of one nap session at a time.

    Args:
        config: Shared immutable configuration.
        decides_sleep: Whether classifications and sensor-data starvation may
            drive transitions locally (sensor role).
        decides_timing: Whether deadline transitions fire locally on tick
            (controller role).
    """

    def __init__(
        self,
        config: NapConfig = DEFAULT_CONFIG,
        decides_sleep: bool = True,
        decides_timing: bool = True,
    ) -> None:
        self.config = config
        self.decides_sleep = decides_sleep
        self.decides_timing = decides_timing
        self.session: NapSession | None = None
        self._last_data_at: float | None = None
        self._awake = _AwakeTracker()

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def schedule(
        self,
        now: float,
        duration: float | None = None,
        session_id: uuid.UUID | None = None,
    ) -> list[SessionTransition]:
        """Create a new session in SCHEDULED; duration is clamped to config bounds."""
        if self.session is not None and self.session.is_active:
            raise SessionActiveError(
                f"session {self.session.id} is still {self.session.state.name}"
            )
        self.session = NapSession(
            id=session_id or uuid.uuid4(),
            scheduled_duration=self.config.clamp_nap_duration(duration),
            created_at=now,
        )
        self._last_data_at = None
        self._awake = _AwakeTracker()
        logger.info(
            "session %s scheduled for %.0f min",
            self.session.id, self.session.scheduled_duration / 60.0,
        )
        return [self._event(None, NapState.SCHEDULED, now)]

    def start(self, now: float) -> list[SessionTransition]:
        """SCHEDULED -> MONITORING."""
        session = self._require_session(NapState.MONITORING)
        transition = self._transition(NapState.MONITORING, now)
        session.started_at = now
        self._last_data_at = now
        return [transition]

    def cancel(self, now: float, reason: EndReason = EndReason.USER_CANCELLED) -> list[SessionTransition]:
        """Abort the live session; a no-op once it has ended."""
        if self.session is None or not self.session.is_active:
            return []
        return [self._abort(now, reason)]

    # ------------------------------------------------------------------
    # Inputs
    # ------------------------------------------------------------------

    def note_data(self, now: float) -> None:
        """Record that sensor data arrived (resets the starvation clock)."""
        if self._last_data_at is None or now > self._last_data_at:
            self._last_data_at = now

    def on_classification(self, result: ClassificationResult, now: float) -> list[SessionTransition]:
        """Evaluate transitions for a fresh classification at time *now*."""
        events = self.tick(now)
        session = self.session
        if session is None or not session.is_active:
            return events
        self.note_data(now)
        if not self.decides_sleep:
            return events

        if session.state is NapState.MONITORING:
            if (
                result.state is SleepState.ASLEEP
                and result.confidence >= self.config.confidence_threshold
                and now - session.started_at >= self.config.settle_period
            ):
                events.append(self._transition(NapState.SLEEP_DETECTED, now))
                session.sleep_detected_at = now
                events.append(self._enter_wake_window(now))

        elif session.state is NapState.WAKE_WINDOW:
            events.extend(self._check_natural_wake(result, now))

        return events

    def _deadlines(self) -> list[tuple[float, NapState, EndReason]]:
        """Pending deadline transitions this device owns, in no particular order."""
        session = self.session
        if session is None or not session.is_active or session.state is NapState.SCHEDULED:
            return []

        deadlines: list[tuple[float, NapState, EndReason]] = []
        if self.decides_timing:
            if session.state is NapState.MONITORING:
                deadlines.append((
                    session.started_at + self.config.max_nap_duration,
                    NapState.ABORTED,
                    EndReason.TIMED_OUT_WAITING_FOR_SLEEP,
                ))
            elif session.state is NapState.WAKE_WINDOW:
                deadlines.append(
                    (session.wake_window_deadline, NapState.COMPLETED, EndReason.TIMED_WAKE)
                )
        if self.decides_sleep and self._last_data_at is not None:
            deadlines.append((
                self._last_data_at + self.config.data_grace_period,
                NapState.ABORTED,
                EndReason.DATA_STARVATION,
            ))
        return deadlines

    def next_deadline(self) -> float | None:
        """Earliest time at which :meth:`tick` may fire a transition, if any."""
        deadlines = self._deadlines()
        if not deadlines:
            return None
        return min(at for at, _, _ in deadlines)

    def tick(self, now: float) -> list[SessionTransition]:
        """Fire any deadline or starvation transition due by *now*."""
        candidates = [
            d for d in self._deadlines()
            # starvation needs silence strictly longer than the grace period
            if (now > d[0] if d[2] is EndReason.DATA_STARVATION else now >= d[0])
        ]
        if not candidates:
            return []
        at, state, reason = min(candidates, key=lambda c: c[0])
        if state is NapState.COMPLETED:
            return [self._complete(at, reason)]
        return [self._abort(at, reason)]

    def apply_remote(self, event: SessionTransition) -> list[SessionTransition]:
        """Reconcile a transition decided by the peer device.

        Already-reached states are ignored.  A transition the local state
        cannot make means the peers have desynchronized: the local session is
        aborted and :class:`InvalidTransition` is raised.
        """
        session = self.session
        target = event.new_state

        if target is NapState.SCHEDULED:
            if session is not None and session.id == event.session_id:
                return []
            if session is not None and session.is_active:
                current = session.state
                aborted = self._abort(event.at, EndReason.PROTOCOL_DESYNC)
                raise InvalidTransition(current, target, "peer scheduled another session", aborted)
            self.session = NapSession(
                id=event.session_id,
                scheduled_duration=self.config.clamp_nap_duration(event.scheduled_duration or None),
                created_at=event.at,
            )
            self._last_data_at = None
            self._awake = _AwakeTracker()
            logger.info("session %s scheduled by peer", event.session_id)
            return [self._event(None, NapState.SCHEDULED, event.at)]

        if session is None or session.id != event.session_id:
            raise InvalidTransition(None, target, f"unknown session {event.session_id}")
        if session.state is target:
            return []
        if session.state.terminal:
            logger.debug("ignoring %r for ended session", event)
            return []

        if target is NapState.MONITORING:
            return self.start(event.at)
        if target is NapState.SLEEP_DETECTED:
            transition = self._transition(NapState.SLEEP_DETECTED, event.at)
            session.sleep_detected_at = event.at
            return [transition]
        if target is NapState.WAKE_WINDOW:
            if session.state is NapState.MONITORING:
                # SLEEP_DETECTED is implied and instantaneous
                session.sleep_detected_at = event.at
                first = self._transition(NapState.SLEEP_DETECTED, event.at)
                return [first, self._enter_wake_window(event.at)]
            return [self._enter_wake_window(event.at)]
        if target is NapState.COMPLETED:
            return [self._complete(event.at, event.reason or EndReason.TIMED_WAKE)]
        return [self._abort(event.at, event.reason or EndReason.PROTOCOL_DESYNC)]

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _require_session(self, requested: NapState) -> NapSession:
        if self.session is None:
            raise InvalidTransition(None, requested, "no session scheduled")
        return self.session

    def _event(self, previous: NapState | None, new: NapState, at: float,
               reason: EndReason | None = None) -> SessionTransition:
        return SessionTransition(
            session_id=self.session.id,
            previous=previous,
            new_state=new,
            at=at,
            reason=reason,
            scheduled_duration=self.session.scheduled_duration,
        )

    def _transition(self, new: NapState, at: float,
                    reason: EndReason | None = None) -> SessionTransition:
        session = self._require_session(new)
        current = session.state
        if not can_transition(current, new):
            aborted = self._abort(at, EndReason.PROTOCOL_DESYNC) if session.is_active else None
            raise InvalidTransition(current, new, aborted=aborted)
        session.state = new
        logger.info(
            "session %s: %s -> %s%s",
            str(session.id)[:8], current.name, new.name,
            f" ({reason.name})" if reason else "",
        )
        return self._event(current, new, at, reason)

    def _enter_wake_window(self, at: float) -> SessionTransition:
        session = self.session
        transition = self._transition(NapState.WAKE_WINDOW, at)
        session.wake_window_deadline = session.sleep_detected_at + session.scheduled_duration
        self._awake = _AwakeTracker()
        return transition

    def _check_natural_wake(self, result: ClassificationResult, now: float) -> list[SessionTransition]:
        session = self.session
        if result.state is not SleepState.AWAKE:
            self._awake.since = None
            return []
        if self._awake.since is None:
            self._awake.since = now
        window_opens = session.wake_window_deadline - self.config.wake_window
        sustained = now - self._awake.since >= self.config.sustained_awake_period
        if sustained and now >= window_opens:
            return [self._complete(now, EndReason.NATURAL_WAKE)]
        return []

    def _complete(self, at: float, reason: EndReason) -> SessionTransition:
        transition = self._transition(NapState.COMPLETED, at, reason)
        self.session.ended_at = at
        self.session.end_reason = reason
        return transition

    def _abort(self, at: float, reason: EndReason) -> SessionTransition:
        session = self.session
        current = session.state
        session.state = NapState.ABORTED
        session.ended_at = at
        session.end_reason = reason
        logger.info(
            "session %s: %s -> ABORTED (%s)", str(session.id)[:8], current.name, reason.name
        )
        return self._event(current, NapState.ABORTED, at, reason)
