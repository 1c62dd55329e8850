"""Per-device glue: samples in, classifications and session events out.

Each device runs one :class:`SessionOrchestrator`.  It pushes samples through
the window buffer and classifier, drives the local state machine, relays
local decisions to the peer over a :class:`~napsync.link.LinkChannel` and
reconciles the peer's decisions into local state.

Which side decides what is fixed by :class:`Role`:

    SENSOR      sleep onset, natural wake, sensor-data starvation;
                streams ClassificationEvents to the peer
    CONTROLLER  TimedWake and TimedOutWaitingForSleep deadlines
    STANDALONE  everything (single device, offline replay)

User commands (schedule, start, cancel) are accepted on any role.
"""

from __future__ import annotations

import asyncio
import logging
import time
from enum import Enum
from typing import Callable

from napsync.analytics.classifier import ClassificationResult, SleepStateClassifier
from napsync.analytics.window import SensorSample, SignalWindowBuffer
from napsync.config import DEFAULT_CONFIG, NapConfig
from napsync.exceptions import InvalidTransition, LinkDeliveryFailed, OutOfOrderSample
from napsync.link.channel import LinkChannel, LinkStatus
from napsync.protocol import ClassificationEvent, SessionEvent, WatchMessage
from napsync.session import (
    EndReason,
    NapSession,
    NapSessionStateMachine,
    NapState,
    SessionTransition,
)

logger = logging.getLogger(__name__)

# Past a deadline so strict comparisons (starvation) have fired.
_DEADLINE_SLACK = 1e-3


class Role(str, Enum):
    SENSOR = "sensor"
    CONTROLLER = "controller"
    STANDALONE = "standalone"

    @property
    def decides_sleep(self) -> bool:
        return self in (Role.SENSOR, Role.STANDALONE)

    @property
    def decides_timing(self) -> bool:
        return self in (Role.CONTROLLER, Role.STANDALONE)


ClassificationListener = Callable[[ClassificationResult], None]
TransitionListener = Callable[[SessionTransition], None]
PeerClassificationListener = Callable[[ClassificationEvent], None]


class SessionOrchestrator:
    """Compose buffer, classifier, state machine and link for one device.

    Args:
        role: Which decisions this device owns.
        config: Shared immutable configuration.
        channel: Link to the peer; ``None`` runs without a peer.
        clock: Time source for user commands and periodic ticks.  Sample
            ingestion uses each sample's own timestamp.
        on_classification: Called with every local classification.
        on_session_event: Called with every transition, local or remote.
        on_peer_classification: Called with classifications from the peer.
    """

    def __init__(
        self,
        role: Role = Role.STANDALONE,
        config: NapConfig = DEFAULT_CONFIG,
        channel: LinkChannel | None = None,
        clock: Callable[[], float] = time.time,
        on_classification: ClassificationListener | None = None,
        on_session_event: TransitionListener | None = None,
        on_peer_classification: PeerClassificationListener | None = None,
    ) -> None:
        self.role = role
        self.config = config
        self.clock = clock
        self.buffer = SignalWindowBuffer(config)
        self.classifier = SleepStateClassifier(config)
        self.machine = NapSessionStateMachine(
            config,
            decides_sleep=role.decides_sleep,
            decides_timing=role.decides_timing,
        )
        self.on_classification = on_classification
        self.on_session_event = on_session_event
        self.on_peer_classification = on_peer_classification

        self.last_result: ClassificationResult | None = None
        self.peer_classification: ClassificationEvent | None = None
        self.transitions: list[SessionTransition] = []
        self._reported: tuple[ClassificationResult, float] | None = None
        self._stopping: asyncio.Event | None = None
        self._wakeup: asyncio.Event | None = None

        self.channel = channel
        if channel is not None:
            channel.on_message = self._on_peer_message
            channel.on_delivery_failed = self._on_delivery_failed
            channel.on_status_change = self._on_link_status

    @property
    def session(self) -> NapSession | None:
        return self.machine.session

    @property
    def _relays(self) -> bool:
        return self.channel is not None and self.role is not Role.STANDALONE

    # ------------------------------------------------------------------
    # Sensor input
    # ------------------------------------------------------------------

    def ingest(self, sample: SensorSample) -> ClassificationResult | None:
        """Process one sample; returns the classification, or None if rejected."""
        try:
            self.buffer.ingest(sample)
        except OutOfOrderSample:
            return None

        now = sample.timestamp
        result = self.classifier.classify(self.buffer.current_window())
        self.last_result = result
        if self.on_classification is not None:
            self.on_classification(result)

        self._handle(self.machine.on_classification(result, now))
        self._maybe_report(result, now)
        return result

    def _maybe_report(self, result: ClassificationResult, now: float) -> None:
        if not self._relays or self.role is not Role.SENSOR:
            return
        if self.session is None or not self.session.is_active:
            return
        if self._reported is not None:
            last, at = self._reported
            changed = result.state is not last.state
            moved = abs(result.confidence - last.confidence) >= self.config.report_confidence_delta
            due = now - at >= self.config.summary_interval
            if not (changed or moved or due):
                return
        self._reported = (result, now)
        self.channel.send(ClassificationEvent.from_result(result))

    # ------------------------------------------------------------------
    # User commands
    # ------------------------------------------------------------------

    def schedule_nap(self, duration: float | None = None, start: bool = True) -> NapSession:
        """Create a session (clamped duration) and by default start monitoring."""
        now = self.clock()
        events = self.machine.schedule(now, duration)
        if start:
            events += self.machine.start(now)
        self._handle(events)
        return self.session

    def start_nap(self) -> None:
        self._handle(self.machine.start(self.clock()))

    def cancel_nap(self, reason: EndReason = EndReason.USER_CANCELLED) -> list[SessionTransition]:
        events = self.machine.cancel(self.clock(), reason)
        self._handle(events)
        return events

    def tick(self, now: float | None = None) -> list[SessionTransition]:
        """Evaluate deadlines and starvation; called every monitoring interval."""
        events = self.machine.tick(self.clock() if now is None else now)
        self._handle(events)
        return events

    # ------------------------------------------------------------------
    # Event fan-out
    # ------------------------------------------------------------------

    def _handle(self, events: list[SessionTransition], relay: bool = True) -> None:
        for transition in events:
            self.transitions.append(transition)
            if transition.new_state is NapState.SCHEDULED:
                self._reported = None
            if transition.new_state is NapState.ABORTED and self.channel is not None:
                self.channel.cancel_session(transition.session_id)
            if relay and self._relays:
                self.channel.send(SessionEvent.from_transition(transition))
            if self.on_session_event is not None:
                self.on_session_event(transition)
        if events and self._wakeup is not None:
            # deadlines moved; let run() recompute its sleep
            self._wakeup.set()

    # ------------------------------------------------------------------
    # Peer input
    # ------------------------------------------------------------------

    def _on_peer_message(self, message: WatchMessage) -> None:
        payload = message.payload
        if isinstance(payload, ClassificationEvent):
            self.peer_classification = payload
            if self.on_peer_classification is not None:
                self.on_peer_classification(payload)
            return
        if isinstance(payload, SessionEvent):
            self.apply_remote(payload)

    def apply_remote(self, event: SessionEvent) -> list[SessionTransition]:
        """Reconcile a peer session event into local state.

        Remote-originated transitions are not echoed back.  If the event
        cannot be applied the local session is aborted and that abort is
        relayed so the peer stops as well.
        """
        try:
            events = self.machine.apply_remote(event.to_transition())
        except InvalidTransition as e:
            if e.aborted is not None:
                self._handle([e.aborted])
            return []
        self._handle(events, relay=False)
        return events

    def _on_delivery_failed(self, message: WatchMessage, error: LinkDeliveryFailed) -> None:
        payload = message.payload
        if not isinstance(payload, SessionEvent):
            return
        session = self.session
        if session is not None and session.is_active and session.id == payload.session_id:
            logger.warning("peer never confirmed %s; ending session", payload.new_state.name)
            self.cancel_nap(EndReason.LINK_LOST)

    def _on_link_status(self, status: LinkStatus) -> None:
        if status is LinkStatus.DISCONNECTED and self.session is not None and self.session.is_active:
            self.cancel_nap(EndReason.LINK_LOST)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def _next_wait(self) -> float:
        """Seconds until the next tick: the monitoring interval or an earlier deadline."""
        wait = self.config.monitoring_interval
        deadline = self.machine.next_deadline()
        if deadline is not None:
            wait = min(wait, max(deadline - self.clock(), 0.0) + _DEADLINE_SLACK)
        return wait

    async def run(self) -> None:
        """Tick every monitoring interval, and at each deadline, until :meth:`stop`."""
        self._stopping = asyncio.Event()
        self._wakeup = asyncio.Event()
        if self.channel is not None:
            self.channel.start()
        while not self._stopping.is_set():
            self.tick()
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), self._next_wait())
            except asyncio.TimeoutError:
                pass

    def stop(self) -> None:
        if self._stopping is not None:
            self._stopping.set()
        if self._wakeup is not None:
            self._wakeup.set()

    async def close(self, drain: bool = True) -> None:
        """Stop ticking and close the link.

        With *drain*, first wait until the peer has acknowledged (or the
        link has given up on) every queued message, so a final COMPLETED or
        ABORTED event still reaches the peer.
        """
        self.stop()
        if self.channel is not None:
            if drain:
                await self.channel.drain()
            await self.channel.close()
