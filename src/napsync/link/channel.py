"""Reliable, ordered messaging over an unreliable byte transport.

Data messages (classification and session events) get a per-sender sequence
number, are retransmitted until the peer acknowledges them, and are handed
to the receiving side strictly in sequence order exactly once.  Heartbeats
keep an idle link observable; prolonged silence from the peer flips the link
to DISCONNECTED.

All channel state lives on one asyncio event loop.  Retry timers, heartbeat
and receive callbacks all run there, so mutations of the pending table are
serialized without locks.  Use :meth:`LinkChannel.send_threadsafe` from other
threads.
"""

from __future__ import annotations

import asyncio
import concurrent.futures
import logging
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable

from napsync.config import DEFAULT_CONFIG, NapConfig
from napsync.exceptions import LinkDeliveryFailed
from napsync.link.transport import Transport
from napsync.protocol import (
    Ack,
    FrameAssembler,
    Heartbeat,
    MessageKind,
    Payload,
    SessionEvent,
    WatchMessage,
    encode_message,
    kind_of,
)

logger = logging.getLogger(__name__)

# Resolution added to scheduler sleeps so boundary comparisons land past the edge.
_TIMER_SLACK = 1e-3


class LinkStatus(str, Enum):
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"


@dataclass
class PendingMessage:
    """A sent data message awaiting its Ack."""

    message: WatchMessage
    future: asyncio.Future
    attempts: int = 0
    last_sent_at: float | None = None
    task: asyncio.Task | None = None


@dataclass
class LinkState:
    last_heartbeat_sent: float | None = None
    # Any inbound frame answers our heartbeat; this is the last time one arrived.
    last_heartbeat_acked_at: float | None = None
    pending_messages: dict[int, PendingMessage] = field(default_factory=dict)


@dataclass
class LinkStats:
    sent: int = 0
    retransmitted: int = 0
    acked: int = 0
    failed: int = 0
    received: int = 0
    duplicates: int = 0
    skipped: int = 0
    heartbeats: int = 0


MessageHandler = Callable[[WatchMessage], None]
FailureHandler = Callable[[WatchMessage, LinkDeliveryFailed], None]
StatusHandler = Callable[[LinkStatus], None]


class LinkChannel:
    """Request/acknowledge messaging with retry, ordering and heartbeat.

    Args:
        transport: Byte transport to the peer.
        config: Supplies ``max_retries`` (total transmissions per message),
            ``timeout_interval`` and ``heartbeat_interval``.
        on_message: Called with each in-order data message from the peer.
        on_delivery_failed: Called when a message exhausts its retries.
        on_status_change: Called when the link flips CONNECTED/DISCONNECTED.
        clock: Wall clock used for the ``sent_at`` field.
    """

    def __init__(
        self,
        transport: Transport,
        config: NapConfig = DEFAULT_CONFIG,
        on_message: MessageHandler | None = None,
        on_delivery_failed: FailureHandler | None = None,
        on_status_change: StatusHandler | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.transport = transport
        self.config = config
        self.on_message = on_message
        self.on_delivery_failed = on_delivery_failed
        self.on_status_change = on_status_change
        self.clock = clock

        self.state = LinkState()
        self.stats = LinkStats()
        self.status = LinkStatus.CONNECTED

        self._loop: asyncio.AbstractEventLoop | None = None
        self._assembler = FrameAssembler()
        self._next_seq = 1
        self._next_expected = 1
        self._reorder: dict[int, WatchMessage] = {}
        self._gap_since: float | None = None
        self._gap_timer: asyncio.TimerHandle | None = None
        self._last_tx = 0.0
        self._last_rx = 0.0
        self._heartbeat_task: asyncio.Task | None = None
        self._io_tasks: set[asyncio.Task] = set()
        self._closed = False

        transport.set_receiver(self.feed)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def reorder_timeout(self) -> float:
        """How long a sequence gap may persist before it is skipped."""
        return self.config.timeout_interval * self.config.max_retries

    @property
    def pending(self) -> dict[int, PendingMessage]:
        return self.state.pending_messages

    def start(self) -> None:
        """Bind to the running loop and start the heartbeat/watchdog."""
        self._loop = asyncio.get_running_loop()
        now = self._loop.time()
        self._last_tx = now
        self._last_rx = now
        self._closed = False
        if self._heartbeat_task is None:
            self._heartbeat_task = self._loop.create_task(self._heartbeat_loop())

    async def close(self) -> None:
        """Stop timers and fail nothing: pending sends are cancelled."""
        self._closed = True
        if self._heartbeat_task is not None:
            self._heartbeat_task.cancel()
            self._heartbeat_task = None
        if self._gap_timer is not None:
            self._gap_timer.cancel()
            self._gap_timer = None
        for pending in list(self.pending.values()):
            self._cancel_pending(pending)
        self.pending.clear()
        for task in list(self._io_tasks):
            task.cancel()
        await self.transport.close()

    async def drain(self) -> None:
        """Wait until every pending message is acknowledged, failed or cancelled."""
        while self.pending:
            await asyncio.gather(*(p.future for p in list(self.pending.values())),
                                 return_exceptions=True)

    def _require_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            self.start()
        return self._loop

    # ------------------------------------------------------------------
    # Sending
    # ------------------------------------------------------------------

    def send(self, payload: Payload) -> asyncio.Future:
        """Queue a data message and start delivering it.

        Must be called on the channel's event loop.  Returns a future that
        resolves to the sequence number once acknowledged, or raises
        :class:`LinkDeliveryFailed` after the last retry times out.
        """
        kind = kind_of(payload)
        if not kind.sequenced:
            raise ValueError(f"{kind.name} frames are sent by the channel itself")
        loop = self._require_loop()

        seq = self._next_seq
        self._next_seq += 1
        message = WatchMessage(sequence_number=seq, kind=kind, payload=payload, sent_at=self.clock())
        future = loop.create_future()
        future.add_done_callback(_consume_exception)

        pending = PendingMessage(message=message, future=future)
        self.pending[seq] = pending
        pending.task = loop.create_task(self._deliver(pending))
        return future

    async def send_and_wait(self, payload: Payload) -> int:
        return await self.send(payload)

    def send_threadsafe(self, payload: Payload) -> concurrent.futures.Future:
        """Hand a send to the channel's loop from another thread."""
        if self._loop is None:
            raise RuntimeError("channel not started")
        return asyncio.run_coroutine_threadsafe(self.send_and_wait(payload), self._loop)

    async def _deliver(self, pending: PendingMessage) -> None:
        loop = asyncio.get_running_loop()
        message = pending.message
        seq = message.sequence_number

        while pending.attempts < self.config.max_retries:
            if pending.attempts:
                self.stats.retransmitted += 1
                logger.debug("retransmitting %s seq=%d (attempt %d)",
                             message.kind.name, seq, pending.attempts + 1)
            pending.attempts += 1
            pending.last_sent_at = loop.time()
            await self._write(message)
            self.stats.sent += 1

            await asyncio.wait({pending.future}, timeout=self.config.timeout_interval)
            if pending.future.done():
                self.pending.pop(seq, None)
                return

        self.pending.pop(seq, None)
        error = LinkDeliveryFailed(seq, pending.attempts, message.kind.name)
        self.stats.failed += 1
        logger.warning("%s", error)
        pending.future.set_exception(error)
        if self.on_delivery_failed is not None:
            self.on_delivery_failed(message, error)

    async def _write(self, message: WatchMessage) -> None:
        loop = asyncio.get_running_loop()
        self._last_tx = loop.time()
        try:
            await self.transport.write(encode_message(message))
        except Exception as e:  # transport faults count as a lost frame
            logger.debug("transport write failed for seq=%d: %s", message.sequence_number, e)

    def _spawn_write(self, message: WatchMessage) -> None:
        task = self._require_loop().create_task(self._write(message))
        self._io_tasks.add(task)
        task.add_done_callback(self._io_tasks.discard)

    def _send_control(self, payload: Ack | Heartbeat) -> None:
        self._spawn_write(
            WatchMessage(sequence_number=0, kind=kind_of(payload), payload=payload, sent_at=self.clock())
        )

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def _cancel_pending(self, pending: PendingMessage) -> None:
        if pending.task is not None:
            pending.task.cancel()
        if not pending.future.done():
            pending.future.cancel()

    def cancel_session(self, session_id: uuid.UUID) -> int:
        """Stop retrying every pending session event for *session_id*."""
        cancelled = 0
        for seq, pending in list(self.pending.items()):
            payload = pending.message.payload
            if isinstance(payload, SessionEvent) and payload.session_id == session_id:
                del self.pending[seq]
                self._cancel_pending(pending)
                cancelled += 1
        if cancelled:
            # Cancelled numbers are never retransmitted: if one was lost the
            # peer holds every later frame until its gap timer skips it.
            logger.info(
                "cancelled %d pending event(s) for session %s; peer may stall up to %.0fs",
                cancelled, session_id, self.reorder_timeout,
            )
        return cancelled

    # ------------------------------------------------------------------
    # Receiving
    # ------------------------------------------------------------------

    def feed(self, data: bytes) -> None:
        """Transport receive callback: reassemble and process frames."""
        if self._closed:
            return
        for message in self._assembler.feed(data):
            self._on_frame(message)

    def _on_frame(self, message: WatchMessage) -> None:
        loop = self._require_loop()
        now = loop.time()
        self._last_rx = now
        self.state.last_heartbeat_acked_at = now
        self.stats.received += 1
        self._set_status(LinkStatus.CONNECTED)

        if message.kind is MessageKind.ACK:
            self._on_ack(message.payload.acked_sequence_number)
            return
        if message.kind is MessageKind.HEARTBEAT:
            return

        seq = message.sequence_number
        self._send_control(Ack(seq))
        if seq < self._next_expected or seq in self._reorder:
            self.stats.duplicates += 1
            logger.debug("duplicate %s seq=%d discarded", message.kind.name, seq)
            return
        self._reorder[seq] = message
        self._drain(now)

    def _on_ack(self, seq: int) -> None:
        pending = self.pending.pop(seq, None)
        if pending is None:
            return
        self.stats.acked += 1
        if not pending.future.done():
            pending.future.set_result(seq)

    def _drain(self, now: float) -> None:
        while self._next_expected in self._reorder:
            message = self._reorder.pop(self._next_expected)
            self._next_expected += 1
            self._dispatch(message)

        if not self._reorder:
            self._gap_since = None
            return
        if self._gap_since is None:
            self._gap_since = now
            logger.debug("holding %d message(s) waiting for seq=%d",
                         len(self._reorder), self._next_expected)
        if self._gap_timer is None:
            delay = self._gap_since + self.reorder_timeout - now + _TIMER_SLACK
            self._gap_timer = self._loop.call_later(max(delay, 0.0), self._check_gap)

    def _check_gap(self) -> None:
        self._gap_timer = None
        if not self._reorder or self._gap_since is None:
            return
        now = self._loop.time()
        if now - self._gap_since >= self.reorder_timeout:
            first = min(self._reorder)
            self.stats.skipped += first - self._next_expected
            logger.warning("giving up on seq %d..%d", self._next_expected, first - 1)
            self._next_expected = first
            self._gap_since = None
        self._drain(now)

    def _dispatch(self, message: WatchMessage) -> None:
        if self.on_message is None:
            return
        try:
            self.on_message(message)
        except Exception:
            logger.exception("handler failed for %r", message)

    # ------------------------------------------------------------------
    # Heartbeat / liveness
    # ------------------------------------------------------------------

    def _set_status(self, status: LinkStatus) -> None:
        if status is self.status:
            return
        self.status = status
        if status is LinkStatus.DISCONNECTED:
            logger.warning("link disconnected: peer silent for over %.0fs", self.config.disconnect_after)
        else:
            logger.info("link connected")
        if self.on_status_change is not None:
            self.on_status_change(status)

    async def _heartbeat_loop(self) -> None:
        loop = asyncio.get_running_loop()
        interval = self.config.heartbeat_interval
        disconnect_after = self.config.disconnect_after

        while True:
            now = loop.time()
            if now - self._last_tx >= interval:
                self.state.last_heartbeat_sent = now
                self.stats.heartbeats += 1
                await self._write(
                    WatchMessage(sequence_number=0, kind=MessageKind.HEARTBEAT,
                                 payload=Heartbeat(), sent_at=self.clock())
                )
            if now - self._last_rx > disconnect_after:
                self._set_status(LinkStatus.DISCONNECTED)

            now = loop.time()
            wake = self._last_tx + interval
            if self.status is LinkStatus.CONNECTED:
                wake = min(wake, self._last_rx + disconnect_after)
            await asyncio.sleep(max(wake - now, 0.0) + _TIMER_SLACK)


def _consume_exception(future: asyncio.Future) -> None:
    # failures are reported through on_delivery_failed; mark them retrieved
    if not future.cancelled():
        future.exception()
