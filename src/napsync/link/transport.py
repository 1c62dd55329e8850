"""Byte transports the link channel runs over.

A transport moves opaque byte chunks to the peer with no delivery, ordering
or integrity guarantees.  :class:`LoopbackTransport` is an in-process pair
that can drop, delay (and therefore reorder) and fragment traffic; it backs
the test suite and offline simulation.  The BLE transport lives in
:mod:`napsync.ble`.
"""

from __future__ import annotations

import asyncio
from typing import Callable

import numpy as np

Receiver = Callable[[bytes], None]


class Transport:
    """Minimal interface: write bytes out, hand received bytes to a callback."""

    def __init__(self) -> None:
        self._receiver: Receiver | None = None

    def set_receiver(self, callback: Receiver | None) -> None:
        self._receiver = callback

    def _dispatch(self, data: bytes) -> None:
        if self._receiver is not None:
            self._receiver(bytes(data))

    async def write(self, data: bytes) -> None:
        raise NotImplementedError

    async def close(self) -> None:
        self._receiver = None


class LoopbackTransport(Transport):
    """One end of an in-memory, optionally lossy and reordering, link.

    Args:
        drop_rate: Probability that a write is silently lost.
        max_delay: Each write is delivered after a uniform random delay in
            ``[0, max_delay]`` seconds, so later writes can overtake earlier ones.
        mtu: If set, deliveries are split into chunks of at most this many bytes.
        seed: Seed for the loss/delay generator.
    """

    def __init__(
        self,
        drop_rate: float = 0.0,
        max_delay: float = 0.0,
        mtu: int | None = None,
        seed: int | None = None,
    ) -> None:
        super().__init__()
        if not 0.0 <= drop_rate <= 1.0:
            raise ValueError("drop_rate must be in [0, 1]")
        self.drop_rate = drop_rate
        self.max_delay = max_delay
        self.mtu = mtu
        self.peer: LoopbackTransport | None = None
        self.connected = True
        self.sent: list[bytes] = []
        self.drop_filter: Callable[[bytes], bool] | None = None
        self._drop_next = 0
        self._rng = np.random.default_rng(seed)

    @classmethod
    def pair(cls, **kwargs) -> tuple[LoopbackTransport, LoopbackTransport]:
        """Create two connected ends sharing the same impairment settings."""
        seed = kwargs.pop("seed", None)
        a = cls(seed=seed, **kwargs)
        b = cls(seed=None if seed is None else seed + 1, **kwargs)
        a.peer, b.peer = b, a
        return a, b

    def drop_next(self, count: int = 1) -> None:
        """Lose the next *count* writes unconditionally."""
        self._drop_next += count

    def _should_drop(self, data: bytes) -> bool:
        if self._drop_next:
            self._drop_next -= 1
            return True
        if self.drop_filter is not None and self.drop_filter(data):
            return True
        return bool(self.drop_rate) and self._rng.random() < self.drop_rate

    async def write(self, data: bytes) -> None:
        data = bytes(data)
        self.sent.append(data)
        peer = self.peer
        if not self.connected or peer is None or self._should_drop(data):
            return

        if self.mtu:
            chunks = [data[i:i + self.mtu] for i in range(0, len(data), self.mtu)]
        else:
            chunks = [data]

        loop = asyncio.get_running_loop()
        delay = float(self._rng.uniform(0.0, self.max_delay)) if self.max_delay else 0.0
        loop.call_later(delay, peer._deliver, chunks)

    def _deliver(self, chunks: list[bytes]) -> None:
        if not self.connected:
            return
        for chunk in chunks:
            self._dispatch(chunk)

    async def close(self) -> None:
        self.connected = False
        await super().close()
