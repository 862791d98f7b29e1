"""Admission control: bounded concurrency and per-token cooldown."""

from __future__ import annotations

import time
from collections.abc import Callable

from moonwatch.types import DispatchSlot
from moonwatch.utils.logging import get_logger, log_dispatch

DispatchCallback = Callable[[str], None]
Scheduler = Callable[[float, Callable[[], None]], object]


class AdmissionCoordinator:
    """Decouple the candidate arrival rate from the rate the system can act.

    Dispatches are pushed to ``on_dispatch`` whenever a concurrency slot is
    free and a queued token is out of cooldown. The caller must call
    :meth:`complete` exactly once per dispatch, success or failure; a missing
    call leaks a slot for good. Exceptions raised by ``on_dispatch``
    propagate to whoever triggered the dispatch and the token stays in flight.

    ``scheduler(delay, callback)`` is used to wake up when the earliest
    cooling-down token becomes eligible (``loop.call_later`` fits). Without a
    scheduler, call :meth:`tick` to rescan.
    """

    def __init__(
        self,
        on_dispatch: DispatchCallback,
        *,
        max_concurrent: int,
        cooldown_seconds: float,
        clock: Callable[[], float] = time.monotonic,
        scheduler: Scheduler | None = None,
    ) -> None:
        if max_concurrent < 1:
            raise ValueError("max_concurrent_must_be_positive")
        if cooldown_seconds < 0:
            raise ValueError("cooldown_must_not_be_negative")
        self._on_dispatch = on_dispatch
        self._max_concurrent = max_concurrent
        self._cooldown = cooldown_seconds
        self._clock = clock
        self._scheduler = scheduler
        self._logger = get_logger("moonwatch.admission.coordinator")

        self._slots: dict[str, DispatchSlot] = {}
        self._queue: list[str] = []
        self._in_flight = 0
        self._wakeup_at: float | None = None
        self._dispatching = False
        self._rescan = False

    @property
    def in_flight_count(self) -> int:
        return self._in_flight

    @property
    def pending_count(self) -> int:
        return len(self._queue)

    def enqueue(self, token_address: str) -> bool:
        """Queue a token. Returns False when it is already pending or in flight."""
        slot = self._slots.get(token_address)
        if slot is not None and (slot.pending or slot.in_flight):
            return False

        now = self._clock()
        if slot is None:
            slot = DispatchSlot(token_address=token_address, enqueued_at=now)
            self._slots[token_address] = slot
        else:
            slot.enqueued_at = now
        slot.pending = True
        self._queue.append(token_address)
        self._try_dispatch()
        return True

    def complete(self, token_address: str) -> None:
        """Mark a dispatched token finished and start its cooldown."""
        slot = self._slots.get(token_address)
        if slot is None or not slot.in_flight:
            self._logger.warning("complete_without_dispatch", token_address=token_address)
            return
        slot.in_flight = False
        slot.last_dispatch_at = self._clock()
        self._in_flight -= 1
        self._try_dispatch()

    def tick(self) -> None:
        """Rescan the queue for tokens whose cooldown has expired."""
        self._try_dispatch()

    def is_tracked(self, token_address: str) -> bool:
        slot = self._slots.get(token_address)
        return slot is not None and (slot.pending or slot.in_flight)

    def status(self) -> dict[str, list[str]]:
        now = self._clock()
        return {
            "in_flight": [t for t, s in self._slots.items() if s.in_flight],
            "pending": list(self._queue),
            "cooling_down": [
                t
                for t, s in self._slots.items()
                if not s.in_flight and not self._cooled_down(s, now)
            ],
        }

    def _cooled_down(self, slot: DispatchSlot, now: float) -> bool:
        if slot.last_dispatch_at is None:
            return True
        return now - slot.last_dispatch_at >= self._cooldown

    def _try_dispatch(self) -> None:
        # on_dispatch may call back into enqueue/complete; rescan instead of nesting.
        if self._dispatching:
            self._rescan = True
            return
        self._dispatching = True
        try:
            while True:
                self._rescan = False
                self._scan()
                if not self._rescan:
                    break
        finally:
            self._dispatching = False

    def _scan(self) -> None:
        now = self._clock()
        self._prune(now)
        earliest_ready: float | None = None
        index = 0
        while index < len(self._queue) and self._in_flight < self._max_concurrent:
            token = self._queue[index]
            slot = self._slots[token]
            if not self._cooled_down(slot, now):
                ready_at = slot.last_dispatch_at + self._cooldown  # type: ignore[operator]
                if earliest_ready is None or ready_at < earliest_ready:
                    earliest_ready = ready_at
                index += 1
                continue

            del self._queue[index]
            slot.pending = False
            slot.in_flight = True
            self._in_flight += 1
            log_dispatch(
                self._logger,
                token_address=token,
                in_flight=self._in_flight,
                pending=len(self._queue),
            )
            self._on_dispatch(token)

        if earliest_ready is not None:
            self._schedule_wakeup(now, earliest_ready)

    def _schedule_wakeup(self, now: float, ready_at: float) -> None:
        if self._scheduler is None:
            return
        if self._wakeup_at is not None and self._wakeup_at <= ready_at:
            return
        self._wakeup_at = ready_at
        self._scheduler(max(0.0, ready_at - now), self._on_wakeup)

    def _on_wakeup(self) -> None:
        self._wakeup_at = None
        self.tick()

    def _prune(self, now: float) -> None:
        idle = [
            token
            for token, slot in self._slots.items()
            if not slot.pending and not slot.in_flight and self._cooled_down(slot, now)
        ]
        for token in idle:
            del self._slots[token]
