"""
Action Correlation
==================

Maps an in-flight action to the frame that settles after it.

Each registered action becomes a PendingCorrelation that is settled exactly
once: by a qualifying incoming frame, by its deadline timer, or by
cancellation when the buffer is cleared.

State machine:
    PENDING -> RESOLVED_BY_FRAME | RESOLVED_BY_TIMEOUT | CANCELLED

Eligibility of an incoming frame for a pending correlation:
    frame_id > reference_frame_id
    AND (delta_percent <= stability_threshold
         OR time since issue >= stability_wait_ms)

Key Design Decisions:
    - Deadline timers are explicit loop handles owned by the correlation
      and cancelled as soon as it settles
    - Several correlations resolved by one frame settle oldest
      reference frame first
    - Pending volume is expected to be tiny (usually one), so a linear
      scan per frame is used
"""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, List, Optional

from chrome_stream.errors import WaitCancelledError
from chrome_stream.models.actions import ActionResult, BrowserAction
from chrome_stream.models.reason_codes import ResolutionReason
from chrome_stream.models.results import FrameActionResult
from chrome_stream.stream.frame import Frame


logger = logging.getLogger(__name__)


class CorrelationState(str, Enum):
    PENDING = "PENDING"
    RESOLVED_BY_FRAME = "RESOLVED_BY_FRAME"
    RESOLVED_BY_TIMEOUT = "RESOLVED_BY_TIMEOUT"
    CANCELLED = "CANCELLED"


@dataclass(eq=False)
class PendingCorrelation:
    """
    One action awaiting its post-action frame.

    Attributes:
        action: The executed action
        result: Executor result
        before_frame: Latest frame when the action was issued
        issued_at: Monotonic time the action was registered
        deadline: Monotonic time after which the timeout fallback applies
        future: Settled exactly once with a FrameActionResult
        timer: Deadline timer handle
        state: Current state
    """

    action: BrowserAction
    result: Optional[ActionResult]
    before_frame: Frame
    issued_at: float
    deadline: float
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None
    state: CorrelationState = CorrelationState.PENDING

    @property
    def reference_frame_id(self) -> int:
        return self.before_frame.frame_id

    @property
    def settled(self) -> bool:
        return self.state is not CorrelationState.PENDING

    def is_eligible(
        self,
        frame: Frame,
        now: float,
        stability_threshold: float,
        stability_wait_ms: float,
    ) -> bool:
        """Whether frame can serve as this action's post-action frame."""
        if frame.frame_id <= self.reference_frame_id:
            return False
        if frame.delta_percent <= stability_threshold:
            return True
        return (now - self.issued_at) * 1000.0 >= stability_wait_ms

    def settle(self, outcome: FrameActionResult, state: CorrelationState) -> bool:
        """Settle with a result. Returns False if already settled."""
        if self.settled:
            return False
        self.state = state
        self._cancel_timer()
        if not self.future.done():
            self.future.set_result(outcome)
        return True

    def cancel(self, reason: str) -> bool:
        """Reject with WaitCancelledError. Returns False if already settled."""
        if self.settled:
            return False
        self.state = CorrelationState.CANCELLED
        self._cancel_timer()
        if not self.future.done():
            self.future.set_exception(WaitCancelledError(reason))
        return True

    def abandon(self) -> None:
        """Settle silently after the awaiting caller was cancelled."""
        if self.settled:
            return
        self.state = CorrelationState.CANCELLED
        self._cancel_timer()
        self.future.cancel()

    def _cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class ActionCorrelator:
    """
    Table of pending correlations for one frame buffer.

    Attributes:
        stability_threshold: delta_percent at or below which a frame is settled
        stability_wait_ms: Time after which any newer frame is accepted
        latest_frame: Callable returning the newest buffered frame
    """

    def __init__(
        self,
        stability_threshold: float,
        stability_wait_ms: float,
        latest_frame: Callable[[], Optional[Frame]],
    ) -> None:
        self.stability_threshold = stability_threshold
        self.stability_wait_ms = stability_wait_ms
        self._latest_frame = latest_frame
        self._pending: List[PendingCorrelation] = []

    def __len__(self) -> int:
        return len(self._pending)

    def open(
        self,
        action: BrowserAction,
        result: Optional[ActionResult],
        before_frame: Frame,
        issued_at: float,
        deadline: float,
    ) -> PendingCorrelation:
        """
        Create a pending correlation and arm its deadline timer.

        Must be called from the event loop thread.
        """
        loop = asyncio.get_running_loop()
        correlation = PendingCorrelation(
            action=action,
            result=result,
            before_frame=before_frame,
            issued_at=issued_at,
            deadline=deadline,
            future=loop.create_future(),
        )
        delay = max(0.0, deadline - time.monotonic())
        correlation.timer = loop.call_later(delay, self._expire, correlation)
        self._pending.append(correlation)

        logger.debug(
            f"Correlation opened: {action.action.value} on frame "
            f"{correlation.reference_frame_id}, deadline in {delay * 1000:.0f}ms"
        )
        return correlation

    def on_frame(self, frame: Frame, now: float) -> int:
        """
        Resolve every pending correlation the frame qualifies for.

        Returns:
            Number of correlations resolved.
        """
        if not self._pending:
            return 0

        eligible = [
            c for c in self._pending
            if c.is_eligible(frame, now, self.stability_threshold, self.stability_wait_ms)
        ]
        eligible.sort(key=lambda c: (c.reference_frame_id, c.issued_at))

        for correlation in eligible:
            self._pending.remove(correlation)
            outcome = FrameActionResult(
                action=correlation.action,
                result=correlation.result,
                before_frame=correlation.before_frame,
                after_frame=frame,
                caused_change=frame.changed,
                latency_ms=(now - correlation.issued_at) * 1000.0,
                resolution=ResolutionReason.STABLE_FRAME,
            )
            correlation.settle(outcome, CorrelationState.RESOLVED_BY_FRAME)
            logger.debug(
                f"Correlation on frame {correlation.reference_frame_id} resolved "
                f"by frame {frame.frame_id} ({outcome.latency_ms:.0f}ms)"
            )

        return len(eligible)

    def _expire(self, correlation: PendingCorrelation) -> None:
        """Deadline fallback: settle with the latest buffered frame."""
        correlation.timer = None
        if correlation.settled:
            return
        if correlation in self._pending:
            self._pending.remove(correlation)

        latest = self._latest_frame() or correlation.before_frame
        now = time.monotonic()
        outcome = FrameActionResult(
            action=correlation.action,
            result=correlation.result,
            before_frame=correlation.before_frame,
            after_frame=latest,
            caused_change=latest.frame_id != correlation.reference_frame_id,
            latency_ms=(now - correlation.issued_at) * 1000.0,
            resolution=ResolutionReason.TIMEOUT,
        )
        correlation.settle(outcome, CorrelationState.RESOLVED_BY_TIMEOUT)
        logger.info(
            f"Correlation on frame {correlation.reference_frame_id} timed out, "
            f"falling back to frame {latest.frame_id}"
        )

    def discard(self, correlation: PendingCorrelation) -> None:
        """Drop a correlation whose caller went away."""
        if correlation in self._pending:
            self._pending.remove(correlation)
        correlation.abandon()

    def cancel_all(self, reason: str) -> int:
        """
        Reject every pending correlation with WaitCancelledError.

        Returns:
            Number of correlations cancelled.
        """
        pending = self._pending
        self._pending = []
        for correlation in pending:
            correlation.cancel(reason)
        return len(pending)
