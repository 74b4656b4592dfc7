"""
Frame Buffer
=============

Bounded, ordered store of recently forwarded frames, and the hybrid
frame/action synchronization built on top of it.

This module provides the FrameBuffer class, the single owner of frame
history for one browser surface. It:
    - Keeps the last max_size forwarded frames (drops oldest on overflow)
    - Correlates each registered action with the frame that settles after it
      (lock-step waiting), while tagging it with the frame id it was based
      on (optimistic correlation)
    - Lets callers wait for the next frame or for the surface to settle

Design Rules:
    - All writes go through add_frame() and clear()
    - Every wait is bounded; none can hang past its timeout
    - clear() rejects every outstanding waiter with WaitCancelledError
    - Executor failures are reported in the result, never raised
"""

import asyncio
import logging
import time
from collections import deque
from dataclasses import dataclass
from typing import Awaitable, Callable, Deque, List, Optional, Set

from chrome_stream.errors import (
    FrameWaitTimeoutError,
    NoFrameAvailableError,
    SyncConfigError,
    WaitCancelledError,
)
from chrome_stream.models.actions import ActionResult, BrowserAction
from chrome_stream.models.reason_codes import ResolutionReason
from chrome_stream.models.results import FrameActionResult
from chrome_stream.stream.frame import Frame
from chrome_stream.sync.correlation import ActionCorrelator


logger = logging.getLogger(__name__)


ActionExecutor = Callable[[BrowserAction], Awaitable[ActionResult]]


@dataclass(eq=False)
class _NextFrameWaiter:
    after_id: int
    future: asyncio.Future


@dataclass(eq=False)
class _StableWaiter:
    after_id: int
    duration_ms: float
    last_change: float
    last_frame: Optional[Frame]
    future: asyncio.Future
    timer: Optional[asyncio.TimerHandle] = None

    def cancel_timer(self) -> None:
        if self.timer is not None:
            self.timer.cancel()
            self.timer = None


class FrameBuffer:
    """
    Frame history and action synchronization for one surface.

    Attributes:
        max_size: Maximum number of frames kept
        stability_wait_ms: After this long, any newer frame resolves an action
        max_wait_ms: Upper bound on how long register_action waits
        stability_threshold: delta_percent at or below which a frame counts
            as settled (independent of the forwarding delta threshold)

    Example:
        buffer = FrameBuffer(max_size=10)

        # Producer (FrameSampler sink)
        buffer.add_frame(frame)

        # Consumer
        result = await buffer.register_action(action, executor)
        print(result.after_frame, result.caused_change)
    """

    def __init__(
        self,
        max_size: int = 10,
        stability_wait_ms: float = 200,
        max_wait_ms: float = 2000,
        stability_threshold: float = 0.5,
    ) -> None:
        """
        Initialize frame buffer.

        Raises:
            SyncConfigError: If parameters are invalid
        """
        self._validate_parameters(max_size, stability_wait_ms, max_wait_ms, stability_threshold)

        self._max_size = max_size
        self.stability_wait_ms = stability_wait_ms
        self.max_wait_ms = max_wait_ms
        self.stability_threshold = stability_threshold

        self._frames: Deque[Frame] = deque()
        self._correlator = ActionCorrelator(
            stability_threshold=stability_threshold,
            stability_wait_ms=stability_wait_ms,
            latest_frame=self.latest,
        )
        self._next_waiters: List[_NextFrameWaiter] = []
        self._stable_waiters: List[_StableWaiter] = []
        self._executing: Set[asyncio.Future] = set()

        self._total_added: int = 0
        self._evicted_count: int = 0

    @staticmethod
    def _validate_parameters(
        max_size: int,
        stability_wait_ms: float,
        max_wait_ms: float,
        stability_threshold: float,
    ) -> None:
        """Validate parameters at startup. Fail fast."""
        errors = []

        if max_size < 1:
            errors.append(f"max_size must be >= 1, got {max_size}")
        if stability_wait_ms <= 0:
            errors.append(f"stability_wait_ms must be > 0, got {stability_wait_ms}")
        if max_wait_ms <= stability_wait_ms:
            errors.append(
                f"max_wait_ms must be > stability_wait_ms, "
                f"got {max_wait_ms} <= {stability_wait_ms}"
            )
        if not 0 <= stability_threshold <= 100:
            errors.append(
                f"stability_threshold must be in [0, 100], got {stability_threshold}"
            )

        if errors:
            raise SyncConfigError(
                "Frame buffer validation failed:\n" + "\n".join(errors)
            )

    @property
    def max_size(self) -> int:
        """Maximum buffer size."""
        return self._max_size

    @property
    def size(self) -> int:
        """Current number of frames in buffer."""
        return len(self._frames)

    @property
    def pending_count(self) -> int:
        """Number of actions waiting for their post-action frame."""
        return len(self._correlator)

    def __len__(self) -> int:
        return len(self._frames)

    # =========================================================================
    # Writes
    # =========================================================================

    def add_frame(self, frame: Frame) -> bool:
        """
        Append a forwarded frame and settle whatever it satisfies.

        Args:
            frame: Frame to add. Its id must exceed every buffered id.

        Returns:
            True if the frame was added, False if it was rejected as out
            of order.
        """
        newest = self.latest()
        if newest is not None and frame.frame_id <= newest.frame_id:
            logger.warning(
                f"Rejected out-of-order frame {frame.frame_id} "
                f"(newest is {newest.frame_id})"
            )
            return False

        self._frames.append(frame)
        self._total_added += 1
        while len(self._frames) > self._max_size:
            self._frames.popleft()
            self._evicted_count += 1

        now = time.monotonic()
        self._correlator.on_frame(frame, now)
        self._notify_next_waiters(frame)
        self._update_stable_waiters(frame, now)
        return True

    def clear(self) -> int:
        """
        Drop all frames and reject every outstanding waiter.

        Pending actions, next-frame waits and stable-frame waits all fail
        with WaitCancelledError.

        Returns:
            Number of frames cleared.
        """
        cleared = len(self._frames)
        self._frames.clear()

        reason = "Frame buffer cleared"
        cancelled = self._correlator.cancel_all(reason)

        for guard in self._executing:
            if not guard.done():
                guard.set_exception(WaitCancelledError(reason))
                cancelled += 1

        for waiter in self._next_waiters:
            if not waiter.future.done():
                waiter.future.set_exception(WaitCancelledError(reason))
                cancelled += 1
        self._next_waiters.clear()

        for waiter in self._stable_waiters:
            waiter.cancel_timer()
            if not waiter.future.done():
                waiter.future.set_exception(WaitCancelledError(reason))
                cancelled += 1
        self._stable_waiters.clear()

        logger.info(f"Frame buffer cleared: {cleared} frames, {cancelled} waiters cancelled")
        return cleared

    # =========================================================================
    # Reads
    # =========================================================================

    def latest(self) -> Optional[Frame]:
        """Newest buffered frame."""
        return self._frames[-1] if self._frames else None

    def by_id(self, frame_id: int) -> Optional[Frame]:
        """Buffered frame with the given id, if still held."""
        for frame in self._frames:
            if frame.frame_id == frame_id:
                return frame
        return None

    def since(self, frame_id: int) -> List[Frame]:
        """All buffered frames with id greater than frame_id, oldest first."""
        return [f for f in self._frames if f.frame_id > frame_id]

    def all(self) -> List[Frame]:
        """Copy of every buffered frame, oldest first."""
        return list(self._frames)

    def is_frame_stale(self, frame_id: int, max_age_ms: float = 1000) -> bool:
        """
        Whether acting on frame_id would mean acting on a stale view.

        A frame is stale if it is no longer buffered or was captured more
        than max_age_ms ago.
        """
        frame = self.by_id(frame_id)
        if frame is None:
            return True
        return (time.time() - frame.captured_at) * 1000.0 > max_age_ms

    # =========================================================================
    # Action synchronization
    # =========================================================================

    async def register_action(
        self,
        action: BrowserAction,
        executor: ActionExecutor,
    ) -> FrameActionResult:
        """
        Execute an action and wait for the frame that settles after it.

        The action is tagged with the latest frame id before execution.
        The whole call, executor included, is bounded by max_wait_ms.

        Args:
            action: Action to execute
            executor: Async callable carrying out the action

        Returns:
            FrameActionResult. Executor failures and timeouts are reported
            in the result (see ResolutionReason).

        Raises:
            NoFrameAvailableError: If no frame has been buffered yet
            WaitCancelledError: If the buffer is cleared while waiting
        """
        before_frame = self.latest()
        if before_frame is None:
            raise NoFrameAvailableError("No frame available for action")

        loop = asyncio.get_running_loop()
        issued_at = time.monotonic()
        deadline = issued_at + self.max_wait_ms / 1000.0

        result, error = await self._execute(action, executor, loop, deadline)

        if error is not None:
            logger.warning(f"Action {action.action.value} failed: {error}")
            return FrameActionResult(
                action=action,
                result=result,
                before_frame=before_frame,
                after_frame=None,
                caused_change=False,
                latency_ms=(time.monotonic() - issued_at) * 1000.0,
                resolution=ResolutionReason.EXECUTION_FAILED,
                error=error,
            )

        if not action.is_visual:
            return FrameActionResult(
                action=action,
                result=result,
                before_frame=before_frame,
                after_frame=before_frame,
                caused_change=False,
                latency_ms=(time.monotonic() - issued_at) * 1000.0,
                resolution=ResolutionReason.NON_VISUAL,
            )

        correlation = self._correlator.open(
            action, result, before_frame, issued_at, deadline
        )
        try:
            return await correlation.future
        except asyncio.CancelledError:
            self._correlator.discard(correlation)
            raise

    async def _execute(
        self,
        action: BrowserAction,
        executor: ActionExecutor,
        loop: asyncio.AbstractEventLoop,
        deadline: float,
    ):
        """
        Run the executor, bounded by the deadline and by clear().

        Returns:
            (ActionResult or None, error message or None)
        """
        try:
            task = asyncio.ensure_future(executor(action))
        except Exception as e:
            return None, f"{type(e).__name__}: {e}"

        guard = loop.create_future()
        self._executing.add(guard)

        try:
            timeout = max(0.0, deadline - time.monotonic())
            done, _ = await asyncio.wait(
                {task, guard},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            self._executing.discard(guard)

        if guard.done():
            task.cancel()
            guard.result()  # raises WaitCancelledError
        guard.cancel()

        if task not in done:
            task.cancel()
            return None, f"Executor did not finish within {self.max_wait_ms}ms"

        try:
            result = task.result()
        except Exception as e:
            return None, f"{type(e).__name__}: {e}"

        if not isinstance(result, ActionResult):
            return None, f"Executor returned {type(result).__name__}, expected ActionResult"
        if not result.success:
            return result, result.error or "Action reported failure"
        return result, None

    async def wait_for_next_frame(self, timeout_ms: float = 5000) -> Frame:
        """
        Wait for the first frame newer than the latest one at call time.

        Raises:
            FrameWaitTimeoutError: If no newer frame arrives in time
            WaitCancelledError: If the buffer is cleared while waiting
        """
        loop = asyncio.get_running_loop()
        latest = self.latest()
        waiter = _NextFrameWaiter(
            after_id=latest.frame_id if latest is not None else 0,
            future=loop.create_future(),
        )
        self._next_waiters.append(waiter)

        try:
            return await asyncio.wait_for(waiter.future, timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError as e:
            raise FrameWaitTimeoutError(
                f"Timeout waiting for frame after {waiter.after_id}"
            ) from e
        finally:
            if waiter in self._next_waiters:
                self._next_waiters.remove(waiter)

    async def wait_for_stable_frame(
        self,
        duration_ms: float = 500,
        timeout_ms: float = 5000,
    ) -> Frame:
        """
        Wait for a frame that arrived after the call and was followed by
        duration_ms without significant change.

        Any frame with delta_percent above stability_threshold restarts
        the quiet period. The frame that was latest at call time never
        resolves the wait early; it is only returned on timeout, as the
        best available frame, instead of failing.

        Raises:
            FrameWaitTimeoutError: Only if no frame exists at all by the timeout
            WaitCancelledError: If the buffer is cleared while waiting
        """
        loop = asyncio.get_running_loop()
        latest = self.latest()
        waiter = _StableWaiter(
            after_id=latest.frame_id if latest is not None else 0,
            duration_ms=duration_ms,
            last_change=time.monotonic(),
            last_frame=latest,
            future=loop.create_future(),
        )
        self._schedule_stable_check(waiter)
        self._stable_waiters.append(waiter)

        try:
            return await asyncio.wait_for(waiter.future, timeout=timeout_ms / 1000.0)
        except asyncio.TimeoutError as e:
            if waiter.last_frame is not None:
                logger.debug(
                    f"Stable wait timed out, using frame {waiter.last_frame.frame_id}"
                )
                return waiter.last_frame
            raise FrameWaitTimeoutError("Timeout waiting for stable frame") from e
        finally:
            waiter.cancel_timer()
            if waiter in self._stable_waiters:
                self._stable_waiters.remove(waiter)

    def _notify_next_waiters(self, frame: Frame) -> None:
        for waiter in self._next_waiters:
            if frame.frame_id > waiter.after_id and not waiter.future.done():
                waiter.future.set_result(frame)

    def _update_stable_waiters(self, frame: Frame, now: float) -> None:
        for waiter in self._stable_waiters:
            if waiter.future.done():
                continue
            waiter.last_frame = frame
            if frame.delta_percent > self.stability_threshold:
                waiter.last_change = now
                self._schedule_stable_check(waiter)
            elif (now - waiter.last_change) * 1000.0 >= waiter.duration_ms:
                waiter.cancel_timer()
                waiter.future.set_result(frame)

    def _schedule_stable_check(self, waiter: _StableWaiter) -> None:
        waiter.cancel_timer()
        remaining = waiter.duration_ms / 1000.0 - (time.monotonic() - waiter.last_change)
        waiter.timer = waiter.future.get_loop().call_later(
            max(remaining, 0.001), self._check_stable, waiter
        )

    def _check_stable(self, waiter: _StableWaiter) -> None:
        """Timer callback: resolve once the quiet period has fully elapsed."""
        waiter.timer = None
        if waiter.future.done() or waiter.last_frame is None:
            return
        if waiter.last_frame.frame_id <= waiter.after_id:
            # Nothing new yet; the next arriving frame decides
            return
        quiet_ms = (time.monotonic() - waiter.last_change) * 1000.0
        if quiet_ms >= waiter.duration_ms:
            waiter.future.set_result(waiter.last_frame)
        else:
            self._schedule_stable_check(waiter)

    # =========================================================================
    # Observability
    # =========================================================================

    def metrics(self) -> dict:
        """
        Get buffer metrics for observability.

        Returns:
            Dict with size, maxsize, pending actions, frame ages and totals
        """
        now = time.time()
        return {
            "size": self.size,
            "maxsize": self._max_size,
            "pending_actions": self.pending_count,
            "oldest_age_ms": (now - self._frames[0].captured_at) * 1000.0 if self._frames else 0.0,
            "newest_age_ms": (now - self._frames[-1].captured_at) * 1000.0 if self._frames else 0.0,
            "total_added": self._total_added,
            "evicted_count": self._evicted_count,
        }
