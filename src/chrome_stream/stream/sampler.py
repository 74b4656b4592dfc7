"""
Frame Sampler
=============

Decides, per captured frame, whether it is worth forwarding downstream.

This module provides the FrameSampler class which:
    - Assigns monotonic frame ids in capture order
    - Dispatches delta detection to the detector's worker pool
    - Releases frames strictly in id order, even when diffs finish out of order
    - Forwards changed frames, drops unchanged ones, and forces a
      keep-alive frame when nothing was forwarded for keep_alive_ms
    - Fans forwarded frames out to a sink and to subscribers

Design Rules:
    - Id assignment and baseline bookkeeping happen on the event loop,
      before any diff is dispatched
    - The comparison baseline is the last CAPTURED raster, kept separate
      from last-forwarded bookkeeping; keep-alive captures never replace it
    - Subscriber failures are logged and never break the pipeline
"""

import asyncio
import dataclasses
import logging
import time
from collections import deque
from typing import Callable, Deque, Dict, List, Optional, Set

from chrome_stream.errors import SyncConfigError
from chrome_stream.stream.delta import DeltaDetector, DeltaResult, FULL_CHANGE
from chrome_stream.stream.frame import Frame
from chrome_stream.stream.source import CaptureError, FrameSource, RawFrame


logger = logging.getLogger(__name__)


FrameCallback = Callable[[Frame], None]


class SamplerMetrics:
    """Metrics for FrameSampler observability."""

    __slots__ = (
        "captured_count",
        "forwarded_count",
        "dropped_count",
        "keep_alive_count",
        "current_frame_id",
        "_intervals",
    )

    def __init__(self, interval_window: int = 30) -> None:
        self.captured_count: int = 0
        self.forwarded_count: int = 0
        self.dropped_count: int = 0
        self.keep_alive_count: int = 0
        self.current_frame_id: int = 0
        self._intervals: Deque[float] = deque(maxlen=interval_window)

    def record_interval(self, interval_ms: float) -> None:
        self._intervals.append(interval_ms)

    @property
    def avg_forward_interval_ms(self) -> float:
        """Rolling average time between forwarded frames."""
        if not self._intervals:
            return 0.0
        return sum(self._intervals) / len(self._intervals)

    def to_dict(self) -> dict:
        """Export metrics as dict."""
        return {
            "captured_count": self.captured_count,
            "forwarded_count": self.forwarded_count,
            "dropped_count": self.dropped_count,
            "keep_alive_count": self.keep_alive_count,
            "current_frame_id": self.current_frame_id,
            "avg_forward_interval_ms": round(self.avg_forward_interval_ms, 1),
        }


class FrameSampler:
    """
    Forward/drop/keep-alive policy over raw captures.

    Attributes:
        detector: DeltaDetector used for change detection
        keep_alive_ms: Maximum idle time before a frame is forced through
            (hot-updatable)
        metrics: Operational metrics

    Example:
        sampler = FrameSampler(DeltaDetector(), keep_alive_ms=2000,
                               sink=buffer.add_frame)
        sampler.start()
        frame = await sampler.process(raw)   # Frame if forwarded, else None
        await sampler.stop()
    """

    def __init__(
        self,
        detector: DeltaDetector,
        keep_alive_ms: int = 2000,
        source: Optional[FrameSource] = None,
        sink: Optional[FrameCallback] = None,
        interval_window: int = 30,
    ) -> None:
        """
        Initialize frame sampler.

        Args:
            detector: Delta detector (owns the worker pool)
            keep_alive_ms: Keep-alive interval in milliseconds. Must be > 0.
            source: Optional source used for keep-alive and on-demand captures
            sink: Callback receiving every forwarded frame, in id order
            interval_window: Number of intervals in the rolling average
        """
        if keep_alive_ms <= 0:
            raise SyncConfigError(f"keep_alive_ms must be > 0, got {keep_alive_ms}")
        if interval_window < 1:
            raise SyncConfigError(f"interval_window must be >= 1, got {interval_window}")

        self.detector = detector
        self.source = source
        self.sink = sink
        self._keep_alive_ms = keep_alive_ms

        # Id assignment and release ordering
        self._last_id: int = 0
        self._next_release: int = 1
        self._ready: Dict[int, Frame] = {}
        self._outcomes: Dict[int, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()

        # Comparison baseline (last captured) vs forwarding bookkeeping
        self._baseline: Optional[RawFrame] = None
        self._last_forwarded_at: Optional[float] = None
        self._last_frame: Optional[Frame] = None

        self._subscribers: List[FrameCallback] = []
        self._keep_alive_task: Optional[asyncio.Task] = None

        self.metrics = SamplerMetrics(interval_window)

        logger.info(f"FrameSampler initialized: keep_alive={keep_alive_ms}ms")

    @property
    def keep_alive_ms(self) -> int:
        return self._keep_alive_ms

    @property
    def running(self) -> bool:
        """Whether the keep-alive timer is active."""
        return self._keep_alive_task is not None and not self._keep_alive_task.done()

    @property
    def current_frame_id(self) -> int:
        """Id of the most recently assigned frame (0 before any capture)."""
        return self._last_id

    @property
    def last_frame(self) -> Optional[Frame]:
        """Most recently forwarded frame."""
        return self._last_frame

    # =========================================================================
    # Lifecycle
    # =========================================================================

    def start(self) -> None:
        """Start the keep-alive timer. Must be called from a running loop."""
        if self.running:
            return
        self._keep_alive_task = asyncio.create_task(self._keep_alive_loop())
        logger.info("FrameSampler started")

    async def pause(self) -> None:
        """
        Stop the keep-alive timer only.

        Baseline, ids and in-flight comparisons are kept; start() resumes.
        """
        task = self._keep_alive_task
        self._keep_alive_task = None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
            logger.info("FrameSampler paused")

    async def stop(self) -> None:
        """
        Stop the keep-alive timer and abandon in-flight comparisons.

        Frames whose diff had not been released are neither forwarded nor
        counted as dropped; their process() callers are cancelled. Frames
        ingested while stopping are abandoned too.
        """
        await self.pause()

        while True:
            pending = [t for t in self._tasks if not t.done()]
            if not pending:
                break
            for t in pending:
                t.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

        for outcome in self._outcomes.values():
            outcome.cancel()
        self._outcomes.clear()
        self._ready.clear()
        self._next_release = self._last_id + 1

        logger.info("FrameSampler stopped")

    def reset_baseline(self) -> None:
        """
        Forget the comparison baseline.

        The next capture is reported as a full change. Frame ids keep
        increasing.
        """
        self._baseline = None
        self._last_forwarded_at = None
        self._last_frame = None

    def update_config(
        self,
        delta_threshold: Optional[float] = None,
        keep_alive_ms: Optional[int] = None,
    ) -> None:
        """
        Hot-update sampling parameters.

        A keep-alive change restarts the keep-alive timer if it is running.

        Raises:
            SyncConfigError: If a value is out of range
        """
        if keep_alive_ms is not None and keep_alive_ms <= 0:
            raise SyncConfigError(f"keep_alive_ms must be > 0, got {keep_alive_ms}")

        if delta_threshold is not None:
            self.detector.delta_threshold = delta_threshold
            logger.info(f"Delta threshold updated to {delta_threshold}%")

        if keep_alive_ms is not None and keep_alive_ms != self._keep_alive_ms:
            self._keep_alive_ms = keep_alive_ms
            logger.info(f"Keep-alive interval updated to {keep_alive_ms}ms")
            if self.running:
                self._keep_alive_task.cancel()
                self._keep_alive_task = asyncio.create_task(self._keep_alive_loop())

    def subscribe(self, callback: FrameCallback) -> Callable[[], None]:
        """
        Register a callback for forwarded frames.

        Returns:
            A function that removes the subscription.
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    # =========================================================================
    # Ingestion
    # =========================================================================

    def ingest(self, raw: RawFrame) -> asyncio.Future:
        """
        Accept a raw capture.

        Assigns the frame id and advances the comparison baseline
        immediately, then dispatches the diff.

        Returns:
            Future resolving to the forwarded Frame, or None if dropped.
        """
        previous = self._baseline
        self._baseline = raw
        self.metrics.captured_count += 1
        return self._dispatch(raw, previous, keep_alive=False)

    async def process(self, raw: RawFrame) -> Optional[Frame]:
        """Ingest a raw capture and wait until it is forwarded or dropped."""
        return await self.ingest(raw)

    async def capture_frame(self) -> Frame:
        """
        Capture the surface on demand and force it through.

        The capture becomes the new comparison baseline and is reported as
        a full change.

        Raises:
            CaptureError: If no source is attached or the capture failed
        """
        if self.source is None:
            raise CaptureError("No frame source attached")

        raw = await self.source.capture_on_demand()
        self._baseline = raw
        self.metrics.captured_count += 1
        frame = await self._dispatch(raw, None, keep_alive=False, forced=True)
        return frame

    def _dispatch(
        self,
        raw: RawFrame,
        previous: Optional[RawFrame],
        keep_alive: bool,
        forced: bool = False,
    ) -> asyncio.Future:
        loop = asyncio.get_running_loop()

        self._last_id += 1
        frame_id = self._last_id
        self.metrics.current_frame_id = frame_id

        outcome = loop.create_future()
        self._outcomes[frame_id] = outcome

        task = loop.create_task(
            self._compute(frame_id, raw, previous, keep_alive, forced or keep_alive)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return outcome

    async def _compute(
        self,
        frame_id: int,
        raw: RawFrame,
        previous: Optional[RawFrame],
        keep_alive: bool,
        forced: bool,
    ) -> None:
        """Run the diff off-loop, then queue the frame for ordered release."""
        try:
            result = await self.detector.compare_async(
                previous.image_b64 if previous is not None else None,
                raw.image_b64,
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning(f"Delta detection failed for frame {frame_id}: {e}")
            result = FULL_CHANGE

        self._ready[frame_id] = self._build_frame(frame_id, raw, result, keep_alive, forced)
        self._drain()

    @staticmethod
    def _build_frame(
        frame_id: int,
        raw: RawFrame,
        result: DeltaResult,
        keep_alive: bool,
        forced: bool,
    ) -> Frame:
        return Frame(
            frame_id=frame_id,
            captured_at=raw.captured_at,
            image_b64=raw.image_b64,
            changed=True if forced else result.changed,
            delta_percent=result.delta_percent,
            metadata=raw.metadata,
            keep_alive=keep_alive,
        )

    def _drain(self) -> None:
        """Release every frame whose predecessors have all been released."""
        while self._next_release in self._ready:
            candidate = self._ready.pop(self._next_release)
            self._next_release += 1

            forwarded = None
            try:
                forwarded = self._apply_policy(candidate)
            except Exception as e:
                logger.error(f"Failed to release frame {candidate.frame_id}: {e}")
            finally:
                outcome = self._outcomes.pop(candidate.frame_id, None)
                if outcome is not None and not outcome.done():
                    outcome.set_result(forwarded)

    def _apply_policy(self, frame: Frame) -> Optional[Frame]:
        now = time.monotonic()

        if not frame.changed:
            idle_ms = (
                None if self._last_forwarded_at is None
                else (now - self._last_forwarded_at) * 1000.0
            )
            if idle_ms is not None and idle_ms < self._keep_alive_ms:
                self.metrics.dropped_count += 1
                logger.debug(
                    f"Dropped frame {frame.frame_id} (delta={frame.delta_percent:.2f}%)"
                )
                return None
            frame = dataclasses.replace(frame, changed=True, keep_alive=True)

        self._forward(frame, now)
        return frame

    def _forward(self, frame: Frame, now: float) -> None:
        if self._last_forwarded_at is not None:
            self.metrics.record_interval((now - self._last_forwarded_at) * 1000.0)
        self._last_forwarded_at = now
        self._last_frame = frame

        self.metrics.forwarded_count += 1
        if frame.keep_alive:
            self.metrics.keep_alive_count += 1

        logger.debug(f"Forwarding {frame!r}")

        if self.sink is not None:
            try:
                self.sink(frame)
            except Exception as e:
                logger.error(f"Frame sink failed on frame {frame.frame_id}: {e}")

        for callback in list(self._subscribers):
            try:
                callback(frame)
            except Exception as e:
                logger.error(f"Frame subscriber failed on frame {frame.frame_id}: {e}")

    # =========================================================================
    # Keep-alive
    # =========================================================================

    async def _keep_alive_loop(self) -> None:
        """
        Tick every keep_alive_ms / 2 and force a frame through when idle.

        Half-interval ticks bound the worst-case forwarding gap even when
        the source stops pushing captures.
        """
        interval = self._keep_alive_ms / 2000.0
        while True:
            await asyncio.sleep(interval)

            if self._baseline is None or self._outcomes:
                continue
            if self._last_forwarded_at is not None:
                idle_ms = (time.monotonic() - self._last_forwarded_at) * 1000.0
                if idle_ms < self._keep_alive_ms:
                    continue

            try:
                await self._emit_keep_alive()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.warning(f"Keep-alive capture failed: {e}")

    async def _emit_keep_alive(self) -> Optional[Frame]:
        baseline = self._baseline
        if self.source is not None:
            raw = await self.source.capture_on_demand()
        else:
            raw = RawFrame(
                image_b64=baseline.image_b64,
                captured_at=time.time(),
                metadata=baseline.metadata,
            )

        # Compared against the baseline, which stays in place
        frame = await self._dispatch(raw, self._baseline, keep_alive=True)
        if frame is not None:
            logger.debug(f"Keep-alive frame {frame.frame_id} forwarded")
        return frame
