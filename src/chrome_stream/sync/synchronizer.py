"""
Stream Synchronizer
===================

Public surface of the pipeline for one browser surface.

Wires DeltaDetector -> FrameSampler -> FrameBuffer, optionally attaches a
FrameSource (e.g. ScreencastConsumer) and a default action executor, and
exposes the operations an agent needs:

    add_frame            feed a raw capture through the sampler
    register_action      execute an action, wait for its settled frame
    execute_action(s)    same, with navigation handled as a settle-wait
    get_latest_frame / get_frame / frames_since
    wait_for_next_frame / wait_for_stable_frame
    get_stats / clear / start / stop / pause / resume

Example:
    sync = StreamSynchronizer.from_settings(settings, source=consumer,
                                            executor=input_executor)
    async with sync:
        frame = await sync.wait_for_next_frame(5000)
        result = await sync.execute_action(
            BrowserAction(action="left_click", coordinate=(100, 200), frame_id=frame.frame_id)
        )
"""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from chrome_stream.config import Settings
from chrome_stream.errors import NoFrameAvailableError
from chrome_stream.models.actions import ActionResult, ActionType, BrowserAction
from chrome_stream.models.reason_codes import ResolutionReason
from chrome_stream.models.results import FrameActionResult, SyncStats
from chrome_stream.stream.delta import DeltaDetector
from chrome_stream.stream.frame import Frame
from chrome_stream.stream.sampler import FrameCallback, FrameSampler
from chrome_stream.stream.source import FrameSource, RawFrame
from chrome_stream.sync.buffer import ActionExecutor, FrameBuffer


logger = logging.getLogger(__name__)

# Navigation settles on a quiet page rather than a single correlated frame
NAVIGATION_SETTLE_MS = 500
NAVIGATION_TIMEOUT_MS = 5000


class StreamSynchronizer:
    """
    Frame pipeline plus action synchronization for exactly one surface.

    Attributes:
        detector: Delta detector (owns the comparison worker pool)
        sampler: Forward/drop/keep-alive policy
        buffer: Frame history and action correlation
        source: Optional capture source
        executor: Optional default action executor
    """

    def __init__(
        self,
        max_buffer_size: int = 10,
        delta_threshold: float = 2.0,
        keep_alive_ms: int = 2000,
        stability_wait_ms: float = 200,
        max_wait_ms: float = 2000,
        stability_threshold: float = 0.5,
        color_threshold: float = 0.1,
        diff_workers: int = 2,
        downsample_max_width: int = 0,
        quality: int = 80,
        every_nth_frame: int = 1,
        source: Optional[FrameSource] = None,
        executor: Optional[ActionExecutor] = None,
        navigation_settle_ms: float = NAVIGATION_SETTLE_MS,
        navigation_timeout_ms: float = NAVIGATION_TIMEOUT_MS,
    ) -> None:
        """
        Initialize the synchronizer. All parameters are validated here.

        Raises:
            SyncConfigError: If any parameter is out of range
        """
        self.buffer = FrameBuffer(
            max_size=max_buffer_size,
            stability_wait_ms=stability_wait_ms,
            max_wait_ms=max_wait_ms,
            stability_threshold=stability_threshold,
        )
        self.detector = DeltaDetector(
            delta_threshold=delta_threshold,
            color_threshold=color_threshold,
            downsample_max_width=downsample_max_width,
            max_workers=diff_workers,
        )
        self.sampler = FrameSampler(
            self.detector,
            keep_alive_ms=keep_alive_ms,
            source=source,
            sink=self.buffer.add_frame,
        )
        self.source = source
        self.executor = executor
        self.quality = quality
        self.every_nth_frame = every_nth_frame
        self.navigation_settle_ms = navigation_settle_ms
        self.navigation_timeout_ms = navigation_timeout_ms

        self._started = False
        self._paused = False

        if source is not None:
            source.on_frame(self._on_raw_frame)

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        source: Optional[FrameSource] = None,
        executor: Optional[ActionExecutor] = None,
    ) -> "StreamSynchronizer":
        """Build a synchronizer from loaded configuration."""
        return cls(
            max_buffer_size=settings.stream.max_buffer_size,
            delta_threshold=settings.stream.delta_threshold,
            keep_alive_ms=settings.stream.keep_alive_ms,
            stability_wait_ms=settings.sync.stability_wait_ms,
            max_wait_ms=settings.sync.max_wait_ms,
            stability_threshold=settings.sync.stability_threshold,
            color_threshold=settings.delta.color_threshold,
            diff_workers=settings.delta.diff_workers,
            downsample_max_width=settings.delta.downsample_max_width,
            quality=settings.stream.quality,
            every_nth_frame=settings.stream.every_nth_frame,
            source=source,
            executor=executor,
        )

    @property
    def started(self) -> bool:
        return self._started

    @property
    def paused(self) -> bool:
        return self._paused

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self) -> None:
        """Start the keep-alive timer and, if attached, source capture."""
        if self._started:
            return
        self.sampler.start()
        if self.source is not None:
            await self.source.start_capture(self.quality, self.every_nth_frame)
        self._started = True
        logger.info("StreamSynchronizer started")

    async def stop(self) -> None:
        """
        Stop capture and sampling, then clear the buffer.

        Every outstanding waiter fails with WaitCancelledError.
        """
        if self.source is not None and self._started:
            try:
                await self.source.stop_capture()
            except Exception as e:
                logger.warning(f"Failed to stop capture: {e}")
        await self.sampler.stop()
        self.clear()
        self.detector.shutdown()
        self._started = False
        self._paused = False
        logger.info("StreamSynchronizer stopped")

    async def pause(self) -> None:
        """
        Stop capture and the keep-alive timer, keeping frame history.

        Buffered frames, pending waits and the comparison baseline are
        left untouched; resume() picks up where pause() left off.
        """
        if not self._started or self._paused:
            return
        if self.source is not None:
            await self.source.stop_capture()
        await self.sampler.pause()
        self._paused = True
        logger.info("StreamSynchronizer paused")

    async def resume(self) -> None:
        """Restart the keep-alive timer and source capture after pause()."""
        if not self._started or not self._paused:
            return
        self.sampler.start()
        if self.source is not None:
            await self.source.start_capture(self.quality, self.every_nth_frame)
        self._paused = False
        logger.info("StreamSynchronizer resumed")

    async def __aenter__(self) -> "StreamSynchronizer":
        await self.start()
        return self

    async def __aexit__(self, *args) -> None:
        await self.stop()

    def clear(self) -> int:
        """
        Drop buffered frames and cancel every outstanding wait.

        Used on session stop or recovery. The next capture is treated as a
        full change; frame ids keep increasing.

        Returns:
            Number of frames cleared.
        """
        self.sampler.reset_baseline()
        return self.buffer.clear()

    # =========================================================================
    # Frames
    # =========================================================================

    async def add_frame(self, raw: RawFrame) -> Optional[Frame]:
        """
        Feed a raw capture through delta detection and sampling.

        Returns:
            The forwarded Frame, or None if it was dropped as unchanged.
        """
        return await self.sampler.process(raw)

    def _on_raw_frame(self, raw: RawFrame) -> None:
        self.sampler.ingest(raw)

    async def capture_screenshot(self) -> Frame:
        """
        Capture the surface on demand and force it into the buffer.

        Raises:
            CaptureError: If no source is attached or the capture failed
        """
        return await self.sampler.capture_frame()

    def get_latest_frame(self) -> Optional[Frame]:
        return self.buffer.latest()

    def get_frame(self, frame_id: int) -> Optional[Frame]:
        return self.buffer.by_id(frame_id)

    def frames_since(self, frame_id: int) -> List[Frame]:
        return self.buffer.since(frame_id)

    def is_frame_stale(self, frame_id: int, max_age_ms: float = 1000) -> bool:
        return self.buffer.is_frame_stale(frame_id, max_age_ms)

    async def wait_for_next_frame(self, timeout_ms: float = 5000) -> Frame:
        return await self.buffer.wait_for_next_frame(timeout_ms)

    async def wait_for_stable_frame(
        self,
        duration_ms: float = 500,
        timeout_ms: float = 5000,
    ) -> Frame:
        return await self.buffer.wait_for_stable_frame(duration_ms, timeout_ms)

    def subscribe(self, callback: FrameCallback) -> Callable[[], None]:
        """Register a callback for every forwarded frame."""
        return self.sampler.subscribe(callback)

    # =========================================================================
    # Actions
    # =========================================================================

    async def register_action(
        self,
        action: BrowserAction,
        executor: Optional[ActionExecutor] = None,
    ) -> FrameActionResult:
        """
        Execute an action and wait for the frame that settles after it.

        Args:
            action: Action to execute
            executor: Executor to use; defaults to the synchronizer's own

        Raises:
            ValueError: If no executor is available
            NoFrameAvailableError: If no frame has been buffered yet
            WaitCancelledError: If the buffer is cleared while waiting
        """
        executor = executor or self.executor
        if executor is None:
            raise ValueError("No action executor configured")

        if action.frame_id is not None and self.buffer.is_frame_stale(action.frame_id):
            logger.debug(f"Action {action.action.value} based on stale frame {action.frame_id}")

        result = await self.buffer.register_action(action, executor)
        logger.debug(f"Action settled: {result.to_dict()}")
        return result

    async def execute_action(
        self,
        action: BrowserAction,
        executor: Optional[ActionExecutor] = None,
    ) -> FrameActionResult:
        """
        Execute an action with frame synchronization.

        Navigation replaces the page wholesale, so instead of correlating
        against a single frame it waits for the new page to settle.
        """
        if action.action is not ActionType.NAVIGATE:
            return await self.register_action(action, executor)

        return await self._navigate(action, executor or self.executor)

    async def execute_actions(
        self,
        actions: List[BrowserAction],
        executor: Optional[ActionExecutor] = None,
    ) -> List[FrameActionResult]:
        """Execute actions one after another, each fully synchronized."""
        results = []
        for action in actions:
            results.append(await self.execute_action(action, executor))
        return results

    async def _navigate(
        self,
        action: BrowserAction,
        executor: Optional[ActionExecutor],
    ) -> FrameActionResult:
        if executor is None:
            raise ValueError("No action executor configured")

        before_frame = self.buffer.latest()
        if before_frame is None:
            raise NoFrameAvailableError("No frame available for navigation")
        started = time.monotonic()

        try:
            result = await asyncio.wait_for(
                executor(action), timeout=self.navigation_timeout_ms / 1000.0
            )
        except asyncio.TimeoutError:
            result = ActionResult(
                success=False,
                error=f"Navigation did not finish within {self.navigation_timeout_ms}ms",
                action=action,
            )
        except Exception as e:
            result = ActionResult(success=False, error=f"{type(e).__name__}: {e}", action=action)

        if not result.success:
            logger.warning(f"Navigation to {action.url} failed: {result.error}")
            return FrameActionResult(
                action=action,
                result=result,
                before_frame=before_frame,
                after_frame=None,
                caused_change=False,
                latency_ms=(time.monotonic() - started) * 1000.0,
                resolution=ResolutionReason.EXECUTION_FAILED,
                error=result.error or "Navigation failed",
            )

        after_frame = await self.buffer.wait_for_stable_frame(
            self.navigation_settle_ms, self.navigation_timeout_ms
        )
        caused_change = after_frame.frame_id != before_frame.frame_id
        if not caused_change:
            logger.warning(
                f"No frame arrived within {self.navigation_timeout_ms}ms "
                f"after navigating to {action.url}"
            )
        return FrameActionResult(
            action=action,
            result=result,
            before_frame=before_frame,
            after_frame=after_frame,
            caused_change=caused_change,
            latency_ms=(time.monotonic() - started) * 1000.0,
            resolution=(
                ResolutionReason.STABLE_FRAME if caused_change else ResolutionReason.TIMEOUT
            ),
        )

    # =========================================================================
    # Configuration & observability
    # =========================================================================

    def update_config(
        self,
        delta_threshold: Optional[float] = None,
        keep_alive_ms: Optional[int] = None,
    ) -> None:
        """Hot-update the delta threshold and/or keep-alive interval."""
        self.sampler.update_config(
            delta_threshold=delta_threshold,
            keep_alive_ms=keep_alive_ms,
        )

    def get_stats(self) -> SyncStats:
        buffer_metrics = self.buffer.metrics()
        sampler_metrics = self.sampler.metrics
        return SyncStats(
            buffered_count=buffer_metrics["size"],
            pending_correlation_count=buffer_metrics["pending_actions"],
            oldest_age_ms=buffer_metrics["oldest_age_ms"],
            newest_age_ms=buffer_metrics["newest_age_ms"],
            captured_count=sampler_metrics.captured_count,
            forwarded_count=sampler_metrics.forwarded_count,
            dropped_count=sampler_metrics.dropped_count,
            avg_forward_interval_ms=sampler_metrics.avg_forward_interval_ms,
            current_frame_id=sampler_metrics.current_frame_id,
        )
