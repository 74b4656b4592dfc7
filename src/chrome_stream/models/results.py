"""
Result Models
=============

Typed results returned by the synchronization layer.

These models are dataclasses rather than pydantic models because they hold
live Frame objects and are produced on the hot path, never parsed.
"""

from dataclasses import dataclass
from typing import Optional

from chrome_stream.models.actions import ActionResult, BrowserAction
from chrome_stream.models.reason_codes import ResolutionReason
from chrome_stream.stream.frame import Frame


@dataclass(frozen=True, slots=True)
class FrameActionResult:
    """
    Outcome of an action correlated with the frames around it.

    Attributes:
        action: The action that was executed
        result: Executor result (None if the executor raised)
        before_frame: Frame the action was based on
        after_frame: Frame showing the result (None if execution failed)
        caused_change: Whether the action produced a visual change
        latency_ms: Time from registration to resolution
        resolution: How the action settled
        error: Executor error message, if any
    """

    action: BrowserAction
    result: Optional[ActionResult]
    before_frame: Frame
    after_frame: Optional[Frame]
    caused_change: bool
    latency_ms: float
    resolution: ResolutionReason
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict:
        """Export without image payloads, for logging."""
        return {
            "action": self.action.action.value,
            "before_frame_id": self.before_frame.frame_id,
            "after_frame_id": self.after_frame.frame_id if self.after_frame else None,
            "caused_change": self.caused_change,
            "latency_ms": round(self.latency_ms, 1),
            "resolution": self.resolution.value,
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class SyncStats:
    """
    Combined sampler and buffer statistics for one surface.
    """

    buffered_count: int
    pending_correlation_count: int
    oldest_age_ms: float
    newest_age_ms: float
    captured_count: int
    forwarded_count: int
    dropped_count: int
    avg_forward_interval_ms: float
    current_frame_id: int

    def to_dict(self) -> dict:
        return {
            "buffered_count": self.buffered_count,
            "pending_correlation_count": self.pending_correlation_count,
            "oldest_age_ms": round(self.oldest_age_ms, 1),
            "newest_age_ms": round(self.newest_age_ms, 1),
            "captured_count": self.captured_count,
            "forwarded_count": self.forwarded_count,
            "dropped_count": self.dropped_count,
            "avg_forward_interval_ms": round(self.avg_forward_interval_ms, 1),
            "current_frame_id": self.current_frame_id,
        }
