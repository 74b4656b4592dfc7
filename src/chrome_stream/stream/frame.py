"""
Frame Data Model
=================

Internal frame representation for the sampling and synchronization pipeline.

This module defines the typed Frame class that flows from the FrameSampler
into the FrameBuffer and out to subscribers.

Design Rules:
    - This is the ONLY frame format passed to downstream stages
    - Does NOT decode or manipulate image data
    - View metadata is carried through untouched
"""

from dataclasses import dataclass, field


@dataclass(frozen=True, slots=True)
class FrameMetadata:
    """
    View metadata reported by the screencast alongside each frame.

    Not interpreted by the pipeline; passed through to consumers so they
    can map frame coordinates back onto the page.
    """

    device_scale_factor: float = 1.0
    page_scale_factor: float = 1.0
    offset_top: float = 0.0
    offset_left: float = 0.0
    scroll_offset_x: float = 0.0
    scroll_offset_y: float = 0.0

    @classmethod
    def from_dict(cls, data: dict) -> "FrameMetadata":
        """Build from a screencast metadata dict, ignoring unknown keys."""
        return cls(
            device_scale_factor=float(data.get("deviceScaleFactor", 1.0)),
            page_scale_factor=float(data.get("pageScaleFactor", 1.0)),
            offset_top=float(data.get("offsetTop", 0.0)),
            offset_left=float(data.get("offsetLeft", 0.0)),
            scroll_offset_x=float(data.get("scrollOffsetX", 0.0)),
            scroll_offset_y=float(data.get("scrollOffsetY", 0.0)),
        )

    def to_dict(self) -> dict:
        return {
            "deviceScaleFactor": self.device_scale_factor,
            "pageScaleFactor": self.page_scale_factor,
            "offsetTop": self.offset_top,
            "offsetLeft": self.offset_left,
            "scrollOffsetX": self.scroll_offset_x,
            "scrollOffsetY": self.scroll_offset_y,
        }


@dataclass(frozen=True, slots=True)
class Frame:
    """
    Sampled frame from the browser surface.

    This is the canonical internal representation of a frame.
    It is immutable (frozen) to prevent accidental modification.

    Attributes:
        frame_id: Monotonically increasing id assigned at capture time
        captured_at: UNIX timestamp when the frame was captured
        image_b64: Base64-encoded JPEG/PNG frame data (NOT decoded)
        changed: Whether the frame differs from the previous capture
            (always True for the first frame and for keep-alive frames)
        delta_percent: Percentage of pixels differing from the previous capture
        metadata: View metadata from the screencast
        keep_alive: Whether the frame was forwarded by the keep-alive policy
    """

    frame_id: int
    captured_at: float
    image_b64: str
    changed: bool
    delta_percent: float
    metadata: FrameMetadata = field(default_factory=FrameMetadata)
    keep_alive: bool = False

    def __repr__(self) -> str:
        """Compact repr that doesn't dump the full image."""
        return (
            f"Frame(frame_id={self.frame_id}, "
            f"captured_at={self.captured_at:.3f}, "
            f"changed={self.changed}, "
            f"delta={self.delta_percent:.2f}%"
            f"{', keep_alive' if self.keep_alive else ''})"
        )
