"""
Frame Source
============

Interface to whatever owns the browser session and produces raw captures.

The pipeline never talks to the browser directly. A FrameSource pushes raw
captures to a registered handler and accepts capture-control commands;
ScreencastConsumer is the websocket implementation, and tests use
in-memory fakes.
"""

import time
from dataclasses import dataclass, field
from typing import Callable, Protocol

from chrome_stream.stream.frame import FrameMetadata


class CaptureError(Exception):
    """Raised when an on-demand capture cannot be produced."""
    pass


@dataclass(frozen=True, slots=True)
class RawFrame:
    """
    One capture as delivered by a FrameSource, before sampling.

    Attributes:
        image_b64: Base64-encoded image data
        captured_at: UNIX timestamp of the capture
        metadata: View metadata reported with the capture
    """

    image_b64: str
    captured_at: float = field(default_factory=time.time)
    metadata: FrameMetadata = field(default_factory=FrameMetadata)

    def __repr__(self) -> str:
        return f"RawFrame(captured_at={self.captured_at:.3f}, bytes={len(self.image_b64)})"


RawFrameHandler = Callable[[RawFrame], None]


class FrameSource(Protocol):
    """
    Protocol for capture backends.

    Implementations deliver raw frames by calling the handler registered
    with on_frame(), on the event loop thread.
    """

    def on_frame(self, handler: RawFrameHandler) -> None:
        """Register the handler that receives every raw capture."""
        ...

    async def start_capture(self, quality: int, every_nth_frame: int) -> None:
        """Start pushing captures at the given JPEG quality and cadence."""
        ...

    async def stop_capture(self) -> None:
        """Stop pushing captures."""
        ...

    async def capture_on_demand(self) -> RawFrame:
        """
        Capture the surface right now.

        Raises:
            CaptureError: If no capture could be produced
        """
        ...
