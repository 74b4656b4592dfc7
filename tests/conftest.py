"""
Test Configuration
==================

Pytest fixtures and test doubles for chrome_stream.

Images are generated in-memory with numpy and encoded with OpenCV;
no browser or network is involved.
"""

import asyncio
import time
from typing import Callable, List, Optional

import numpy as np
import pytest

from chrome_stream.models.actions import ActionResult, BrowserAction
from chrome_stream.stream.frame import Frame
from chrome_stream.stream.image_decoder import encode_image_b64
from chrome_stream.stream.source import CaptureError, RawFrame


def make_image(width: int = 64, height: int = 48, color=(255, 255, 255)) -> np.ndarray:
    """Solid BGR image."""
    image = np.zeros((height, width, 3), dtype=np.uint8)
    image[:, :] = color
    return image


def make_png(width: int = 64, height: int = 48, color=(255, 255, 255)) -> str:
    return encode_image_b64(make_image(width, height, color))


def make_png_with_block(
    changed_fraction: float,
    width: int = 100,
    height: int = 100,
) -> str:
    """
    White image with the top rows painted black.

    changed_fraction of the pixels differ from an all-white image
    (rounded to whole rows).
    """
    image = make_image(width, height)
    rows = int(round(height * changed_fraction))
    image[:rows, :] = (0, 0, 0)
    return encode_image_b64(image)


def make_frame(
    frame_id: int,
    delta_percent: float = 10.0,
    changed: bool = True,
    captured_at: Optional[float] = None,
    image_b64: str = "",
) -> Frame:
    return Frame(
        frame_id=frame_id,
        captured_at=captured_at if captured_at is not None else time.time(),
        image_b64=image_b64,
        changed=changed,
        delta_percent=delta_percent,
    )


class FakeFrameSource:
    """In-memory FrameSource."""

    def __init__(self, capture_image: Optional[str] = None) -> None:
        self.handler = None
        self.capture_image = capture_image
        self.started_with = None
        self.stopped = False
        self.start_calls = 0
        self.stop_calls = 0
        self.capture_calls = 0

    def on_frame(self, handler) -> None:
        self.handler = handler

    async def start_capture(self, quality: int, every_nth_frame: int) -> None:
        self.started_with = (quality, every_nth_frame)
        self.start_calls += 1
        self.stopped = False

    async def stop_capture(self) -> None:
        self.stopped = True
        self.stop_calls += 1

    async def capture_on_demand(self) -> RawFrame:
        self.capture_calls += 1
        if self.capture_image is None:
            raise CaptureError("No capture configured")
        return RawFrame(image_b64=self.capture_image)

    def push(self, image_b64: str) -> None:
        self.handler(RawFrame(image_b64=image_b64))


class RecordingExecutor:
    """ActionExecutor that records calls and optionally delays or fails."""

    def __init__(
        self,
        delay: float = 0.0,
        success: bool = True,
        error: Optional[str] = None,
        raises: Optional[Exception] = None,
        on_execute: Optional[Callable[[BrowserAction], None]] = None,
    ) -> None:
        self.delay = delay
        self.success = success
        self.error = error
        self.raises = raises
        self.on_execute = on_execute
        self.calls: List[BrowserAction] = []

    async def __call__(self, action: BrowserAction) -> ActionResult:
        self.calls.append(action)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.on_execute is not None:
            self.on_execute(action)
        if self.raises is not None:
            raise self.raises
        return ActionResult(success=self.success, error=self.error, action=action)


@pytest.fixture
def white_png():
    """64x48 white PNG."""
    return make_png()


@pytest.fixture
def black_png():
    """64x48 black PNG."""
    return make_png(color=(0, 0, 0))


@pytest.fixture
def click_action():
    return BrowserAction(action="left_click", coordinate=(10, 20))


@pytest.fixture
def wait_action():
    return BrowserAction(action="wait", duration=0.1)


@pytest.fixture
def executor():
    return RecordingExecutor()


@pytest.fixture
def fake_source(white_png):
    return FakeFrameSource(capture_image=white_png)
