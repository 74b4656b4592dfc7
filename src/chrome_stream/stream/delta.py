"""
Delta Detection
===============

Pixel-level comparison of consecutive screencast frames.

The detector decodes two encoded rasters, counts pixels whose perceptual
color difference exceeds a sensitivity threshold, and turns that count
into a changed-percentage and a boolean verdict.

Key Design Decisions:
    - Color difference is measured in YIQ space, weighted toward luma,
      so JPEG ringing and anti-aliasing noise stay below the threshold
    - Dimension mismatch is a full change, never an error
    - Any decode/compute failure is a full change (fail safe)
    - CPU work runs on a bounded thread pool so ingestion never stalls
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Optional

import numpy as np

from chrome_stream.errors import SyncConfigError
from chrome_stream.stream.image_decoder import decode_image_bgr, ImageDecodeError


logger = logging.getLogger(__name__)


# Largest possible YIQ delta between two 8-bit colors
MAX_YIQ_DELTA = 35215.0


@dataclass(frozen=True, slots=True)
class DeltaResult:
    """
    Outcome of comparing two rasters.

    Attributes:
        changed: delta_percent >= configured delta threshold
        delta_percent: Percentage of differing pixels (0-100)
        diff_pixel_count: Number of differing pixels (0 when not compared)
        total_pixels: Pixels compared (0 when not compared)
    """

    changed: bool
    delta_percent: float
    diff_pixel_count: int = 0
    total_pixels: int = 0


FULL_CHANGE = DeltaResult(changed=True, delta_percent=100.0)


def _downsample(image: np.ndarray, max_width: int) -> np.ndarray:
    """Integer-stride decimation to reduce comparison cost."""
    if max_width <= 0:
        return image
    width = image.shape[1]
    if width <= max_width:
        return image
    step = max(1, width // max_width)
    return image[::step, ::step]


def count_changed_pixels(
    previous: np.ndarray,
    current: np.ndarray,
    color_threshold: float,
) -> int:
    """
    Count pixels whose YIQ color delta exceeds the threshold.

    Args:
        previous: BGR image (H, W, 3), uint8
        current: BGR image (H, W, 3), uint8, same shape as previous
        color_threshold: Fraction (0-1) of the maximum color delta

    Returns:
        Number of differing pixels
    """
    diff = previous.astype(np.float32) - current.astype(np.float32)
    db = diff[..., 0]
    dg = diff[..., 1]
    dr = diff[..., 2]

    y = dr * 0.29889531 + dg * 0.58662247 + db * 0.11448223
    i = dr * 0.59597799 - dg * 0.27417610 - db * 0.32180189
    q = dr * 0.21147017 - dg * 0.52261711 + db * 0.31114694
    delta = 0.5053 * y * y + 0.299 * i * i + 0.1957 * q * q

    max_delta = MAX_YIQ_DELTA * color_threshold * color_threshold
    return int(np.count_nonzero(delta > max_delta))


class DeltaDetector:
    """
    Visual delta detector for screencast frames.

    Attributes:
        delta_threshold: Percentage of changed pixels that counts as a change
            (hot-updatable)
        color_threshold: Per-pixel sensitivity as a fraction of max color delta
        downsample_max_width: Compare at most this many columns (0 = full size)
        max_workers: Size of the comparison thread pool

    Example:
        detector = DeltaDetector(delta_threshold=2.0)
        result = detector.compare(prev_b64, curr_b64)
        if result.changed:
            forward(frame)
    """

    def __init__(
        self,
        delta_threshold: float = 2.0,
        color_threshold: float = 0.1,
        downsample_max_width: int = 0,
        max_workers: int = 2,
    ) -> None:
        self._validate_parameters(
            delta_threshold, color_threshold, downsample_max_width, max_workers
        )

        self._delta_threshold = float(delta_threshold)
        self.color_threshold = float(color_threshold)
        self.downsample_max_width = downsample_max_width
        self.max_workers = max_workers

        self._executor: Optional[ThreadPoolExecutor] = None

        logger.info(
            f"DeltaDetector initialized: threshold={delta_threshold}%, "
            f"color_threshold={color_threshold}, workers={max_workers}"
        )

    @staticmethod
    def _validate_parameters(
        delta_threshold: float,
        color_threshold: float,
        downsample_max_width: int,
        max_workers: int,
    ) -> None:
        """Validate parameters at startup. Fail fast."""
        errors = []

        if not 0 <= delta_threshold <= 100:
            errors.append(f"delta_threshold must be in [0, 100], got {delta_threshold}")
        if not 0 < color_threshold <= 1:
            errors.append(f"color_threshold must be in (0, 1], got {color_threshold}")
        if downsample_max_width < 0:
            errors.append(
                f"downsample_max_width must be >= 0, got {downsample_max_width}"
            )
        if max_workers < 1:
            errors.append(f"max_workers must be >= 1, got {max_workers}")

        if errors:
            raise SyncConfigError(
                "Delta detector validation failed:\n" + "\n".join(errors)
            )

    @property
    def delta_threshold(self) -> float:
        """Changed-pixel percentage at which a frame counts as changed."""
        return self._delta_threshold

    @delta_threshold.setter
    def delta_threshold(self, value: float) -> None:
        if not 0 <= value <= 100:
            raise SyncConfigError(f"delta_threshold must be in [0, 100], got {value}")
        self._delta_threshold = float(value)

    def compare(self, previous: Optional[str], current: str) -> DeltaResult:
        """
        Compare two encoded rasters.

        Args:
            previous: Base64 image of the preceding capture, or None when
                there is no baseline (first capture, forced recapture)
            current: Base64 image of the new capture

        Returns:
            DeltaResult. Never raises: failures report a full change.
        """
        if previous is None:
            return FULL_CHANGE

        try:
            prev_bgr = decode_image_bgr(previous)
            curr_bgr = decode_image_bgr(current)
        except ImageDecodeError as e:
            logger.warning(f"Frame decode failed during comparison: {e}")
            return FULL_CHANGE

        return self.compare_arrays(prev_bgr, curr_bgr)

    def compare_arrays(self, previous: np.ndarray, current: np.ndarray) -> DeltaResult:
        """Compare two decoded BGR rasters. Never raises."""
        if previous.shape != current.shape:
            logger.debug(
                f"Dimension mismatch {previous.shape} vs {current.shape}, full change"
            )
            return FULL_CHANGE

        try:
            prev_small = _downsample(previous, self.downsample_max_width)
            curr_small = _downsample(current, self.downsample_max_width)

            total_pixels = prev_small.shape[0] * prev_small.shape[1]
            if total_pixels == 0:
                return FULL_CHANGE

            diff_count = count_changed_pixels(
                prev_small, curr_small, self.color_threshold
            )
        except Exception as e:
            logger.warning(f"Frame comparison failed: {e}")
            return FULL_CHANGE

        delta_percent = diff_count / total_pixels * 100.0
        return DeltaResult(
            changed=delta_percent >= self._delta_threshold,
            delta_percent=delta_percent,
            diff_pixel_count=diff_count,
            total_pixels=total_pixels,
        )

    async def compare_async(self, previous: Optional[str], current: str) -> DeltaResult:
        """Run compare() on the detector's bounded thread pool."""
        if previous is None:
            return FULL_CHANGE

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(
            self._get_executor(), self.compare, previous, current
        )

    def _get_executor(self) -> ThreadPoolExecutor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.max_workers,
                thread_name_prefix="DeltaDetector",
            )
        return self._executor

    def shutdown(self) -> None:
        """Release the thread pool. The detector can be reused afterwards."""
        if self._executor is not None:
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
            logger.debug("DeltaDetector thread pool shut down")
