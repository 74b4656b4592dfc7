"""
Image Decoder
=============

Dedicated module for decoding base64 screencast images into OpenCV matrices.

Design Rules:
    - This is the ONLY place in the codebase that decodes images
    - Validates shape and dtype
    - Fails fast on corrupt frames
    - Always returns 3-channel BGR so two rasters share a color depth
"""

import base64
import binascii
import logging
from typing import Optional, Tuple

import cv2
import numpy as np


logger = logging.getLogger(__name__)


class ImageDecodeError(Exception):
    """Raised when image decoding fails."""
    pass


def decode_image_bgr(image_b64: str) -> np.ndarray:
    """
    Decode a base64 JPEG/PNG payload to a BGR numpy array.

    Alpha channels are dropped and grayscale images are expanded, so
    every successfully decoded raster has the same color depth.

    Args:
        image_b64: Base64-encoded image data

    Returns:
        BGR image as np.ndarray (H, W, 3), dtype=uint8

    Raises:
        ImageDecodeError: If decoding fails or image is invalid
    """
    try:
        image_bytes = base64.b64decode(image_b64, validate=True)
    except (binascii.Error, ValueError) as e:
        raise ImageDecodeError(f"Base64 decode failed: {e}") from e

    if not image_bytes:
        raise ImageDecodeError("Empty image payload")

    nparr = np.frombuffer(image_bytes, np.uint8)
    bgr = cv2.imdecode(nparr, cv2.IMREAD_COLOR)

    if bgr is None:
        raise ImageDecodeError("cv2.imdecode returned None")

    if bgr.ndim != 3 or bgr.shape[2] != 3:
        raise ImageDecodeError(f"Invalid image shape: {bgr.shape}")

    if bgr.dtype != np.uint8:
        raise ImageDecodeError(f"Invalid dtype: {bgr.dtype}")

    return bgr


def encode_image_b64(image: np.ndarray, ext: str = ".png") -> str:
    """
    Encode a BGR/grayscale numpy array as a base64 image payload.

    Used when a raster has to travel as a frame payload, e.g. test
    fixtures and relays that hand over raw pixels.

    Raises:
        ImageDecodeError: If OpenCV cannot encode the array
    """
    ok, buf = cv2.imencode(ext, image)
    if not ok:
        raise ImageDecodeError(f"cv2.imencode failed for extension {ext}")
    return base64.b64encode(buf.tobytes()).decode("ascii")


def get_image_dimensions(image_b64: str) -> Optional[Tuple[int, int]]:
    """
    Get (height, width) of an encoded image, or None if it cannot be decoded.
    """
    try:
        bgr = decode_image_bgr(image_b64)
        return bgr.shape[:2]
    except ImageDecodeError:
        return None
