"""
Stream Module
=============

Frame ingestion, delta detection and sampling components.

This module provides the ingestion layer for chrome_stream:
    - Frame: Typed frame data model (internal representation)
    - FrameSource / RawFrame: Capture backend interface
    - DeltaDetector: Pixel-level change measurement
    - FrameSampler: Forward/drop/keep-alive policy with ordered release
    - ScreencastConsumer: WebSocket FrameSource with reconnection

Example:
    from chrome_stream.stream import DeltaDetector, FrameSampler, RawFrame

    sampler = FrameSampler(DeltaDetector(delta_threshold=2.0), sink=buffer.add_frame)
    sampler.start()

    frame = await sampler.process(RawFrame(image_b64=png_b64))
"""

from chrome_stream.stream.frame import Frame, FrameMetadata
from chrome_stream.stream.source import CaptureError, FrameSource, RawFrame
from chrome_stream.stream.image_decoder import ImageDecodeError
from chrome_stream.stream.delta import DeltaDetector, DeltaResult
from chrome_stream.stream.sampler import FrameSampler, SamplerMetrics
from chrome_stream.stream.consumer import ScreencastConsumer, ScreencastConsumerMetrics


__all__ = [
    "Frame",
    "FrameMetadata",
    "FrameSource",
    "RawFrame",
    "CaptureError",
    "ImageDecodeError",
    "DeltaDetector",
    "DeltaResult",
    "FrameSampler",
    "SamplerMetrics",
    "ScreencastConsumer",
    "ScreencastConsumerMetrics",
]
