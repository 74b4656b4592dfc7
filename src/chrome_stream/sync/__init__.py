"""
Sync Module
===========

Frame history and hybrid frame/action synchronization.

Components:
    - FrameBuffer: Bounded frame history, action correlation and waits
    - ActionCorrelator: Pending-action table with deadline fallback
    - StreamSynchronizer: Facade wiring detector, sampler and buffer
"""

from chrome_stream.sync.buffer import ActionExecutor, FrameBuffer
from chrome_stream.sync.correlation import ActionCorrelator, CorrelationState, PendingCorrelation
from chrome_stream.sync.synchronizer import StreamSynchronizer


__all__ = [
    "ActionExecutor",
    "FrameBuffer",
    "ActionCorrelator",
    "CorrelationState",
    "PendingCorrelation",
    "StreamSynchronizer",
]
