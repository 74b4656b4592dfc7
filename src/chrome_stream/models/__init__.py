"""
Data Models
===========

Action and result models for chrome_stream.

Models:
    Actions:
        - ActionType: Action verbs (computer-use schema)
        - BrowserAction: One action with its parameters
        - ActionResult: Executor outcome

    Results:
        - ResolutionReason: How an action settled
        - FrameActionResult: Action correlated with before/after frames
        - SyncStats: Sampler and buffer statistics
"""

from chrome_stream.models.actions import (
    ActionResult,
    ActionType,
    BrowserAction,
    NON_VISUAL_ACTIONS,
    ScrollDirection,
)
from chrome_stream.models.reason_codes import ResolutionReason
from chrome_stream.models.results import FrameActionResult, SyncStats

__all__ = [
    # Actions
    "ActionType",
    "ScrollDirection",
    "BrowserAction",
    "ActionResult",
    "NON_VISUAL_ACTIONS",
    # Results
    "ResolutionReason",
    "FrameActionResult",
    "SyncStats",
]
