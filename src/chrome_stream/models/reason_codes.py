"""
Reason Codes
============

Fixed set of machine-readable codes describing how an action settled.

Each FrameActionResult carries exactly ONE resolution code so callers can
tell a settled post-action frame from a best-effort fallback without
parsing error strings.
"""

from enum import Enum


class ResolutionReason(str, Enum):
    """
    How a registered action was resolved.

    Attributes:
        STABLE_FRAME: A newer frame arrived that met the stability rule
        TIMEOUT: No qualifying frame before the deadline; best-effort
            fallback to the latest buffered frame
        NON_VISUAL: Action does not change the screen (wait, screenshot);
            resolved against the frame it was issued on
        EXECUTION_FAILED: The input executor raised, reported failure,
            or overran the deadline; no frame was awaited
    """

    STABLE_FRAME = "STABLE_FRAME"
    TIMEOUT = "TIMEOUT"
    NON_VISUAL = "NON_VISUAL"
    EXECUTION_FAILED = "EXECUTION_FAILED"
