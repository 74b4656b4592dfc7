"""
Action Models
=============

Action vocabulary issued by the agent against the browser surface.

The schema follows the computer-use tool convention: one `action` verb plus
the parameters that verb needs. Every action may carry the `frame_id` the
agent was looking at when it decided to act, so downstream consumers can
audit causality.

Classification:
    - Visual actions (clicks, typing, scrolling, ...) are expected to
      change the page; the synchronizer waits for a settled frame
    - Non-visual actions (wait, screenshot) resolve immediately against
      the frame they were issued on

Example:
    action = BrowserAction(action="left_click", coordinate=(640, 400), frame_id=12)
    assert action.is_visual
"""

import time
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, Field, model_validator


class ActionType(str, Enum):
    """Action verbs understood by the input executor."""

    SCREENSHOT = "screenshot"
    LEFT_CLICK = "left_click"
    RIGHT_CLICK = "right_click"
    MIDDLE_CLICK = "middle_click"
    DOUBLE_CLICK = "double_click"
    TRIPLE_CLICK = "triple_click"
    LEFT_CLICK_DRAG = "left_click_drag"
    LEFT_MOUSE_DOWN = "left_mouse_down"
    LEFT_MOUSE_UP = "left_mouse_up"
    MOUSE_MOVE = "mouse_move"
    TYPE = "type"
    KEY = "key"
    SCROLL = "scroll"
    HOLD_KEY = "hold_key"
    WAIT = "wait"
    NAVIGATE = "navigate"
    ZOOM = "zoom"


class ScrollDirection(str, Enum):
    UP = "up"
    DOWN = "down"
    LEFT = "left"
    RIGHT = "right"


NON_VISUAL_ACTIONS = frozenset({ActionType.WAIT, ActionType.SCREENSHOT})

# Fields each verb cannot do without
_REQUIRED_FIELDS: Dict[ActionType, Tuple[str, ...]] = {
    ActionType.LEFT_CLICK: ("coordinate",),
    ActionType.RIGHT_CLICK: ("coordinate",),
    ActionType.MIDDLE_CLICK: ("coordinate",),
    ActionType.DOUBLE_CLICK: ("coordinate",),
    ActionType.TRIPLE_CLICK: ("coordinate",),
    ActionType.LEFT_CLICK_DRAG: ("start_coordinate", "end_coordinate"),
    ActionType.LEFT_MOUSE_DOWN: ("coordinate",),
    ActionType.LEFT_MOUSE_UP: ("coordinate",),
    ActionType.MOUSE_MOVE: ("coordinate",),
    ActionType.TYPE: ("text",),
    ActionType.KEY: ("text",),
    ActionType.SCROLL: ("coordinate", "scroll_direction", "scroll_amount"),
    ActionType.HOLD_KEY: ("key", "duration"),
    ActionType.WAIT: ("duration",),
    ActionType.NAVIGATE: ("url",),
    ActionType.ZOOM: ("region",),
}


class BrowserAction(BaseModel):
    """
    A single input action against the browser surface.

    Attributes:
        action: Action verb
        coordinate: Target point (x, y) in viewport pixels
        start_coordinate: Drag start point
        end_coordinate: Drag end point
        text: Text to type, key combo (e.g. "ctrl+s"), or click modifier
        key: Key to hold (hold_key)
        scroll_direction: Scroll direction
        scroll_amount: Scroll amount in wheel clicks
        duration: Seconds to wait or hold
        url: Navigation target
        region: Zoom region (x1, y1, x2, y2)
        frame_id: Frame the agent based this action on
    """

    action: ActionType = Field(..., description="Action verb")
    coordinate: Optional[Tuple[int, int]] = Field(default=None, description="Target (x, y)")
    start_coordinate: Optional[Tuple[int, int]] = Field(default=None, description="Drag start")
    end_coordinate: Optional[Tuple[int, int]] = Field(default=None, description="Drag end")
    text: Optional[str] = Field(default=None, description="Text, key combo or modifier")
    key: Optional[str] = Field(default=None, description="Key to hold")
    scroll_direction: Optional[ScrollDirection] = Field(default=None, description="Scroll direction")
    scroll_amount: Optional[int] = Field(default=None, ge=0, description="Scroll amount")
    duration: Optional[float] = Field(default=None, ge=0, description="Duration in seconds")
    url: Optional[str] = Field(default=None, description="Navigation URL")
    region: Optional[Tuple[int, int, int, int]] = Field(default=None, description="Zoom region")
    frame_id: Optional[int] = Field(default=None, ge=0, description="Frame this action is based on")

    @model_validator(mode="after")
    def validate_required_fields(self) -> "BrowserAction":
        """Ensure the verb's parameters are present."""
        missing = [
            name for name in _REQUIRED_FIELDS.get(self.action, ())
            if getattr(self, name) is None
        ]
        if missing:
            raise ValueError(
                f"Action '{self.action.value}' requires: {', '.join(missing)}"
            )
        return self

    @property
    def is_visual(self) -> bool:
        """Whether the action is expected to change what is on screen."""
        return self.action not in NON_VISUAL_ACTIONS


class ActionResult(BaseModel):
    """
    Result reported by the input executor for one action.

    Attributes:
        success: Whether the action was carried out
        frame_id: Frame id current when the action completed
        error: Error message if the action failed
        screenshot: Base64 image for screenshot actions
        timestamp: UNIX timestamp when the action completed
        action: The executed action
    """

    success: bool = Field(..., description="Whether the action succeeded")
    frame_id: Optional[int] = Field(default=None, description="Frame id after the action")
    error: Optional[str] = Field(default=None, description="Error message")
    screenshot: Optional[str] = Field(default=None, description="Screenshot payload")
    timestamp: float = Field(default_factory=time.time, description="Completion time")
    action: Optional[BrowserAction] = Field(default=None, description="Executed action")
