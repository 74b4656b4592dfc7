"""
Model Tests
===========

Tests for the action vocabulary and result types.
"""

import pytest
from pydantic import ValidationError

from chrome_stream.models import (
    ActionResult,
    ActionType,
    BrowserAction,
    FrameActionResult,
    ResolutionReason,
    ScrollDirection,
)

from conftest import make_frame


class TestBrowserAction:

    def test_click(self):
        action = BrowserAction(action="left_click", coordinate=(10, 20), frame_id=3)

        assert action.action is ActionType.LEFT_CLICK
        assert action.coordinate == (10, 20)
        assert action.is_visual

    def test_missing_required_field(self):
        with pytest.raises(ValidationError) as exc_info:
            BrowserAction(action="left_click")

        assert "coordinate" in str(exc_info.value)

    def test_scroll_requires_direction_and_amount(self):
        with pytest.raises(ValidationError):
            BrowserAction(action="scroll", coordinate=(0, 0))

        action = BrowserAction(
            action="scroll", coordinate=(0, 0), scroll_direction="down", scroll_amount=3
        )
        assert action.scroll_direction is ScrollDirection.DOWN

    def test_drag_requires_both_ends(self):
        with pytest.raises(ValidationError):
            BrowserAction(action="left_click_drag", start_coordinate=(0, 0))

    def test_unknown_action(self):
        with pytest.raises(ValidationError):
            BrowserAction(action="teleport")

    def test_negative_frame_id_rejected(self):
        with pytest.raises(ValidationError):
            BrowserAction(action="screenshot", frame_id=-1)

    @pytest.mark.parametrize("action", [
        BrowserAction(action="wait", duration=1.0),
        BrowserAction(action="screenshot"),
    ])
    def test_non_visual_actions(self, action):
        assert not action.is_visual

    def test_navigate_is_visual(self):
        assert BrowserAction(action="navigate", url="https://example.com").is_visual


class TestFrameActionResult:

    def test_to_dict_omits_image_payloads(self):
        action = BrowserAction(action="left_click", coordinate=(1, 1))
        result = FrameActionResult(
            action=action,
            result=ActionResult(success=True),
            before_frame=make_frame(1, image_b64="abc"),
            after_frame=make_frame(2, image_b64="def"),
            caused_change=True,
            latency_ms=123.456,
            resolution=ResolutionReason.STABLE_FRAME,
        )

        data = result.to_dict()

        assert data == {
            "action": "left_click",
            "before_frame_id": 1,
            "after_frame_id": 2,
            "caused_change": True,
            "latency_ms": 123.5,
            "resolution": "STABLE_FRAME",
            "error": None,
        }
        assert result.succeeded

    def test_failed_result(self):
        result = FrameActionResult(
            action=BrowserAction(action="screenshot"),
            result=None,
            before_frame=make_frame(1),
            after_frame=None,
            caused_change=False,
            latency_ms=1.0,
            resolution=ResolutionReason.EXECUTION_FAILED,
            error="boom",
        )

        assert not result.succeeded
        assert result.to_dict()["after_frame_id"] is None
