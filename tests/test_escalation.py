"""
test_escalation.py — Message ladder, priority policy and reply messages.

Run with:
    pytest tests/test_escalation.py -v
"""

from __future__ import annotations

import pytest

from backend.app.alerts.escalation import (
    COLORS,
    ESCALATION_LADDERS,
    MAX_CUSTOM_MESSAGE_LENGTH,
    SOUNDS,
    delivery_priority,
    ladder_length,
    render,
    render_response,
)
from backend.app.alerts.models import DeliveryPriority, ResponseKind, UrgencyLevel
from backend.app.core.errors import ValidationError


class TestLadders:

    def test_every_tier_has_three_steps(self):
        for level in UrgencyLevel:
            assert ladder_length(level) == 3

    def test_sound_and_colour_per_tier(self):
        assert SOUNDS[UrgencyLevel.LOW] == "low_alert_1.wav"
        assert SOUNDS[UrgencyLevel.NORMAL] == "normal_alert.wav"
        assert SOUNDS[UrgencyLevel.HIGH] == "high_alert_1.wav"
        assert COLORS[UrgencyLevel.URGENT] == "#F44336"


class TestPriorityPolicy:

    @pytest.mark.parametrize("step", [0, 1, 5])
    def test_urgent_and_high_always_high(self, step):
        assert delivery_priority(UrgencyLevel.URGENT, step) == DeliveryPriority.HIGH
        assert delivery_priority(UrgencyLevel.HIGH, step) == DeliveryPriority.HIGH

    @pytest.mark.parametrize("step", [0, 1, 5])
    def test_low_always_normal(self, step):
        assert delivery_priority(UrgencyLevel.LOW, step) == DeliveryPriority.NORMAL

    def test_normal_escalates_after_first_attempt(self):
        assert delivery_priority(UrgencyLevel.NORMAL, 0) == DeliveryPriority.NORMAL
        assert delivery_priority(UrgencyLevel.NORMAL, 1) == DeliveryPriority.HIGH


class TestRender:

    def test_normal_step_zero_default_body(self):
        msg = render(UrgencyLevel.NORMAL, 0)
        assert msg.title == "Parking Alert - Yuh Blockin'!"
        assert msg.body == "Yuh car blocking someone - please check and move!"
        assert msg.priority == DeliveryPriority.NORMAL

    def test_normal_step_one_second_line_high_priority(self):
        msg = render(UrgencyLevel.NORMAL, 1)
        assert msg.body == ESCALATION_LADDERS[UrgencyLevel.NORMAL][1][1]
        assert msg.priority == DeliveryPriority.HIGH

    def test_step_beyond_ladder_plateaus(self):
        last = render(UrgencyLevel.HIGH, 2)
        for step in (3, 10, 1000):
            msg = render(UrgencyLevel.HIGH, step)
            assert (msg.title, msg.body, msg.priority) == (last.title, last.body, last.priority)

    def test_custom_message_replaces_first_body_only(self):
        first = render(UrgencyLevel.LOW, 0, "Blue Corolla, gate 3")
        second = render(UrgencyLevel.LOW, 1, "Blue Corolla, gate 3")
        assert first.body == "Blue Corolla, gate 3"
        assert first.title == ESCALATION_LADDERS[UrgencyLevel.LOW][0][0]
        assert second.body == ESCALATION_LADDERS[UrgencyLevel.LOW][1][1]

    def test_blank_custom_message_uses_default(self):
        msg = render(UrgencyLevel.NORMAL, 0, "   ")
        assert msg.body == ESCALATION_LADDERS[UrgencyLevel.NORMAL][0][1]

    def test_emergency_alias(self):
        msg = render("emergency", 0)
        assert msg.title == "EMERGENCY - BLOCKING ACCESS!"
        assert msg.color == "#F44336"

    def test_android_channel_derived_from_sound(self):
        msg = render(UrgencyLevel.LOW, 0)
        assert msg.android_sound == "low_alert_1"
        assert msg.channel_id == "plate_alert_low_alert_1"

    def test_negative_step_rejected(self):
        with pytest.raises(ValidationError):
            render(UrgencyLevel.NORMAL, -1)

    def test_unknown_urgency_rejected(self):
        with pytest.raises(ValidationError) as exc:
            render("apocalyptic", 0)
        assert exc.value.details["field"] == "urgency"

    def test_overlong_custom_message_rejected(self):
        with pytest.raises(ValidationError):
            render(UrgencyLevel.NORMAL, 0, "x" * (MAX_CUSTOM_MESSAGE_LENGTH + 1))


class TestRenderResponse:

    def test_on_my_way(self):
        msg = render_response(ResponseKind.ON_MY_WAY)
        assert msg.title == "Response Received!"
        assert "On mi way!" in msg.body

    def test_every_kind_has_a_message(self):
        for kind in ResponseKind:
            msg = render_response(kind)
            assert msg.title and msg.body
            assert msg.priority == DeliveryPriority.NORMAL
