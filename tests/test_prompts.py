"""
Unit tests for studio form validation and prompt building.
"""

import pytest

from jump_guard.core.prompts import (
    MAX_FIELD_LENGTH,
    NOT_SPECIFIED,
    StudioForm,
    build_jump_prompt,
)

GOALS = "Automate customer support replies"
CHALLENGES = "Small team and no AI experience"


class TestStudioForm:
    """Test required field validation."""

    def test_valid_form(self):
        form = StudioForm(goals=GOALS, challenges=CHALLENGES)
        assert form.industry == ""

    @pytest.mark.parametrize("field", ["goals", "challenges"])
    def test_too_short(self, field):
        values = {"goals": GOALS, "challenges": CHALLENGES, field: "  short   "}
        with pytest.raises(ValueError, match=f"{field} must be at least 10 characters"):
            StudioForm(**values)

    def test_length_measured_after_trim(self):
        with pytest.raises(ValueError, match="goals"):
            StudioForm(goals="   123456789   ", challenges=CHALLENGES)

    def test_boundaries(self):
        StudioForm(goals="x" * 10, challenges="y" * MAX_FIELD_LENGTH)

    def test_too_long(self):
        with pytest.raises(ValueError, match="challenges must be less than"):
            StudioForm(goals=GOALS, challenges="y" * (MAX_FIELD_LENGTH + 1))

    def test_non_string(self):
        with pytest.raises(ValueError, match="goals must be a string"):
            StudioForm(goals=None, challenges=CHALLENGES)


class TestBuildJumpPrompt:
    """Test the generated prompt."""

    def test_includes_form_context(self):
        form = StudioForm(goals=GOALS, challenges=CHALLENGES, industry="Retail", budget="$50/month")
        prompt = build_jump_prompt(form)

        assert f"What they're trying to achieve: {GOALS}" in prompt
        assert f"What's preventing them: {CHALLENGES}" in prompt
        assert "Industry: Retail" in prompt
        assert "Budget: $50/month" in prompt

    def test_missing_optional_fields(self):
        prompt = build_jump_prompt(StudioForm(goals=GOALS, challenges=CHALLENGES))
        assert f"Industry: {NOT_SPECIFIED}" in prompt
        assert f"Urgency: {NOT_SPECIFIED}" in prompt

    def test_requests_json_plan(self):
        prompt = build_jump_prompt(StudioForm(goals=GOALS, challenges=CHALLENGES))
        assert "Return ONLY valid JSON" in prompt
        assert '"jumpName"' in prompt
        assert '"phases"' in prompt
