"""Tests for reasoning-artifact cleanup of raw provider text."""

import pytest

from relay.services.cleanup import clean_ai_response, has_thinking_artifacts


class TestCleanAiResponse:
    @pytest.mark.parametrize(
        "raw",
        [
            "<think>The user greets me.</think>Hello there!",
            "<thinking>plan a reply</thinking>Hello there!",
            "[thinking]plan[/thinking]Hello there!",
            "<reasoning>\nstep 1\nstep 2\n</reasoning>\nHello there!",
            "<THINK>case does not matter</THINK>Hello there!",
        ],
    )
    def test_strips_reasoning_blocks(self, raw: str):
        assert clean_ai_response(raw) == "Hello there!"

    def test_strips_multiple_blocks(self):
        raw = "<think>a</think>Hi! <think>b</think>How are you?"
        assert clean_ai_response(raw) == "Hi! How are you?"

    def test_normalizes_whitespace(self):
        raw = "  Hello\t\tthere!\n\n\n\nHow   are you?  "
        assert clean_ai_response(raw) == "Hello there!\n\nHow are you?"

    def test_plain_text_unchanged(self):
        assert clean_ai_response("Just a normal reply.") == "Just a normal reply."

    def test_empty_after_cleanup_returns_original(self):
        raw = "<think>only thoughts</think>"
        assert clean_ai_response(raw) == raw

    def test_empty_input(self):
        assert clean_ai_response("") == ""


class TestHasThinkingArtifacts:
    def test_detects_marker(self):
        assert has_thinking_artifacts("<think>x</think>hi") is True

    def test_plain_text(self):
        assert has_thinking_artifacts("hi there") is False

    def test_none(self):
        assert has_thinking_artifacts(None) is False
