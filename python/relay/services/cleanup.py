"""Strip model reasoning artifacts from raw provider text."""

import re

from relay.logging import get_logger

logger = get_logger(__name__)

THINKING_PATTERNS = tuple(
    re.compile(pattern, re.IGNORECASE | re.DOTALL)
    for pattern in (
        r"<think>.*?</think>",
        r"<thinking>.*?</thinking>",
        r"\[thinking\].*?\[/thinking\]",
        r"\*thinking\*.*?\*/thinking\*",
        r"\(thinking\).*?\(/thinking\)",
        r"<!-- thinking.*?thinking -->",
        r"<reasoning>.*?</reasoning>",
        r"\[reasoning\].*?\[/reasoning\]",
    )
)

THINKING_MARKERS = re.compile(
    r"<think>|<thinking>|\[thinking\]|\*thinking\*|\(thinking\)"
    r"|<!-- thinking|<reasoning>|\[reasoning\]",
    re.IGNORECASE,
)


def has_thinking_artifacts(text: str | None) -> bool:
    return bool(text) and bool(THINKING_MARKERS.search(text))


def normalize_whitespace(text: str) -> str:
    text = re.sub(r"\n\s*\n\s*\n", "\n\n", text)
    text = text.strip()
    text = re.sub(r"\n[ \t]+", "\n", text)
    text = re.sub(r"\t+", " ", text)
    return re.sub(r" {2,}", " ", text)


def clean_ai_response(text: str) -> str:
    """Remove thinking/reasoning blocks and normalize whitespace.

    If nothing is left after stripping, the original text is returned
    unchanged so the quality check can reject it instead.
    """
    if not text:
        return text

    cleaned = text
    for pattern in THINKING_PATTERNS:
        cleaned = pattern.sub("", cleaned)

    cleaned = normalize_whitespace(cleaned)

    if not cleaned:
        logger.warning("response_empty_after_cleanup", original_chars=len(text))
        return text

    if cleaned != text and has_thinking_artifacts(text):
        logger.info(
            "response_cleaned",
            original_chars=len(text),
            cleaned_chars=len(cleaned),
        )

    return cleaned
