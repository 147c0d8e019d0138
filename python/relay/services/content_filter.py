"""Pattern-based content-safety filter for generated replies.

A blocked reply is not an error: the pipeline swaps in the category's safe
message and flags the reply as filtered.

Categories are checked in order; the first match wins:
prohibited_content → violence → selfHarm → harassment → illegal → adult_content
"""

import re
from dataclasses import dataclass

from relay.logging import get_logger

logger = get_logger(__name__)


def _compile(*patterns: str) -> tuple[re.Pattern, ...]:
    return tuple(re.compile(p, re.IGNORECASE) for p in patterns)


# Personal data the model must never echo back
PROHIBITED_PATTERNS = _compile(
    r"\b(?:\d[ -]?){13,16}\b",  # payment card numbers
    r"\b\d{3}-\d{2}-\d{4}\b",  # US SSN
)

CATEGORY_PATTERNS: tuple[tuple[str, str, float, tuple[re.Pattern, ...]], ...] = (
    (
        "violence",
        "violence_harm",
        0.9,
        _compile(
            r"\b(kill|murder|assassinate|destroy|eliminate)\s+"
            r"(you|yourself|him|her|them|someone)\b",
            r"\b(hurt|harm|damage|injure)\s+(you|yourself|physically|badly)\b",
            r"\b(suicide|self.harm|cut yourself|end your life)\b",
            r"\b(bomb|explosive|weapon|gun|knife)\s+(making|instructions|how to)\b",
        ),
    ),
    (
        "selfHarm",
        "self_harm",
        0.95,
        _compile(
            r"\b(cut|cutting|self.harm|self.injury)\b",
            r"\b(want to die|wish I was dead|kill myself)\b",
            r"\b(suicide|suicidal thoughts|end it all)\b",
        ),
    ),
    (
        "harassment",
        "harassment",
        0.8,
        _compile(
            r"\b(stupid|idiot|moron|retard|dumb)\s+(bitch|slut|whore)\b",
            r"\b(go kill yourself|kys|neck yourself)\b",
            r"\b(hate you|despise you|loathe you)\s+(so much|completely)\b",
        ),
    ),
    (
        "illegal",
        "illegal_activity",
        0.9,
        _compile(
            r"\b(how to make|create|build)\s+(drugs|meth|cocaine|heroin)\b",
            r"\b(steal|rob|burglarize|fraud)\s+(money|credit cards|identity)\b",
            r"\b(pirate|crack|hack)\s+(software|games|accounts)\b",
            r"\b(child|minor)\s+(exploitation|abuse|inappropriate)\b",
        ),
    ),
    (
        "adult_content",
        "adult_content",
        0.7,
        _compile(
            r"\b(explicit|graphic)\s+(sexual|adult|mature)\s+(content|material)\b",
            r"\b(sexual|intimate)\s+(roleplay|fantasy|scenario)\b",
        ),
    ),
)

SAFE_MESSAGES = {
    "prohibited_content": "I can't respond to that. Let's talk about something else! 😊",
    "violence": (
        "I prefer to keep our conversation peaceful. What else would you like to chat about?"
    ),
    "selfHarm": (
        "I care about your wellbeing. If you're going through a tough time, "
        "please reach out to someone who can help. 💙"
    ),
    "harassment": "Let's keep our conversation respectful and positive! 🌟",
    "illegal": "I can't discuss that topic. How about we talk about something else?",
    "adult_content": (
        "I'd prefer to keep our conversation friendly and appropriate. "
        "What else can we chat about?"
    ),
    "filter_error": "I'm having trouble processing that message. Could you try rephrasing it? 🤔",
}

FALLBACK_SAFE_MESSAGE = "I can't respond to that message. Let's change the topic! 🌟"


@dataclass(frozen=True)
class FilterResult:
    blocked: bool
    reason: str | None = None
    category: str | None = None
    confidence: float = 0.0


ALLOWED = FilterResult(blocked=False)


def filter_content(text: str | None) -> FilterResult:
    """Check a reply against prohibited patterns and safety categories."""
    if not text:
        return ALLOWED

    for pattern in PROHIBITED_PATTERNS:
        if pattern.search(text):
            logger.warning("content_blocked", reason="prohibited_content", text_chars=len(text))
            return FilterResult(
                blocked=True,
                reason="prohibited_content",
                category="prohibited_content",
                confidence=1.0,
            )

    for reason, category, confidence, patterns in CATEGORY_PATTERNS:
        if any(p.search(text) for p in patterns):
            logger.warning("content_blocked", reason=reason, text_chars=len(text))
            return FilterResult(
                blocked=True, reason=reason, category=category, confidence=confidence
            )

    return ALLOWED


def safe_message_for(reason: str | None, category: str | None = None) -> str:
    """Safe replacement text for a filter verdict."""
    return SAFE_MESSAGES.get(reason or "") or SAFE_MESSAGES.get(category or "") or (
        FALLBACK_SAFE_MESSAGE
    )
