"""Reply quality assessment and smart truncation.

Pure functions, no I/O. The generation pipeline calls assess_quality() on
every candidate reply and uses the verdict to decide between accepting,
truncating, or retrying with a brevity prompt.

Scoring (multiplicative, starting at 1.0):
- incomplete ending          x0.3, needs retry
- too long (>2 sentences or >200 chars)  x0.8, truncated on accept
- too short (<5 chars)       x0.2, needs retry
- repetition score < 0.7     x repetition
- coherence                  x coherence

A reply is acceptable when it is complete and does not need a retry.
Repetition and coherence only lower the score.
"""

import re
from dataclasses import dataclass, field

MAX_REPLY_CHARS = 200
MAX_REPLY_SENTENCES = 2
MIN_REPLY_CHARS = 5

_EMOJI_RANGES = (
    "\U0001F600-\U0001F64F"  # emoticons
    "\U0001F300-\U0001F5FF"  # symbols & pictographs
    "\U0001F680-\U0001F6FF"  # transport & map
    "\U0001F700-\U0001F77F"  # alchemical
    "\U0001F780-\U0001F7FF"  # geometric shapes extended
    "\U0001F800-\U0001F8FF"  # supplemental arrows-C
    "☀-⛿"  # misc symbols
    "✀-➿"  # dingbats
)

VALID_ENDING = re.compile(rf"(?:[.!?]|[{_EMOJI_RANGES}])$")
TRAILING_PUNCTUATION = re.compile(r"[.!?]*$")
TRAILING_EMOJI = re.compile(rf"[{_EMOJI_RANGES}]*$")

# Words that signal the model stopped mid-thought
INCOMPLETE_PATTERNS = tuple(
    re.compile(rf"\b({words})\s*[.!?]?$", re.IGNORECASE)
    for words in (
        "then|and|but|so|because|when|while|if|that|which|who",
        "the|a|an|this|that|these|those",
        "is|are|was|were|will|would|could|should|can|may|might",
        "in|on|at|by|for|with|to|from|of|about",
        "very|really|quite|more|most|less|much|many",
    )
)

ABRUPT_ENDING = re.compile(
    r"\b(and|but|so|because|when|while|if|that|which|who)\s*[.!?]?$", re.IGNORECASE
)
FLOW_INDICATORS = re.compile(
    r"\b(however|therefore|meanwhile|furthermore|additionally|consequently|thus|hence)\b",
    re.IGNORECASE,
)
SENTENCE = re.compile(r"[^.!?]*[.!?]+")
SENTENCE_TERMINATOR = re.compile(r"[.!?]+")


@dataclass
class QualityAssessment:
    """Verdict for one candidate reply."""

    score: float = 1.0
    is_complete: bool = True
    is_too_long: bool = False
    needs_retry: bool = False
    reason: str | None = None
    character_count: int = 0
    word_count: int = 0
    sentence_count: int = 0
    repetition: float = 1.0
    coherence: float = 1.0
    reasons: list[str] = field(default_factory=list)

    @property
    def acceptable(self) -> bool:
        return self.is_complete and not self.needs_retry

    def _flag(self, reason: str) -> None:
        self.reasons.append(reason)
        if self.reason is None:
            self.reason = reason

    def as_dict(self) -> dict:
        return {
            "score": round(self.score, 4),
            "is_complete": self.is_complete,
            "is_too_long": self.is_too_long,
            "needs_retry": self.needs_retry,
            "reason": self.reason,
            "reasons": list(self.reasons),
            "character_count": self.character_count,
            "word_count": self.word_count,
            "sentence_count": self.sentence_count,
        }


def is_response_incomplete(text: str | None) -> bool:
    """True if the reply looks cut off.

    A reply must end with terminal punctuation or an emoji, and must not end
    on a conjunction, article, auxiliary, preposition or intensifier once the
    trailing punctuation and emoji are stripped.
    """
    if not text:
        return True

    trimmed = text.strip()
    if not trimmed:
        return True

    if not VALID_ENDING.search(trimmed):
        return True

    stripped = TRAILING_EMOJI.sub("", TRAILING_PUNCTUATION.sub("", trimmed, count=1), count=1)
    return any(pattern.search(stripped) for pattern in INCOMPLETE_PATTERNS)


def assess_repetition(text: str | None) -> float:
    """Score 0-1, higher means less repetitive. Short texts get 1.0."""
    if not text or len(text) < 20:
        return 1.0

    words = re.split(r"\s+", text.lower())
    uniqueness = len(set(words)) / len(words)

    phrases = [" ".join(words[i : i + 3]) for i in range(len(words) - 2)]
    phrase_uniqueness = len(set(phrases)) / len(phrases) if phrases else 1.0

    return min(uniqueness * 1.2, phrase_uniqueness * 1.5, 1.0)


def assess_coherence(text: str | None) -> float:
    """Score 0-1 from capitalization, flow words and abrupt endings."""
    if not text or len(text) < 10:
        return 0.5

    score = 1.0

    sentences = [s for s in SENTENCE_TERMINATOR.split(text) if s.strip()]
    if sentences:
        capitalized = sum(1 for s in sentences if re.match(r"[A-Z]", s.strip()))
        score *= max(0.5, capitalized / len(sentences))

    if len(text) > 100 and FLOW_INDICATORS.search(text):
        score *= 1.1

    if ABRUPT_ENDING.search(text.strip()):
        score *= 0.7

    return min(score, 1.0)


def assess_quality(text: str, max_chars: int = MAX_REPLY_CHARS) -> QualityAssessment:
    """Score a cleaned candidate reply; longer than max_chars counts as too long."""
    assessment = QualityAssessment(
        character_count=len(text),
        word_count=len(re.split(r"\s+", text)),
        sentence_count=len(SENTENCE_TERMINATOR.findall(text)),
    )

    if is_response_incomplete(text):
        assessment.is_complete = False
        assessment.needs_retry = True
        assessment._flag("incomplete_response")
        assessment.score *= 0.3

    if assessment.sentence_count > MAX_REPLY_SENTENCES or len(text) > max_chars:
        assessment.is_too_long = True
        assessment._flag("too_long")
        assessment.score *= 0.8

    if len(text.strip()) < MIN_REPLY_CHARS:
        assessment.needs_retry = True
        assessment._flag("too_short")
        assessment.score *= 0.2

    assessment.repetition = assess_repetition(text)
    if assessment.repetition < 0.7:
        assessment.score *= assessment.repetition
        assessment._flag("repetitive_content")

    assessment.coherence = assess_coherence(text)
    assessment.score *= assessment.coherence

    return assessment


def smart_truncate(text: str, max_length: int = MAX_REPLY_CHARS) -> str:
    """Cut an overlong reply at a sentence boundary.

    Keeps as many whole sentences as fit in max_length. If not even the
    first sentence fits, cuts at a word boundary and appends an ellipsis
    (the ellipsis counts toward max_length).
    """
    if not text or len(text) <= max_length:
        return text

    truncated = ""
    for sentence in SENTENCE.findall(text):
        if len(truncated + sentence) > max_length:
            break
        truncated += sentence

    if truncated.strip():
        return truncated.strip()

    word_truncated = ""
    for word in text.split(" "):
        if len(word_truncated + " " + word) > max_length - 3:
            break
        word_truncated += (" " if word_truncated else "") + word

    return word_truncated + "..."
