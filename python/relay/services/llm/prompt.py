"""Provider-agnostic prompt rendering for reply generation.

prompt.py produces a list of Turn objects; each adapter handles conversion to
its provider format.

Prompt structure:
- Exactly one system turn, always first (character persona + knowledge)
- History in strict user/assistant alternation
  - turns marked with a generation error are dropped
  - consecutive user messages are merged into one user turn
  - consecutive replies are joined into one assistant turn
  - leading assistant turns are dropped so history opens with the user
- Current user message last (merged into a trailing user turn if needed)
"""

from collections.abc import Iterable
from dataclasses import dataclass

from relay.services.llm.types import Turn

DEFAULT_SYSTEM_PROMPT = """You are {name}, chatting one-on-one with a user.
Stay in character, be warm and natural, and reply like a real person texting.
Keep replies short: one or two sentences, always ending with a complete thought."""

BREVITY_SUFFIX = "\n\nCRITICAL BREVITY INSTRUCTION: {instruction}"

MEDIA_PLACEHOLDERS = {
    "audio": "[Sent a voice message]",
    "media": "[Sent an image]",
}

EMPTY_BATCH_PLACEHOLDER = "[Multiple non-text messages]"

# Maximum total prompt size in characters
MAX_PROMPT_CHARS = 100_000


class PromptTooLargeError(Exception):
    """Raised when rendered prompt exceeds size limit."""

    def __init__(self, actual_size: int, max_size: int):
        self.actual_size = actual_size
        self.max_size = max_size
        super().__init__(f"Prompt size {actual_size} exceeds max {max_size}")


@dataclass(frozen=True)
class HistoryEntry:
    """A persisted message reduced to what the prompt needs."""

    message_id: str
    sender: str  # "user" | "character"
    content: str
    type: str = "text"
    failed: bool = False


def entry_text(entry: HistoryEntry) -> str:
    """Text to show the model for a message; media without caption gets a placeholder."""
    text = (entry.content or "").strip()
    if text:
        return text
    return MEDIA_PLACEHOLDERS.get(entry.type, "")


def combine_user_messages(texts: list[str]) -> str:
    """Merge a burst of user messages into one turn.

    Blank messages are skipped. Three or more are numbered so the model can
    answer them as a list.
    """
    valid = [t for t in texts if t and t.strip()]
    if not valid:
        return EMPTY_BATCH_PLACEHOLDER
    if len(valid) == 1:
        return valid[0]
    if len(valid) > 2:
        return "\n\n".join(f"{i}. {t}" for i, t in enumerate(valid, start=1))
    return "\n\n".join(valid)


def build_system_prompt(
    character_name: str,
    system_prompt: str | None = None,
    knowledge: Iterable[str] = (),
) -> str:
    """System instructions for a character.

    A character-specific prompt replaces the default persona prompt;
    knowledge lines are appended to the same turn.
    """
    base = system_prompt.strip() if system_prompt else ""
    if not base:
        base = DEFAULT_SYSTEM_PROMPT.format(name=character_name)

    knowledge_lines = [k for k in knowledge if k]
    if knowledge_lines:
        base += "\n\nCharacter Knowledge:\n" + "\n".join(knowledge_lines)
    return base


def render_prompt(
    system_prompt: str,
    history: list[HistoryEntry],
    current: HistoryEntry,
) -> list[Turn]:
    """Build the turn list for one generation.

    Args:
        system_prompt: Rendered system instructions.
        history: Earlier messages, oldest first. May include the current message.
        current: The user message being answered.

    Returns:
        Turns with the system turn first and strict user/assistant alternation.
    """
    turns: list[Turn] = [Turn(role="system", content=system_prompt)]
    body: list[Turn] = []
    pending_user: list[str] = []

    def flush_user() -> None:
        if pending_user:
            body.append(Turn(role="user", content=combine_user_messages(pending_user)))
            pending_user.clear()

    for entry in history:
        if entry.failed or entry.message_id == current.message_id:
            continue
        if entry.sender == "user":
            pending_user.append(entry_text(entry))
        elif entry.sender == "character":
            flush_user()
            text = entry_text(entry)
            if body and body[-1].role == "assistant":
                body[-1] = Turn(role="assistant", content=body[-1].content + "\n" + text)
            else:
                body.append(Turn(role="assistant", content=text))
        # Unknown senders never reach the model

    pending_user.append(entry_text(current))
    flush_user()

    while body and body[0].role == "assistant":
        body.pop(0)

    turns.extend(body)
    return turns


def apply_brevity_instruction(messages: list[Turn], instruction: str) -> list[Turn]:
    """Return a copy of messages with a brevity instruction on the system turn.

    The instruction is appended to the leading system turn; if there is none,
    a synthetic system turn carrying it is prepended.
    """
    if messages and messages[0].role == "system":
        suffix = BREVITY_SUFFIX.format(instruction=instruction)
        first = Turn(role="system", content=messages[0].content + suffix)
        return [first, *messages[1:]]
    return [Turn(role="system", content=instruction), *messages]


def validate_prompt_size(turns: list[Turn], max_chars: int = MAX_PROMPT_CHARS) -> None:
    """Raise PromptTooLargeError if total content exceeds max_chars."""
    total = sum(len(t.content) for t in turns)
    if total > max_chars:
        raise PromptTooLargeError(total, max_chars)
