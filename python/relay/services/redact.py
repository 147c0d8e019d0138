"""Log guard and hashing helpers.

Never-log policy:
- Provider API keys and the internal secret
- Rendered prompts and system prompts
- User message content and generated reply text
- Raw provider response bodies

Allowed (with suffix):
- _chars, _length: length of text
- _sha256, _hash: hash of text
- Token counts, provider request IDs, quality scores
"""

import hashlib
import os

import structlog

FORBIDDEN_KEYS = frozenset(
    {
        "prompt",
        "system_prompt",
        "content",
        "text",
        "reply",
        "api_key",
        "bearer",
        "secret",
        "password",
        "message_text",
        "raw_body",
    }
)

REDACTED_SUFFIXES = ("_sha256", "_hash", "_length", "_chars")


def hash_text(value: str) -> str:
    """Stable SHA-256 hex digest, for correlating text across log lines."""
    return hashlib.sha256(value.encode("utf-8")).hexdigest()


def _has_redacted_suffix(key: str) -> bool:
    return any(key.endswith(suffix) for suffix in REDACTED_SUFFIXES)


def safe_kv(*, _env: str | None = None, **kwargs) -> dict:
    """Validate that no forbidden keys are present unless already redacted.

    Raises ValueError in local/test environments if a forbidden key is used.
    In staging/prod the violation is logged instead, so a stray field never
    takes down a worker.

    Usage:
        logger.info("generation.accepted", **safe_kv(
            provider="deepseek",
            reply_chars=42,          # OK: _chars suffix
            # reply="hello world",   # BLOCKED: forbidden key
        ))

    Args:
        _env: Override for RELAY_ENV (test-only). If None, reads from env.
        **kwargs: Keyword arguments to validate and return.

    Returns:
        The same kwargs dict, after validation.
    """
    violations = [key for key in kwargs if key in FORBIDDEN_KEYS and not _has_redacted_suffix(key)]

    if violations:
        msg = f"Forbidden log keys without redacted suffix: {violations}"
        env = _env or os.environ.get("RELAY_ENV", "local")
        if env in ("local", "test"):
            raise ValueError(msg)
        structlog.get_logger("relay.services.redact").warning(
            "safe_kv_violation", forbidden_keys=violations
        )
        for key in violations:
            kwargs.pop(key)

    return kwargs
