"""Cheap token estimation for rate limiting and diagnostics."""

import math

from .models import message_content

MESSAGE_OVERHEAD = 4  # role + separators, per message


def estimate_text_tokens(text: str) -> int:
    """Heuristic token count for a piece of text.

    ceil(utf-8 bytes / 3), raised to half the character count for scripts
    where one character is one token, and never below 1 for non-empty text.
    """
    if not text:
        return 0
    estimate = math.ceil(len(text.encode("utf-8")) / 3)
    estimate = max(estimate, len(text) // 2)
    return max(estimate, 1)


def estimate_tokens(messages) -> int:
    """Approximate prompt size of a message list (Message objects or dicts)."""
    total = 0
    for m in messages:
        total += MESSAGE_OVERHEAD + estimate_text_tokens(message_content(m))
    return max(total, 1)
