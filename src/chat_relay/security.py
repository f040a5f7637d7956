"""Input sanitization for user-supplied chat content."""

import re

_BLOCK_TAGS = ("script", "iframe", "object", "form")

_BLOCK_PATTERNS = [
    re.compile(rf"<{tag}\b[^<]*(?:(?!</{tag}>)<[^<]*)*</{tag}>", re.IGNORECASE)
    for tag in _BLOCK_TAGS
]
_EMBED_PATTERN = re.compile(r"<embed\b[^>]*>", re.IGNORECASE)
_EVENT_HANDLER_PATTERN = re.compile(r"on\w+\s*=\s*[\"'][^\"']*[\"']", re.IGNORECASE)
_SCHEME_PATTERN = re.compile(r"(?:javascript|data):", re.IGNORECASE)

_INJECTION_PATTERNS = [
    re.compile(r"\b(SELECT|INSERT|UPDATE|DELETE|DROP|UNION|ALTER)\b", re.IGNORECASE),
    re.compile(r"--|/\*|\*/"),
    re.compile(r"<script", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"on(click|load|error|mouseover)", re.IGNORECASE),
]


def sanitize_chat_message(message: str) -> str:
    """Remove executable markup from a chat turn while leaving markdown intact."""
    sanitized = _BLOCK_PATTERNS[0].sub("", message)
    sanitized = _EVENT_HANDLER_PATTERN.sub("", sanitized)
    sanitized = _SCHEME_PATTERN.sub("", sanitized)

    for pattern in _BLOCK_PATTERNS[1:]:
        sanitized = pattern.sub("", sanitized)
    sanitized = _EMBED_PATTERN.sub("", sanitized)

    return sanitized.strip()


def detect_injection_attempt(value: str) -> bool:
    """Heuristic check for SQL or script injection markers."""
    return any(pattern.search(value) for pattern in _INJECTION_PATTERNS)
