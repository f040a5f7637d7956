"""Request-level guards: identity and IP rate limiting."""
