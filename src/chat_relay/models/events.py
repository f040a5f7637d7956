"""Normalized stream events produced by provider adapters.

A provider stream yields zero or more ``TokenEvent`` values followed by exactly one
terminal event, ``CompletedEvent`` or ``FailedEvent``.
"""

from dataclasses import dataclass, field
from typing import Optional, Union

from .usage import TokenUsage


@dataclass(frozen=True)
class TokenEvent:
    text: str


@dataclass(frozen=True)
class CompletedEvent:
    content: str
    usage: TokenUsage = field(default_factory=TokenUsage)


@dataclass(frozen=True)
class FailedEvent:
    error: str
    exception: Optional[BaseException] = field(default=None, compare=False)


StreamEvent = Union[TokenEvent, CompletedEvent, FailedEvent]


def is_terminal(event: StreamEvent) -> bool:
    return isinstance(event, (CompletedEvent, FailedEvent))
