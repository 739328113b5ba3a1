"""
Correlation token extraction.

A matcher takes the raw text of one log record and returns the token that
identifies the invocation which emitted it, or None when the record carries
no token. Not every log line carries one.
"""

import re
from typing import Callable, Optional, Pattern, Protocol, Union

CorrelationToken = Union[str, int]


class TokenMatcher(Protocol):
    """Contract for token extraction: raw text in, optional token out."""

    def __call__(self, text: str) -> Optional[CorrelationToken]:
        ...


class RegexTokenMatcher:
    """Extracts a token with a pattern holding exactly one capture group.

    Args:
        pattern: Regular expression (string or compiled) with one group
        convert: Optional conversion applied to the captured text, e.g. int.
            A conversion that raises ValueError counts as no match.
    """

    def __init__(
        self,
        pattern: Union[str, Pattern[str]],
        convert: Optional[Callable[[str], CorrelationToken]] = None
    ):
        if isinstance(pattern, str):
            try:
                compiled = re.compile(pattern)
            except re.error as e:
                raise ValueError(f"Invalid token pattern {pattern!r}: {e}") from e
        else:
            compiled = pattern
        if compiled.groups != 1:
            raise ValueError(
                f"Token pattern must have exactly one capture group, "
                f"got {compiled.groups}: {compiled.pattern!r}"
            )
        self.pattern = compiled
        self.convert = convert

    def __call__(self, text: str) -> Optional[CorrelationToken]:
        match = self.pattern.search(text)
        if match is None or match.group(1) is None:
            return None
        raw = match.group(1)
        if self.convert is None:
            return raw
        try:
            return self.convert(raw)
        except ValueError:
            return None

    def __repr__(self) -> str:
        return f"RegexTokenMatcher({self.pattern.pattern!r})"


def index_matcher(prefix: str = "Executed call") -> RegexTokenMatcher:
    """Matcher for lines like ``Executed call 42`` yielding integer tokens."""
    return RegexTokenMatcher(rf"{re.escape(prefix)} ([0-9]+)\b", convert=int)
