"""Inline snippet expansion for staff replies."""

from __future__ import annotations

import re
from typing import Mapping


def _inline_pattern(start: str, end: str) -> re.Pattern[str]:
    return re.compile(f"{re.escape(start)}(\\s*\\S+?\\s*){re.escape(end)}", re.IGNORECASE)


def expand_inline_snippets(text: str, snippets: Mapping[str, str], start: str, end: str) -> tuple[str, list[str]]:
    """Replace `{start}trigger{end}` placeholders with snippet bodies.

    Triggers match case-insensitively. Unknown placeholders are left untouched.

    Args:
        text: Reply text
        snippets: Snippet bodies keyed by lowercase trigger
        start: Opening delimiter
        end: Closing delimiter

    Returns:
        (expanded text, unknown triggers in first-seen order)
    """
    unknown: list[str] = []

    def replace(match: re.Match[str]) -> str:
        trigger = match.group(1).strip()
        body = snippets.get(trigger.lower())
        if body is None:
            if trigger not in unknown:
                unknown.append(trigger)
            return match.group(0)
        return body

    return _inline_pattern(start, end).sub(replace, text), unknown
