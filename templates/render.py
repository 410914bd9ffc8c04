"""Placeholder interpolation for message templates."""
from __future__ import annotations

import re
from typing import Mapping, Optional

_PLACEHOLDER = re.compile(r"\{\{(\w+)\}\}")


def interpolate(text: Optional[str], variables: Mapping[str, str]) -> str:
    """
    Replace {{key}} with variables[key].

    A key that is missing, None or "" is unresolved and stays as the literal
    "{{key}}", so a gap is visible in the sent message instead of vanishing.
    """
    if not text:
        return ""

    def _sub(match: re.Match) -> str:
        value = variables.get(match.group(1))
        return str(value) if value else match.group(0)

    return _PLACEHOLDER.sub(_sub, text)
