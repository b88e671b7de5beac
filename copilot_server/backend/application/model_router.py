"""Choose a model tier from the user text alone."""

import re

from copilot_server.config.default.pipeline import (
    DEFAULT_COMPLEX_MODEL,
    DEFAULT_SIMPLE_MODEL,
)

_COMPLEX_HINTS = re.compile(
    r"\b(code|program|implement|write|design|architecture|algorithm|optimi[sz]e|"
    r"debug|compare|difference|explain|trade-?offs?|scal(e|ing|ability)|"
    r"complexity|system|solve|refactor|tell me about (a time|yourself))\b",
    re.IGNORECASE,
)
COMPLEX_WORD_COUNT = 25


def select_model(
    text: str,
    simple_model: str = DEFAULT_SIMPLE_MODEL,
    complex_model: str = DEFAULT_COMPLEX_MODEL,
) -> str:
    """Long or technical questions go to the complex tier."""
    words = text.split()
    if len(words) >= COMPLEX_WORD_COUNT or _COMPLEX_HINTS.search(text):
        return complex_model
    return simple_model
