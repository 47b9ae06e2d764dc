"""Inline directive compilation for generation prompts.

Users annotate a natural-language prompt with ``--name value`` directives
borrowed from popular hosted image generators.  This module strips those
directives out of the text and turns them into generation options that the
workflow builder understands.

Directive Grammar
-----------------
All directives are case-insensitive and introduced by ``--``:

========  ===============  ==============================================
Name      Value            Effect on options
========  ===============  ==============================================
``ar``    ``W:H``          ``width`` / ``height`` with a 1024px long edge
``q``     integer          ``steps = clamp(q * 10, 10, 50)``
``seed``  integer          ``seed``
``chaos`` integer 0-100    ``cfg_scale = 7.5 + chaos / 100 * 5``
``s``     integer 0-1000   ``steps = round(20 + s / 1000 * 30)``
``no``    free text        ``negative_prompt`` (up to the next directive)
========  ===============  ==============================================

Scan Order
----------
Directive types are applied in the fixed order of the table above.  Every
occurrence of a type is removed from the text; within one type the last
occurrence wins, and across types the later type wins.  ``--s`` therefore
overrides ``--q`` when both are present, regardless of where they appear.

Usage
-----
::

    compiled = compile_prompt("a cat --ar 16:9 --seed 42")
    compiled.cleaned_prompt  # "a cat"
    compiled.options         # {"width": 1024, "height": 576, "seed": 42}
"""

from __future__ import annotations

import logging
import math
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

logger = logging.getLogger(__name__)

# Length in pixels of the long edge when an aspect ratio is requested.
LONG_EDGE = 1024

_FLAGS = re.IGNORECASE | re.DOTALL

_ASPECT_RATIO = re.compile(r"--ar\s+(\d+):(\d+)", _FLAGS)
_QUALITY = re.compile(r"--q\s+(\d+)", _FLAGS)
_SEED = re.compile(r"--seed\s+(\d+)", _FLAGS)
_CHAOS = re.compile(r"--chaos\s+(\d+)", _FLAGS)
_STYLIZE = re.compile(r"--s\s+(\d+)", _FLAGS)
# Free text runs until the next ``--name`` marker or the end of the prompt.
_EXCLUDE = re.compile(r"--no\s+(.*?)(?=\s*--[a-z]|\s*$)", _FLAGS)


@dataclass(frozen=True)
class CompiledPrompt:
    """Result of compiling a directive-annotated prompt.

    Attributes:
        cleaned_prompt: Prompt text with every recognised directive removed.
        options: Generation options derived from the directives.
    """

    cleaned_prompt: str
    options: dict[str, Any] = field(default_factory=dict)


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _clamp(value, lower, upper):
    return max(lower, min(value, upper))


def _aspect_ratio(match: re.Match) -> dict[str, Any]:
    w, h = int(match.group(1)), int(match.group(2))
    if w == 0 or h == 0:
        logger.debug(f"Ignoring degenerate aspect ratio {w}:{h}")
        return {}
    ratio = w / h
    if ratio >= 1:
        return {"width": LONG_EDGE, "height": _round_half_up(LONG_EDGE / ratio)}
    return {"width": _round_half_up(LONG_EDGE * ratio), "height": LONG_EDGE}


def _quality(match: re.Match) -> dict[str, Any]:
    return {"steps": _clamp(int(match.group(1)) * 10, 10, 50)}


def _seed(match: re.Match) -> dict[str, Any]:
    return {"seed": int(match.group(1))}


def _chaos(match: re.Match) -> dict[str, Any]:
    chaos = _clamp(int(match.group(1)), 0, 100)
    return {"cfg_scale": 7.5 + chaos / 100 * 5}


def _stylize(match: re.Match) -> dict[str, Any]:
    stylize = _clamp(int(match.group(1)), 0, 1000)
    return {"steps": _round_half_up(20 + stylize / 1000 * 30)}


def _exclude(match: re.Match) -> dict[str, Any]:
    value = match.group(1).strip()
    return {"negative_prompt": value} if value else {}


# Fixed scan order.  Later entries overwrite earlier ones on key collision.
DIRECTIVES: tuple[tuple[str, re.Pattern, Callable[[re.Match], dict[str, Any]]], ...] = (
    ("ar", _ASPECT_RATIO, _aspect_ratio),
    ("q", _QUALITY, _quality),
    ("seed", _SEED, _seed),
    ("chaos", _CHAOS, _chaos),
    ("s", _STYLIZE, _stylize),
    ("no", _EXCLUDE, _exclude),
)


def _remove_spans(text: str, spans: list[tuple[int, int]]) -> str:
    """Return *text* without the given spans, joining the gaps with a space."""
    if not spans:
        return text.strip()

    pieces: list[str] = []
    cursor = 0
    for start, end in sorted(spans):
        pieces.append(text[cursor:start])
        cursor = max(cursor, end)
    pieces.append(text[cursor:])

    return " ".join(piece.strip() for piece in pieces if piece.strip())


def compile_prompt(text: str) -> CompiledPrompt:
    """Extract inline directives from *text*.

    The input string is never modified; every directive type is matched
    against the original text and the matched spans are removed in a single
    final step.

    Args:
        text: Raw prompt, possibly containing ``--name value`` directives.

    Returns:
        A :class:`CompiledPrompt` with the cleaned text and derived options.
        When no directive is present the options are empty and the cleaned
        text is the trimmed input.
    """
    options: dict[str, Any] = {}
    spans: list[tuple[int, int]] = []

    for name, pattern, apply in DIRECTIVES:
        for match in pattern.finditer(text):
            spans.append(match.span())
            derived = apply(match)
            if derived:
                logger.debug(f"Directive --{name} -> {derived}")
            options.update(derived)

    return CompiledPrompt(cleaned_prompt=_remove_spans(text, spans), options=options)
