from __future__ import annotations

import io
import re
from typing import Iterable

# A sentence keeps its trailing period; a final piece may lack one.
_SENTENCE_PATTERN = re.compile(r"[^.]*\.|[^.]+")


def split_sentences(text: str) -> list[str]:
    pieces = (piece.strip() for piece in _SENTENCE_PATTERN.findall(text))
    return [piece for piece in pieces if piece]


def prepare_prompts(source: str | Iterable[str]) -> list[str]:
    """Split free text into the units sent to the translator.

    Lines are joined with single spaces until the text ends with a period,
    then the accumulated text is split into sentences. A blank line that
    does not continue a sentence becomes an empty unit, which marks a
    paragraph break. Whatever remains at the end is emitted even without a
    period.

    >>> prepare_prompts("This is\\n a sample text. And another.\\n\\nOne more")
    ['This is a sample text.', 'And another.', '', 'One more']
    """
    lines = io.StringIO(source) if isinstance(source, str) else source
    units: list[str] = []
    buffer = ""
    for line in lines:
        buffer += line.strip()
        if buffer.endswith("."):
            units.extend(split_sentences(buffer))
            buffer = ""
        elif not buffer:
            units.append("")
        else:
            buffer += " "
    if buffer:
        units.extend(split_sentences(buffer))
    return units
