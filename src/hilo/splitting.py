"""Split assistant replies into chat-sized chunks.

Paragraphs (blank-line separated) become chunks on their own when they fit
the budget. Longer paragraphs are packed line by line, keeping their line
breaks; a line over budget is packed sentence by sentence, a sentence over
budget is wrapped on word boundaries, and a single word over budget is cut.
"""

from __future__ import annotations

import math
import re
from dataclasses import dataclass

CITATION_RE = re.compile(r"【.*?】 ?")
PARAGRAPH_RE = re.compile(r"(?:[ \t]*\r?\n){2,}")
SENTENCE_BREAK_RE = re.compile(r"(?<=[.!?])\s+|(?<=[.!?][\"'])\s+")


@dataclass(frozen=True, slots=True)
class ChunkBudget:
    max_chars: int = 250
    max_lines: int = 4
    chars_per_line: int = 60

    def estimated_lines(self, text: str) -> int:
        return sum(
            max(1, math.ceil(len(line) / self.chars_per_line))
            for line in text.split("\n")
        )

    def fits(self, text: str) -> bool:
        return (
            len(text) <= self.max_chars
            and self.estimated_lines(text) <= self.max_lines
        )

    @property
    def hard_limit(self) -> int:
        """Longest single-line text that always fits."""
        return min(self.max_chars, self.max_lines * self.chars_per_line)


def clean_response(text: str) -> str:
    """Drop citation markers inserted by the assistant API."""
    return CITATION_RE.sub("", text).strip()


def split_response(text: str, budget: ChunkBudget | None = None) -> list[str]:
    budget = budget or ChunkBudget()
    chunks: list[str] = []
    for paragraph in PARAGRAPH_RE.split(text):
        paragraph = paragraph.strip()
        if not paragraph:
            continue
        if budget.fits(paragraph):
            chunks.append(paragraph)
        else:
            chunks.extend(_pack(_pieces(paragraph, budget), budget))
    return chunks


def _sentences(line: str) -> list[str]:
    return [s.strip() for s in SENTENCE_BREAK_RE.split(line) if s.strip()]


def _pieces(paragraph: str, budget: ChunkBudget) -> list[tuple[str, str]]:
    """Break a paragraph into ``(separator, text)`` pieces that each fit.

    Lines come first; only a line over budget is broken into sentences and
    then words. The separator is what joined the piece to its predecessor in
    the source, so packing never turns a line break into a space.
    """
    pieces: list[tuple[str, str]] = []
    for line in paragraph.splitlines():
        line = line.rstrip()
        if not line.strip():
            continue
        if budget.fits(line):
            pieces.append(("\n", line))
            continue
        separator = "\n"
        for sentence in _sentences(line):
            parts = [sentence] if budget.fits(sentence) else _wrap(sentence, budget)
            for part in parts:
                pieces.append((separator, part))
                separator = " "
    return pieces


def _pack(pieces: list[tuple[str, str]], budget: ChunkBudget) -> list[str]:
    chunks: list[str] = []
    current = ""
    for separator, piece in pieces:
        candidate = f"{current}{separator}{piece}" if current else piece
        if budget.fits(candidate):
            current = candidate
        else:
            chunks.append(current)
            current = piece
    if current:
        chunks.append(current)
    return chunks


def _wrap(sentence: str, budget: ChunkBudget) -> list[str]:
    limit = budget.hard_limit
    pieces: list[str] = []
    current = ""
    for word in sentence.split():
        while len(word) > limit:
            if current:
                pieces.append(current)
                current = ""
            pieces.append(word[:limit])
            word = word[limit:]
        candidate = f"{current} {word}" if current else word
        if len(candidate) <= limit:
            current = candidate
        else:
            pieces.append(current)
            current = word
    if current:
        pieces.append(current)
    return pieces
