"""
Sentence segmentation for streamed replies.

A boundary follows a ``.``, ``!`` or ``?`` that is either the last character
received so far, or is followed by whitespace and then an uppercase letter
(any script with case, so "Él" counts) or an opening quote. Abbreviations
followed by a capitalised word ("Dr. Smith") are split; abbreviations followed
by lowercase text are not. Scripts without case never start a new sentence
after whitespace.
"""

from __future__ import annotations

import re

OPENING_QUOTES = "\"'“‘"

# Group 1 is the first character after the whitespace, checked in Python
SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])(?:\s+(?=(\S))|\Z)")


def _opens_sentence(char: str | None) -> bool:
    return char is None or char.isupper() or char in OPENING_QUOTES


def split_sentences(buffer: str) -> tuple[list[str], str]:
    """
    Split every complete sentence off the front of ``buffer``.

    Returns:
        Tuple of (sentences, remainder). Sentences are trimmed and non-empty;
        the remainder is the unterminated tail, untouched.
    """
    sentences: list[str] = []
    start = 0

    for match in SENTENCE_BOUNDARY.finditer(buffer):
        if not _opens_sentence(match.group(1)):
            continue
        sentence = buffer[start:match.start()].strip()
        if sentence:
            sentences.append(sentence)
        start = match.end()

    return sentences, buffer[start:]


class SentenceSegmenter:
    """Accumulates token deltas and hands back sentences as they complete."""

    def __init__(self) -> None:
        self.buffer = ""

    def feed(self, delta: str) -> list[str]:
        """Append a delta and return the sentences it completed."""
        self.buffer += delta
        sentences, self.buffer = split_sentences(self.buffer)
        return sentences

    def flush(self) -> str | None:
        """Return the unterminated remainder, if any, and clear the buffer."""
        remainder = self.buffer.strip()
        self.buffer = ""
        return remainder or None
