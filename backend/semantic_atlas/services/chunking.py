"""Chunking policy for ingested documents.

Classes:
    ChunkDraft: A raw text span of a source document, before it is embedded.

Functions:
    tokenize(text): Lowercased word tokens used by the hashing embedder.
    make_chunk_drafts(...): Carve a document into chunk drafts with the configured strategy.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Iterator

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+(?=[A-Z0-9\"])")
_PARAGRAPH_BOUNDARY = re.compile(r"\n\s*\n")
_WORD_PATTERN = re.compile(r"[\w']+")

CHUNK_STRATEGIES = ("tokens", "auto", "paragraphs", "sentences")
_MIN_PARAGRAPHS = 5
_SENTENCE_WINDOW = 5
_LONG_DOCUMENT_SENTENCE_WINDOW = 8
_LONG_DOCUMENT_SENTENCES = 50


@dataclass(slots=True)
class ChunkDraft:
    source: str
    chunk_index: int
    text: str
    start: int
    end: int


def tokenize(text: str) -> list[str]:
    tokens: list[str] = []
    for match in _WORD_PATTERN.finditer(text.lower()):
        token = match.group().strip("'")
        if len(token) > 1:
            tokens.append(token)
    return tokens


def make_chunk_drafts(
    source: str,
    text: str,
    *,
    strategy: str = "tokens",
    tokens_per_chunk: int = 1000,
    overlap: int = 300,
) -> list[ChunkDraft]:
    if strategy not in CHUNK_STRATEGIES:
        raise ValueError(f"Unknown chunk strategy '{strategy}'")
    if not text.strip():
        return []

    if strategy == "tokens":
        spans = list(_token_window_spans(text, tokens_per_chunk, overlap))
    elif strategy == "paragraphs":
        spans = list(_split_spans(_PARAGRAPH_BOUNDARY, text, 0, len(text)))
    elif strategy == "sentences":
        spans = _sentence_window_spans(text)
    else:
        paragraphs = list(_split_spans(_PARAGRAPH_BOUNDARY, text, 0, len(text)))
        spans = paragraphs if len(paragraphs) >= _MIN_PARAGRAPHS else _sentence_window_spans(text)

    return [
        ChunkDraft(source=source, chunk_index=index, text=text[start:end], start=start, end=end)
        for index, (start, end) in enumerate(spans)
    ]


def _token_window_spans(text: str, tokens_per_chunk: int, overlap: int) -> Iterator[tuple[int, int]]:
    matches = list(_WORD_PATTERN.finditer(text))
    if not matches:
        yield 0, len(text)
        return

    step = tokens_per_chunk - overlap if tokens_per_chunk > overlap else 1
    for first in range(0, len(matches), step):
        last = min(first + tokens_per_chunk, len(matches)) - 1
        yield matches[first].start(), matches[last].end()
        if last == len(matches) - 1:
            break


def _split_spans(pattern: re.Pattern[str], text: str, start: int, end: int) -> Iterator[tuple[int, int]]:
    cursor = start
    for boundary in pattern.finditer(text, start, end):
        yield from _trimmed(text, cursor, boundary.start())
        cursor = boundary.end()
    yield from _trimmed(text, cursor, end)


def _trimmed(text: str, start: int, end: int) -> Iterator[tuple[int, int]]:
    while start < end and text[start].isspace():
        start += 1
    while end > start and text[end - 1].isspace():
        end -= 1
    if end > start:
        yield start, end


def _sentence_window_spans(text: str) -> list[tuple[int, int]]:
    sentences = list(_split_spans(_SENTENCE_BOUNDARY, text, 0, len(text)))
    window = _LONG_DOCUMENT_SENTENCE_WINDOW if len(sentences) > _LONG_DOCUMENT_SENTENCES else _SENTENCE_WINDOW
    return [
        (sentences[first][0], sentences[min(first + window, len(sentences)) - 1][1])
        for first in range(0, len(sentences), window)
    ]
