"""Sentence-aware sliding-window chunking implementation."""

from __future__ import annotations

import re

from rag_chat.config import ChunkingConfig

_WHITESPACE = re.compile(r"\s+")
_BOUNDARIES = (". ", "! ", "? ", "\n")


class TextChunker:
    """Splits text into overlapping character windows for embedding.

    Whitespace runs are collapsed to single spaces first. Text that fits in
    `max_chunk_size` is returned as one chunk. Longer text is walked with a
    window of `max_chunk_size` characters: inside each window the last
    sentence boundary (`. `, `! `, `? ` or a newline) is used as the cut if it
    lies past the middle of the window, otherwise the window is hard-cut. The
    next window starts `overlap` characters before the previous cut, and the
    walk stops once a window reaches the end of the text, so the tail is
    always covered exactly once.
    """

    def __init__(self, config: ChunkingConfig | None = None) -> None:
        self.config = config or ChunkingConfig()

    def chunk(self, text: str) -> list[str]:
        normalized = self.normalize(text)
        chunks: list[str] = []
        for start, end in self._spans(normalized):
            piece = normalized[start:end].strip()
            if piece:
                chunks.append(piece)
        return chunks

    @staticmethod
    def normalize(text: str) -> str:
        return _WHITESPACE.sub(" ", text).strip()

    def _spans(self, text: str) -> list[tuple[int, int]]:
        """Return `(start, end)` offsets of each window over normalized text."""

        if not text:
            return []
        size = self.config.max_chunk_size
        overlap = self.config.overlap
        if len(text) <= size:
            return [(0, len(text))]

        spans: list[tuple[int, int]] = []
        start = 0
        while start < len(text):
            end = start + size
            if end < len(text):
                window = text[start:end]
                boundary = max(window.rfind(marker) for marker in _BOUNDARIES)
                if boundary > size * 0.5:
                    end = start + boundary + 1
            end = min(end, len(text))
            spans.append((start, end))
            if end >= len(text):
                break
            start = end - overlap
        return spans


def chunk_text(text: str, max_chunk_size: int = 1000, overlap: int = 200) -> list[str]:
    """Functional shortcut around `TextChunker`."""

    config = ChunkingConfig(max_chunk_size=max_chunk_size, overlap=overlap)
    return TextChunker(config).chunk(text)
