"""Chunk stage — section-aware, sentence-packed splitting of page text."""

from __future__ import annotations

import re
import uuid
from dataclasses import dataclass

from knowio.db.models import ChunkMetadata, DocumentChunk
from knowio.errors import ChunkingError

DEFAULT_SECTION = "Main Content"

_MARKDOWN_HEADING_RE = re.compile(r"^(#{1,6})\s+(.+)$")
_ALL_CAPS_HEADING_RE = re.compile(r"^([A-Z][A-Z\s]{2,}):?\s*$")
_UNDERLINE_RE = re.compile(r"^[=-]{3,}$")
_SENTENCE_END_RE = re.compile(r"(?<=[.!?])\s+")

# Namespace for deterministic chunk ids.
_CHUNK_NAMESPACE = uuid.UUID("6f9b2d1e-3c47-5a8e-9b0d-2e4f6a8c1b3d")


@dataclass(frozen=True)
class PageMetadata:
    source_url: str
    title: str


@dataclass
class Section:
    title: str
    level: int
    content: str


def count_tokens(text: str) -> int:
    """Approximate token count: 4 characters ≈ 1 token."""
    return max(1, len(text) // 4)


def split_sentences(text: str) -> list[str]:
    """Split on sentence-ending punctuation followed by whitespace."""
    return [s.strip() for s in _SENTENCE_END_RE.split(text) if s.strip()]


def chunk_id(source_url: str, chunk_index: int, content: str) -> str:
    """Stable id: same page, position, and text always give the same id."""
    return str(uuid.uuid5(_CHUNK_NAMESPACE, f"{source_url}\x00{chunk_index}\x00{content}"))


class Chunker:
    """Split page text into chunks of at most ``max_tokens`` tokens.

    Strategy:
    - Split the text into sections on markdown headings (H1–H6), underlined
      headings, and ALL-CAPS heading lines. Text before the first heading
      belongs to a "Main Content" section.
    - A section that fits ``max_tokens`` becomes one chunk.
    - Larger sections are packed sentence by sentence; a single sentence larger
      than the limit is split on word boundaries.
    - Each chunk after the first is prefixed with up to two trailing sentences
      of its predecessor (at most ``overlap_tokens``) when the result still fits.
    - ``chunk_index`` runs from 0 across the whole page.
    """

    def __init__(self, max_tokens: int = 1000, overlap_tokens: int = 100) -> None:
        if max_tokens < 1:
            raise ValueError("max_tokens must be >= 1")
        if overlap_tokens < 0:
            raise ValueError("overlap_tokens must be >= 0")
        self.max_tokens = max_tokens
        self.overlap_tokens = overlap_tokens

    def chunk(self, content: str, page: PageMetadata) -> list[DocumentChunk]:
        """Split *content* into ordered chunks for *page*.

        Raises:
            ChunkingError: If the content is empty after normalisation.
        """
        text = _normalise(content)
        if not text.strip():
            raise ChunkingError(f"No text to chunk for {page.source_url}")

        pieces: list[tuple[str, str]] = []
        for section in self.extract_sections(text):
            for body in self._split_section(section):
                pieces.append((section.title, body))

        pieces = self._add_overlap(pieces)
        return [
            DocumentChunk(
                id=chunk_id(page.source_url, index, body),
                content=body,
                metadata=ChunkMetadata(
                    source_url=page.source_url,
                    title=page.title,
                    section=title,
                    chunk_index=index,
                ),
                token_count=count_tokens(body),
            )
            for index, (title, body) in enumerate(pieces)
        ]

    # ------------------------------------------------------------------
    # Sections
    # ------------------------------------------------------------------

    @staticmethod
    def extract_sections(text: str) -> list[Section]:
        """Group lines under the nearest preceding heading."""
        lines = text.split("\n")
        sections: list[Section] = []
        current = Section(title=DEFAULT_SECTION, level=0, content="")

        i = 0
        while i < len(lines):
            line = lines[i].strip()
            heading = _heading(line, lines[i + 1].strip() if i + 1 < len(lines) else "")
            if heading is not None:
                if current.content.strip():
                    sections.append(current)
                title, level, underlined = heading
                current = Section(title=title, level=level, content="")
                i += 2 if underlined else 1
                continue

            if line:
                current.content += ("\n" if current.content else "") + line
            else:
                current.content += "\n"
            i += 1

        if current.content.strip():
            sections.append(current)
        if not sections:
            sections.append(Section(title=DEFAULT_SECTION, level=0, content=text))
        return sections

    def _split_section(self, section: Section) -> list[str]:
        body = section.content.strip()
        if not body:
            return []
        if count_tokens(body) <= self.max_tokens:
            return [body]
        return self.pack_sentences(body)

    # ------------------------------------------------------------------
    # Packing
    # ------------------------------------------------------------------

    def pack_sentences(self, text: str) -> list[str]:
        """Greedily join sentences into pieces of at most ``max_tokens``."""
        chunks: list[str] = []
        current = ""
        for sentence in split_sentences(text):
            candidate = f"{current} {sentence}" if current else sentence
            if count_tokens(candidate) <= self.max_tokens:
                current = candidate
                continue

            if current:
                chunks.append(current)
            if count_tokens(sentence) > self.max_tokens:
                chunks.extend(self._split_words(sentence))
                current = ""
            else:
                current = sentence

        if current:
            chunks.append(current)
        return chunks

    def _split_words(self, sentence: str) -> list[str]:
        pieces: list[str] = []
        current = ""
        for word in sentence.split():
            candidate = f"{current} {word}" if current else word
            if count_tokens(candidate) <= self.max_tokens:
                current = candidate
            else:
                if current:
                    pieces.append(current)
                current = word
        if current:
            pieces.append(current)
        return pieces

    def _add_overlap(self, pieces: list[tuple[str, str]]) -> list[tuple[str, str]]:
        if len(pieces) <= 1 or self.overlap_tokens <= 0:
            return pieces

        result = [pieces[0]]
        for (_, previous), (title, body) in zip(pieces, pieces[1:]):
            overlap = self._overlap_text(split_sentences(previous)[-2:])
            enhanced = f"{overlap}\n\n{body}" if overlap else body
            if count_tokens(enhanced) > self.max_tokens:
                enhanced = body
            result.append((title, enhanced))
        return result

    def _overlap_text(self, sentences: list[str]) -> str:
        taken: list[str] = []
        used = 0
        for sentence in sentences:
            tokens = count_tokens(sentence)
            if used + tokens > self.overlap_tokens:
                break
            taken.append(sentence)
            used += tokens
        return " ".join(taken)


def _heading(line: str, next_line: str) -> tuple[str, int, bool] | None:
    """Return (title, level, underlined) if *line* is a heading."""
    if not line:
        return None
    match = _MARKDOWN_HEADING_RE.match(line)
    if match:
        return match.group(2).strip(), len(match.group(1)), False
    match = _ALL_CAPS_HEADING_RE.match(line)
    if match:
        return match.group(1).strip(), 1, False
    if len(line) < 100 and not _UNDERLINE_RE.match(line) and _UNDERLINE_RE.match(next_line):
        level = 1 if next_line.startswith("=") else 2
        return line, level, True
    return None


def _normalise(content: str) -> str:
    text = content.replace("\r\n", "\n").replace("\r", "\n").replace("\x00", "")
    text = "\n".join(line.rstrip() for line in text.split("\n"))
    return re.sub(r"\n{3,}", "\n\n", text)
