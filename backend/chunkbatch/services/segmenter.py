"""Split extracted document text into chunk drafts.

Heading-aware: each chapter/section heading starts a new chunk. Sections larger
than the window, and documents without headings, fall back to fixed windows
that break on paragraph boundaries where possible.
"""

import re

from chunkbatch.services.chunks import MAX_CONTENT_CHARS, MIN_CONTENT_CHARS, ChunkDraft

DEFAULT_MAX_CHARS = 12_000

# Markdown H1-H3, "CAPITOLO 2", "CHAPTER IV", "PARTE I", "3.1 Title".
_HEADING_RE = re.compile(
    r"^(?:#{1,3} .+|(?i:capitolo|chapter|cap\.|parte|part)\s+[\dIVXLCDM]+\b.*|\d+(?:\.\d+)*\.?\s+[A-Z].{2,80})$",
    re.MULTILINE,
)
# Page markers left in the text by the extraction step.
_PAGE_RE = re.compile(r"^=== PAGINA (\d+) ===$", re.MULTILINE)


def segment_text(text: str, max_chars: int = DEFAULT_MAX_CHARS) -> list[ChunkDraft]:
    """Return ordered drafts covering *text*; empty text yields no drafts."""
    if max_chars < MIN_CONTENT_CHARS or max_chars > MAX_CONTENT_CHARS:
        raise ValueError(f"max_chars must be between {MIN_CONTENT_CHARS} and {MAX_CONTENT_CHARS}")
    if not text.strip():
        return []

    drafts: list[ChunkDraft] = []
    for heading, body, pages in _sections(text):
        windows = _split_fixed_window(body, max_chars)
        for i, window in enumerate(windows):
            if heading:
                title = heading if len(windows) == 1 else f"{heading} ({i + 1}/{len(windows)})"
            else:
                title = f"Part {len(drafts) + 1}"
            drafts.append(ChunkDraft(title=title, content=window, section=heading, page_range=pages))
    return _merge_short(drafts)


def _sections(text: str) -> list[tuple[str | None, str, str | None]]:
    """(heading, body, page range) for the preamble and each heading-delimited section."""
    matches = list(_HEADING_RE.finditer(text))
    bounds: list[tuple[int, int, str | None]] = []
    if not matches:
        bounds.append((0, len(text), None))
    else:
        if matches[0].start() > 0:
            bounds.append((0, matches[0].start(), None))
        for i, match in enumerate(matches):
            end = matches[i + 1].start() if i + 1 < len(matches) else len(text)
            bounds.append((match.start(), end, match.group(0).lstrip("#").strip()))

    sections: list[tuple[str | None, str, str | None]] = []
    for start, end, heading in bounds:
        body = _PAGE_RE.sub("", text[start:end]).strip()
        if body:
            sections.append((heading, body, _page_range(text, start, end)))
    return sections


def _page_range(text: str, start: int, end: int) -> str | None:
    """Pages spanned by text[start:end], from the nearest preceding page marker."""
    first: int | None = None
    for match in _PAGE_RE.finditer(text, 0, start):
        first = int(match.group(1))
    inside = [int(m.group(1)) for m in _PAGE_RE.finditer(text, start, end)]
    if first is None and not inside:
        return None
    low = first if first is not None else inside[0]
    high = inside[-1] if inside else low
    return str(low) if low == high else f"{low}-{high}"


def _split_fixed_window(text: str, max_chars: int) -> list[str]:
    """Cut *text* into windows of at most *max_chars*, preferring paragraph then line breaks."""
    segments: list[str] = []
    pos = 0
    length = len(text)
    while pos < length:
        end = min(pos + max_chars, length)
        if end < length:
            floor = pos + max_chars // 2
            for sep in ("\n\n", "\n", ". ", " "):
                cut = text.rfind(sep, floor, end)
                if cut != -1:
                    end = cut + len(sep)
                    break
        segment = text[pos:end].strip()
        if segment:
            segments.append(segment)
        pos = end
    return segments


def _merge_short(drafts: list[ChunkDraft]) -> list[ChunkDraft]:
    """Fold drafts too short to be a chunk into their predecessor."""
    merged: list[ChunkDraft] = []
    for draft in drafts:
        if len(draft.content) < MIN_CONTENT_CHARS and merged:
            prev = merged[-1]
            content = f"{prev.content}\n\n{draft.content}"
            if len(content) <= MAX_CONTENT_CHARS:
                merged[-1] = ChunkDraft(prev.title, content, prev.section, prev.page_range)
                continue
        merged.append(draft)
    return merged
