"""
Knowledge feature: split parsed documents into overlapping chunks.

Chunks are exact substrings of the input, so dropping the first
`chunk_overlap` characters of every chunk after the first and joining them
rebuilds the original text. LangChain's text splitters strip and merge
pieces, so they cannot keep that guarantee.
"""

from app.features.knowledge.schemas import ChunkingOptions

# Break points tried in order; (separator, offset of the break inside the separator)
_MARKDOWN_BREAKS = (("\n#", 1), ("\n\n", 2))
_TEXT_BREAKS = (("\n\n", 2),)


def _find_break(text: str, floor: int, limit: int, content_type: str) -> int | None:
    """Last structural break in [floor, limit], or None."""
    breaks = _MARKDOWN_BREAKS if content_type == "markdown" else _TEXT_BREAKS
    for separator, offset in breaks:
        search_from = max(floor - offset, 0)
        search_to = min(limit - offset + len(separator), len(text))
        idx = text.rfind(separator, search_from, search_to)
        if idx != -1 and floor <= idx + offset <= limit:
            return idx + offset
    return None


def chunk_spans(text: str, options: ChunkingOptions | None = None) -> list[tuple[int, int]]:
    """Compute `(start, end)` offsets of every chunk of `text`."""
    options = options or ChunkingOptions()
    size = options.chunk_size
    overlap = options.chunk_overlap
    min_size = options.min_chunk_size

    n = len(text)
    if n == 0:
        return []
    if n < min_size:
        return [(0, n)]

    spans: list[tuple[int, int]] = []
    start = 0
    while True:
        limit = start + size
        if limit >= n:
            spans.append((start, n))
            break

        # A break closer to `start` would leave a chunk shorter than the minimum
        # or stop the window from moving forward past the overlap.
        floor = start + max(min_size, overlap + 1)
        end = _find_break(text, floor, limit, options.content_type) or limit

        # Pull the split back so the final chunk is not a short fragment
        if n - (end - overlap) < min_size:
            end = n - min_size + overlap

        spans.append((start, end))
        start = end - overlap

    return spans


def chunk_text(text: str, options: ChunkingOptions | None = None) -> list[str]:
    """Split `text` into ordered, overlapping chunks.

    Structural boundaries win over the hard `chunk_size` ceiling: headings then
    blank lines for markdown, blank lines for plain text. The same text and
    options always produce the same chunks.

    Args:
        text: Parsed document content.
        options: Chunk sizing and content type. Defaults to ChunkingOptions().

    Returns:
        Chunks in document order. Empty input gives an empty list; input
        shorter than `min_chunk_size` gives a single chunk.
    """
    return [text[start:end] for start, end in chunk_spans(text, options)]
