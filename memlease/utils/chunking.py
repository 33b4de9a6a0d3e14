"""
Overlapping text chunker for embedding.
"""

from typing import List

_BOUNDARIES = ('\n', '.', ' ')


def chunk_text(text: str, chunk_size: int = 1000, chunk_overlap: int = 200) -> List[str]:
    """Split text into overlapping chunks, preferring to cut at a boundary.

    A cut point is searched backwards from the chunk end down to
    chunk_size - chunk_overlap characters into the chunk; the next chunk
    starts chunk_overlap characters before the cut.

    Args:
        text: Text to split
        chunk_size: Maximum characters per chunk
        chunk_overlap: Characters shared between consecutive chunks

    Returns:
        Non-blank chunks in order
    """
    if chunk_size <= 0:
        raise ValueError('chunk_size must be positive')
    if not 0 <= chunk_overlap < chunk_size:
        raise ValueError('chunk_overlap must be in [0, chunk_size)')

    if len(text) <= chunk_size:
        return [text] if text.strip() else []

    chunks = []
    start = 0
    while start < len(text):
        end = start + chunk_size
        if end >= len(text):
            chunks.append(text[start:])
            break

        split_point = end
        search_start = max(start + chunk_size - chunk_overlap, start)
        for i in range(end - 1, search_start - 1, -1):
            if text[i] in _BOUNDARIES:
                split_point = i + 1
                break

        chunks.append(text[start:split_point])
        # Always advance, even when the overlap would reach back past start
        start = max(split_point - chunk_overlap, start + 1)

    return [chunk for chunk in chunks if chunk.strip()]
