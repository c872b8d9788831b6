"""Recursive text splitter.

Splits text into chunks that fit within ``max_chars``, breaking on natural
boundaries (paragraphs, lines, sentences, words) and falling back to a hard
character split as a last resort.
"""
from sanitizer.core.models import Chunk

SEPARATORS = ("\n\n", "\n", ". ", " ")


def split_text(text: str, max_chars: int) -> list[str]:
    """Split ``text`` into pieces no longer than ``max_chars``."""
    return [chunk.text for chunk in split_chunks(text, max_chars)]


def split_chunks(text: str, max_chars: int) -> list[Chunk]:
    """
    Split ``text`` into ordered, immutable chunks.

    Each chunk records the separator that followed it in the source, so
    ``join_chunks(split_chunks(text, n)) == text`` for any ``n >= 1``.

    Raises:
        ValueError: If ``max_chars`` is smaller than 1
    """
    if max_chars < 1:
        raise ValueError(f"max_chars must be >= 1, got {max_chars}")
    if len(text) <= max_chars:
        return [Chunk(index=0, text=text)]

    pieces = _split_recursive(text, max_chars, 0)
    return [
        Chunk(index=i, text=piece, separator=glue)
        for i, (piece, glue) in enumerate(pieces)
    ]


def split_in_half(text: str) -> list[Chunk]:
    """
    Cut ``text`` into two pieces near its midpoint.

    The cut lands on the highest-priority separator closest to the middle,
    or at the exact midpoint when no separator leaves both sides non-empty.
    The separator is kept on the left chunk, so ``join_chunks`` rebuilds
    the source.

    Returns:
        Two chunks, or one when ``text`` is shorter than 2 characters
    """
    if len(text) < 2:
        return [Chunk(index=0, text=text)]

    mid = len(text) // 2
    for sep in SEPARATORS:
        candidates = [
            pos for pos in (
                text.rfind(sep, 1, mid + len(sep)),
                text.find(sep, mid + 1),
            )
            if pos > 0 and pos + len(sep) < len(text)
        ]
        if candidates:
            cut = min(candidates, key=lambda pos: abs(pos - mid))
            return [
                Chunk(index=0, text=text[:cut], separator=sep),
                Chunk(index=1, text=text[cut + len(sep):]),
            ]

    return [Chunk(index=0, text=text[:mid]), Chunk(index=1, text=text[mid:])]


def join_chunks(chunks: list[Chunk]) -> str:
    """Rebuild the source text from chunks and their separators."""
    return "".join(chunk.text + chunk.separator for chunk in chunks)


def _split_recursive(text: str, max_chars: int, sep_idx: int) -> list[tuple[str, str]]:
    if len(text) <= max_chars:
        return [(text, "")]

    # Hard character split as last resort
    if sep_idx >= len(SEPARATORS):
        return [(text[i:i + max_chars], "") for i in range(0, len(text), max_chars)]

    sep = SEPARATORS[sep_idx]
    parts = text.split(sep)

    # Splitting didn't help, try the next separator
    if len(parts) <= 1:
        return _split_recursive(text, max_chars, sep_idx + 1)

    # Greedily merge adjacent parts, glued by the same separator
    merged: list[str] = []
    current = parts[0]
    for part in parts[1:]:
        candidate = current + sep + part
        if len(candidate) <= max_chars:
            current = candidate
        else:
            merged.append(current)
            current = part
    merged.append(current)

    result: list[tuple[str, str]] = []
    last = len(merged) - 1
    for i, piece in enumerate(merged):
        glue = sep if i < last else ""
        if len(piece) > max_chars:
            # Never restart the cascade from the top
            sub = _split_recursive(piece, max_chars, sep_idx + 1)
            tail_text, _ = sub[-1]
            sub[-1] = (tail_text, glue)
            result.extend(sub)
        else:
            result.append((piece, glue))
    return result
