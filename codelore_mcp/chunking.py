from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from functools import lru_cache
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from tokenizers import Tokenizer


@dataclass(frozen=True)
class Chunk:
    sequence_number: int
    content: str
    token_count: int
    metadata: Dict[str, str]


SEQUENCE_KEY = "chunk_number"
# Joins the distinct values of a repeated metadata key.
METADATA_VALUE_SEPARATOR = ", "

# Preferred cut points, strongest first.
_BOUNDARIES: Tuple[str, ...] = ("\n\n", "\n", ". ", "? ", "! ", "; ")

# Chunks shorter than this (after stripping) carry no useful signal.
MIN_CHUNK_LENGTH_TO_EMBED = 5


# Injected once at startup via configure_tokenizer_path.
# None means "not yet configured"; empty string means "no tokenizer available".
_TOKENIZER_PATH: str | None = None


def configure_tokenizer_path(path: str) -> None:
    """Inject the tokenizer path from CodeloreConfig at startup.

    Clears the cached tokenizer so the next call to _load_tokenizer
    picks up the new path.
    """
    global _TOKENIZER_PATH
    _TOKENIZER_PATH = path
    _load_tokenizer.cache_clear()


@lru_cache(maxsize=1)
def _load_tokenizer() -> Tokenizer | None:
    tokenizer_path = _TOKENIZER_PATH if _TOKENIZER_PATH is not None else ""
    if not tokenizer_path:
        logging.debug("tokenizer_path not configured; using regex token offsets.")
        return None
    if not os.path.exists(tokenizer_path):
        logging.warning(
            "Tokenizer not found at tokenizer_path=%s; using regex token offsets.",
            tokenizer_path,
        )
        return None
    try:
        return Tokenizer.from_file(tokenizer_path)
    except Exception:
        logging.warning(
            "Failed to load tokenizer from %s; using regex token offsets.",
            tokenizer_path,
            exc_info=True,
        )
        return None


def _regex_offsets(text: str) -> List[Tuple[int, int]]:
    # Words and individual punctuation marks, roughly what BPE tokenizers emit.
    return [(m.start(), m.end()) for m in re.finditer(r"\w+|[^\w\s]", text)]


def _get_offsets(text: str) -> List[Tuple[int, int]]:
    tokenizer = _load_tokenizer()
    if tokenizer is None:
        return _regex_offsets(text)
    encoding = tokenizer.encode(text, add_special_tokens=False)
    return [(int(s), int(e)) for s, e in encoding.offsets if e > s]


def token_count(text: str) -> int:
    if not text:
        return 0
    return len(_get_offsets(text))


def _find_cut(text: str, start: int, end: int, min_chars: int) -> int:
    """Return the best boundary in text[start:end], or ``end`` if there is none."""
    floor = start + max(1, min_chars)
    if floor >= end:
        return end
    for sep in _BOUNDARIES:
        pos = text.rfind(sep, floor, end)
        if pos != -1:
            return pos + len(sep)
    return end


def _clean(content: str) -> str:
    # Keep leading indentation of the first line; drop blank edges.
    return content.strip("\r\n").rstrip()


def split_text(text: str, *, max_tokens: int, min_chunk_chars: int = 0) -> List[Tuple[str, int]]:
    """Split text into (content, token_count) pieces of at most ``max_tokens`` tokens.

    Each window of ``max_tokens`` tokens is shortened back to the last
    paragraph break, line break or sentence end found after
    ``min_chunk_chars`` characters; the remainder starts the next window.
    """
    if not text or not text.strip():
        return []
    max_tokens = max(1, int(max_tokens))
    offsets = _get_offsets(text)
    if not offsets:
        return []

    pieces: List[Tuple[str, int]] = []
    total = len(offsets)
    start = 0
    while start < total:
        end = min(total, start + max_tokens)
        start_offset = offsets[start][0]
        if end == total:
            cut = len(text)
        else:
            window_end = offsets[end][0]
            cut = _find_cut(text, start_offset, window_end, min_chunk_chars)
            # A piece too short to embed runs on to the next boundary instead of being lost.
            while cut < window_end and len(text[start_offset:cut].strip()) < MIN_CHUNK_LENGTH_TO_EMBED:
                cut = _find_cut(text, start_offset, window_end, cut - start_offset)
        next_start = start
        while next_start < total and offsets[next_start][0] < cut:
            next_start += 1
        if next_start == start:
            next_start = start + 1
        # Never split a consumed token.
        cut = max(cut, offsets[next_start - 1][1])
        content = _clean(text[start_offset:cut])
        # Only the trailing fragment of a file can be too short to keep.
        if content and (end < total or len(content.strip()) >= MIN_CHUNK_LENGTH_TO_EMBED):
            pieces.append((content, next_start - start))
        start = next_start
    return pieces


def chunks_from_pieces(pieces: Sequence[Tuple[str, int]], meta: Mapping[str, str]) -> List[Chunk]:
    """Number already split pieces; each chunk gets its own copy of ``meta``."""
    chunks: List[Chunk] = []
    for seq, (content, count) in enumerate(pieces):
        metadata = dict(meta)
        metadata[SEQUENCE_KEY] = str(seq)
        chunks.append(Chunk(sequence_number=seq, content=content, token_count=count, metadata=metadata))
    return chunks


def chunk_text(
    *,
    text: str,
    meta: Mapping[str, str],
    max_tokens: int,
    min_chunk_chars: int = 0,
) -> List[Chunk]:
    """Split a file into chunks that each carry a copy of ``meta``.

    Sequence numbers are zero-based and contiguous; the same input and
    settings always produce the same chunks.
    """
    return chunks_from_pieces(split_text(text, max_tokens=max_tokens, min_chunk_chars=min_chunk_chars), meta)


def append_distinct(old: Optional[str], value: str) -> str:
    """Add ``value`` to a ``", "``-joined list unless it is already there."""
    if not old:
        return value
    if value in [v.strip() for v in old.split(METADATA_VALUE_SEPARATOR)]:
        return old
    return f"{old}{METADATA_VALUE_SEPARATOR}{value}"


def merge_metadata(base: Mapping[str, str], extra: Optional[Mapping[str, str]]) -> Dict[str, str]:
    """Merge ``extra`` into ``base``; colliding keys keep every distinct value."""
    merged = dict(base)
    for key, value in (extra or {}).items():
        merged[key] = append_distinct(merged.get(key), value)
    return merged
