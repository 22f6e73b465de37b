"""
Streaming filter for in-band ``<think>...</think>`` reasoning spans.

Models such as qwen3 emit their private reasoning inline, wrapped in ``<think>`` tags.
``TokenStreamFilter`` scans fragments as they arrive and either drops the reasoning or keeps
it behind a single marker glyph. Fragment boundaries are arbitrary, so a tag may arrive split
over two fragments (``"<thi"`` + ``"nk>"``). The filter holds back the longest fragment suffix
that could still grow into the tag it is looking for and retries once the next fragment
arrives. Whatever is still held when the stream ends is released by ``flush()``.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterable, AsyncIterator

logger = logging.getLogger("ember_chat.think_filter")

OPEN_TAG = "<think>"
CLOSE_TAG = "</think>"
DEFAULT_MARKER = "💭"


class ThinkState(Enum):
    NORMAL = "normal"
    INSIDE_THINK = "inside_think"


def _partial_tag_length(text: str, tag: str) -> int:
    """Length of the longest suffix of *text* that is a proper prefix of *tag*."""
    for size in range(min(len(text), len(tag) - 1), 0, -1):
        if text.endswith(tag[:size]):
            return size
    return 0


class TokenStreamFilter:
    """Two-state scanner that hides or marks think spans in a token stream.

    Args:
        reveal_thinking: Keep the reasoning text, preceded by *marker*. When False the
            reasoning is dropped entirely.
        marker: Glyph emitted once on entering a think span (only when revealing).
    """

    def __init__(self, reveal_thinking: bool = False, marker: str = DEFAULT_MARKER) -> None:
        self.reveal_thinking = reveal_thinking
        self.marker = marker
        self.state = ThinkState.NORMAL
        self._held = ""

    def reset(self) -> None:
        """Back to ``NORMAL`` with nothing held. Called at the start of every request."""
        self.state = ThinkState.NORMAL
        self._held = ""

    @property
    def pending(self) -> str:
        """Text held back because it may be the start of a tag."""
        return self._held

    def feed(self, fragment: str) -> str:
        """Process one raw fragment and return the text to display (possibly empty)."""
        text = self._held + fragment
        self._held = ""
        out: list[str] = []
        pos = 0

        while pos < len(text):
            if self.state is ThinkState.NORMAL:
                idx = text.find(OPEN_TAG, pos)
                if idx == -1:
                    rest = text[pos:]
                    cut = len(rest) - _partial_tag_length(rest, OPEN_TAG)
                    out.append(rest[:cut])
                    self._held = rest[cut:]
                    break
                out.append(text[pos:idx])
                self.state = ThinkState.INSIDE_THINK
                if self.reveal_thinking:
                    out.append(self.marker)
                pos = idx + len(OPEN_TAG)
            else:
                idx = text.find(CLOSE_TAG, pos)
                if idx == -1:
                    rest = text[pos:]
                    cut = len(rest) - _partial_tag_length(rest, CLOSE_TAG)
                    if self.reveal_thinking:
                        out.append(rest[:cut])
                    self._held = rest[cut:]
                    break
                if self.reveal_thinking:
                    out.append(text[pos:idx])
                self.state = ThinkState.NORMAL
                pos = idx + len(CLOSE_TAG)

        return "".join(out)

    def flush(self) -> str:
        """Release held-back text at end of stream; it never became a tag."""
        held = self._held
        self._held = ""
        if self.state is ThinkState.INSIDE_THINK:
            logger.debug("[EmberChat Filter] Stream ended inside an unterminated think span.")
            return held if self.reveal_thinking else ""
        return held

    def __repr__(self) -> str:
        return (
            f"TokenStreamFilter(reveal_thinking={self.reveal_thinking!r}, "
            f"state={self.state.value!r})"
        )


async def filter_stream(
    fragments: AsyncIterable[str], token_filter: TokenStreamFilter
) -> AsyncIterator[str]:
    """Pipe an async fragment stream through *token_filter*, yielding non-empty display text."""
    async for fragment in fragments:
        shown = token_filter.feed(fragment)
        if shown:
            yield shown
    tail = token_filter.flush()
    if tail:
        yield tail
