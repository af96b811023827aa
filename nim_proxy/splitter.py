"""Incremental splitter for ``<think>`` spans embedded in streamed text."""
from __future__ import annotations

from enum import Enum
from typing import List, Tuple

THINK_OPEN_TAG = "<think>"
THINK_CLOSE_TAG = "</think>"


class Channel(str, Enum):
    THINKING = "thinking"
    VISIBLE = "visible"


Segment = Tuple[Channel, str]


class ThinkTagSplitter:
    """Demultiplex one text stream into thinking and visible segments.

    Text is fed in arbitrary fragments; tags may straddle fragment boundaries.
    Only a suffix that is itself the start of the tag being searched for is held
    back, so at most ``max(len(open_tag), len(close_tag)) - 1`` characters are
    retained between calls. Callers must feed fully decoded text.
    """

    def __init__(self, open_tag: str = THINK_OPEN_TAG, close_tag: str = THINK_CLOSE_TAG) -> None:
        if not open_tag or not close_tag:
            raise ValueError("think tags must be non-empty")
        self.open_tag = open_tag
        self.close_tag = close_tag
        self._buf = ""
        self._inside = False

    @property
    def inside(self) -> bool:
        return self._inside

    @property
    def pending(self) -> str:
        return self._buf

    def feed(self, text: str) -> List[Segment]:
        if not text:
            return []
        self._buf += text
        out: List[Segment] = []
        while True:
            if self._inside:
                tag, channel, after = self.close_tag, Channel.THINKING, False
            else:
                tag, channel, after = self.open_tag, Channel.VISIBLE, True
            idx = self._buf.find(tag)
            if idx != -1:
                _emit(out, channel, self._buf[:idx])
                self._buf = self._buf[idx + len(tag):]
                self._inside = after
                continue
            cut = len(self._buf) - _partial_tag_suffix(self._buf, tag)
            _emit(out, channel, self._buf[:cut])
            self._buf = self._buf[cut:]
            return out

    def flush(self) -> List[Segment]:
        """Emit whatever is held back to the active channel.

        An unterminated span is not an error: its remainder is thinking.
        """
        out: List[Segment] = []
        _emit(out, Channel.THINKING if self._inside else Channel.VISIBLE, self._buf)
        self._buf = ""
        return out


def _partial_tag_suffix(buf: str, tag: str) -> int:
    """Length of the longest suffix of ``buf`` that is a proper prefix of ``tag``."""
    for k in range(min(len(tag) - 1, len(buf)), 0, -1):
        if buf.endswith(tag[:k]):
            return k
    return 0


def _emit(out: List[Segment], channel: Channel, text: str) -> None:
    if not text:
        return
    # Coalesce with the previous segment of the same channel
    if out and out[-1][0] is channel:
        out[-1] = (channel, out[-1][1] + text)
    else:
        out.append((channel, text))


def split_think_tags(text: str, open_tag: str = THINK_OPEN_TAG, close_tag: str = THINK_CLOSE_TAG) -> Tuple[str, str]:
    """One-shot split of a complete text into (thinking, visible)."""
    splitter = ThinkTagSplitter(open_tag, close_tag)
    thinking: List[str] = []
    visible: List[str] = []
    for channel, part in splitter.feed(text) + splitter.flush():
        (thinking if channel is Channel.THINKING else visible).append(part)
    return "".join(thinking), "".join(visible)
