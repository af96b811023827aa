from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from .schemas.anthropic import (
    ContentBlock,
    ContentBlockDeltaEvent,
    ContentBlockStartEvent,
    ContentBlockStopEvent,
    InputJsonDelta,
    MessageResponse,
    StreamEvent,
    TextBlock,
    TextDelta,
    ThinkingBlock,
    ThinkingDelta,
    ToolUseBlock,
)


class ActiveBlock(str, Enum):
    NONE = "none"
    THINKING = "thinking"
    TEXT = "text"


class BlockStateError(RuntimeError):
    ...


class ContentBlockManager:
    """Open/close bookkeeping for the outgoing content blocks of one message.

    At most one thinking or text block is open at a time; tool_use blocks are
    tracked separately and stay open until ``close_all``. Every block gets an
    index that is never handed out twice. Blocks are appended to ``message`` as
    they open, and thinking/text deltas are accumulated there as well.
    """

    def __init__(self, message: MessageResponse) -> None:
        self.message = message
        self._next_index = 0
        self._used: Set[int] = set()
        self._blocks: Dict[int, ContentBlock] = {}
        self._active = ActiveBlock.NONE
        self._active_index: Optional[int] = None
        self._open_tools: Set[int] = set()
        self._tool_base: Optional[int] = None

    @property
    def active(self) -> ActiveBlock:
        return self._active

    @property
    def active_index(self) -> Optional[int]:
        return self._active_index

    @property
    def open_tool_indices(self) -> List[int]:
        return sorted(self._open_tools)

    def block(self, index: int) -> ContentBlock:
        return self._blocks[index]

    def _allocate(self, index: Optional[int] = None) -> int:
        if index is None or index in self._used:
            index = self._next_index
        self._used.add(index)
        self._next_index = max(self._next_index, index + 1)
        return index

    def _open(self, block: ContentBlock, index: Optional[int] = None) -> ContentBlockStartEvent:
        index = self._allocate(index)
        self._blocks[index] = block
        self.message.content.append(block)
        # The start event carries an empty copy; the record keeps accumulating
        return ContentBlockStartEvent(index=index, content_block=block.model_copy(deep=True))

    def _switch_to(self, kind: ActiveBlock, events: List[StreamEvent]) -> int:
        if self._active is kind and self._active_index is not None:
            return self._active_index
        events.extend(self.close_active())
        block: ContentBlock = ThinkingBlock() if kind is ActiveBlock.THINKING else TextBlock()
        start = self._open(block)
        events.append(start)
        self._active = kind
        self._active_index = start.index
        return start.index

    def thinking(self, text: str) -> List[StreamEvent]:
        if not text:
            return []
        events: List[StreamEvent] = []
        index = self._switch_to(ActiveBlock.THINKING, events)
        block = self._blocks[index]
        block.thinking += text  # type: ignore[union-attr]
        events.append(ContentBlockDeltaEvent(index=index, delta=ThinkingDelta(thinking=text)))
        return events

    def text(self, text: str) -> List[StreamEvent]:
        if not text:
            return []
        events: List[StreamEvent] = []
        index = self._switch_to(ActiveBlock.TEXT, events)
        block = self._blocks[index]
        block.text += text  # type: ignore[union-attr]
        events.append(ContentBlockDeltaEvent(index=index, delta=TextDelta(text=text)))
        return events

    def close_active(self) -> List[StreamEvent]:
        if self._active is ActiveBlock.NONE or self._active_index is None:
            return []
        index = self._active_index
        self._active = ActiveBlock.NONE
        self._active_index = None
        return [ContentBlockStopEvent(index=index)]

    def open_tool(self, upstream_index: int, tool_id: str, name: str) -> Tuple[int, List[StreamEvent]]:
        """Open a tool_use block, closing any open thinking/text block first.

        The tool base is fixed the first time a tool call shows up, so an
        upstream index maps to ``base + upstream_index`` unless that slot is
        already occupied, in which case the next free index is used.
        """
        events = self.close_active()
        if self._tool_base is None:
            self._tool_base = self._next_index
        start = self._open(ToolUseBlock(id=tool_id, name=name), self._tool_base + max(0, upstream_index))
        self._open_tools.add(start.index)
        events.append(start)
        return start.index, events

    def tool_delta(self, index: int, partial_json: str) -> List[StreamEvent]:
        if index not in self._open_tools:
            raise BlockStateError(f"tool block {index} is not open")
        return [ContentBlockDeltaEvent(index=index, delta=InputJsonDelta(partial_json=partial_json))]

    def close_all(self) -> List[StreamEvent]:
        events = self.close_active()
        for index in sorted(self._open_tools):
            events.append(ContentBlockStopEvent(index=index))
        self._open_tools.clear()
        return events
