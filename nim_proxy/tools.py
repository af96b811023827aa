from __future__ import annotations

import uuid
from dataclasses import dataclass
from typing import Dict, List, Optional

from .blocks import ContentBlockManager
from .schemas.anthropic import StreamEvent, ToolUseBlock
from .schemas.openai import ToolCallDelta
from .transform import derive_stop_reason, json_loads_safe


@dataclass
class PendingToolCall:
    block_index: int
    id: str
    name: str = ""
    arguments: str = ""


class ToolCallAggregator:
    """Reassemble fragmented OpenAI tool-call deltas into tool_use blocks.

    Fragments are keyed by the upstream positional index. Argument fragments
    are forwarded as ``input_json_delta`` the moment they arrive; the client
    parses the concatenation itself, so nothing is held back or merged.
    """

    def __init__(self, blocks: ContentBlockManager) -> None:
        self.blocks = blocks
        self._pending: Dict[int, PendingToolCall] = {}

    @property
    def has_calls(self) -> bool:
        return bool(self._pending)

    @property
    def calls(self) -> List[PendingToolCall]:
        return [self._pending[k] for k in sorted(self._pending)]

    def get(self, upstream_index: int) -> Optional[PendingToolCall]:
        return self._pending.get(upstream_index)

    def feed(self, fragment: ToolCallDelta) -> List[StreamEvent]:
        events: List[StreamEvent] = []
        fn = fragment.function
        call = self._pending.get(fragment.index)
        if call is None:
            # The name may only show up on a later fragment; start with what we have
            tool_id = fragment.id or f"call_{uuid.uuid4().hex}"
            block_index, opened = self.blocks.open_tool(fragment.index, tool_id, fn.name or "")
            call = PendingToolCall(block_index=block_index, id=tool_id, name=fn.name or "")
            self._pending[fragment.index] = call
            events.extend(opened)
        elif fn.name:
            call.name = fn.name
        if fn.arguments:
            call.arguments += fn.arguments
            events.extend(self.blocks.tool_delta(call.block_index, fn.arguments))
        return events

    def stop_reason(self, finish_reason: Optional[str]) -> str:
        return derive_stop_reason(finish_reason, self.has_calls)

    def finalize(self) -> None:
        """Copy the final names and parsed arguments onto the message record."""
        for call in self.calls:
            block = self.blocks.block(call.block_index)
            if isinstance(block, ToolUseBlock):
                block.name = call.name
                args = json_loads_safe(call.arguments or "{}")
                block.input = args if isinstance(args, dict) else {}
