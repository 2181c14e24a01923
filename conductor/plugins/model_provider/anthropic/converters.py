"""Converters between conductor types and the Anthropic Messages API.

Key differences from the internal model:
- Tools use ``input_schema`` instead of ``parameters``
- Only 2 roles: "user" and "assistant"; tool results are ``tool_result``
  blocks inside user messages
- Consecutive same-role messages must be merged
- Every ``tool_use`` block must be answered by a ``tool_result`` in the next
  user message, so unanswered calls (cancelled turns) are dropped
"""

import json
from typing import Any, Dict, List, Optional, Set

from ..types import (
    CodeBlockSegment,
    FinishReason,
    Message,
    Role,
    StreamChunk,
    TextSegment,
    TokenUsage,
    ToolCallSegment,
    ToolDefinition,
    ToolResultSegment,
)


# ==================== Tool Schema Conversion ====================

def tools_to_anthropic(tools: Optional[List[ToolDefinition]]) -> Optional[List[Dict[str, Any]]]:
    if not tools:
        return None
    return [
        {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.to_json_schema(),
        }
        for tool in tools
    ]


# ==================== Message Conversion ====================

def role_to_anthropic(role: Role) -> str:
    """USER and TOOL both map to "user"."""
    if role == Role.ASSISTANT:
        return "assistant"
    return "user"


def fence_code_block(segment: CodeBlockSegment) -> str:
    """Render a code block back into fenced markdown."""
    fence = "```"
    while fence in segment.content:
        fence += "`"
    return f"{fence}{segment.language or ''}\n{segment.content}\n{fence}"


def _result_content(payload: Any) -> str:
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, default=str)


def segment_to_content_block(segment: Any) -> Optional[Dict[str, Any]]:
    """Convert a segment to an Anthropic content block (None to skip it)."""
    if isinstance(segment, TextSegment):
        if not segment.text.strip():
            return None  # the API rejects empty text blocks
        return {"type": "text", "text": segment.text}

    if isinstance(segment, CodeBlockSegment):
        return {"type": "text", "text": fence_code_block(segment)}

    if isinstance(segment, ToolCallSegment):
        return {
            "type": "tool_use",
            "id": segment.call_id,
            "name": segment.name,
            "input": segment.arguments,
        }

    if isinstance(segment, ToolResultSegment):
        block: Dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": segment.call_id,
            "content": _result_content(segment.payload),
        }
        if not segment.success:
            block["is_error"] = True
        return block

    return None


def messages_to_anthropic(messages: List[Message]) -> List[Dict[str, Any]]:
    """Convert conversation history to Anthropic message dicts.

    System messages are condition records for the user and are not sent.
    """
    answered: Set[str] = set()
    requested: Set[str] = set()
    for msg in messages:
        for seg in msg.segments:
            if isinstance(seg, ToolResultSegment):
                answered.add(seg.call_id)
            elif isinstance(seg, ToolCallSegment):
                requested.add(seg.call_id)

    result: List[Dict[str, Any]] = []
    for msg in messages:
        if msg.role == Role.SYSTEM:
            continue

        content = []
        for seg in msg.segments:
            if isinstance(seg, ToolCallSegment) and seg.call_id not in answered:
                continue
            if isinstance(seg, ToolResultSegment) and seg.call_id not in requested:
                continue
            block = segment_to_content_block(seg)
            if block:
                content.append(block)
        if not content:
            continue

        role = role_to_anthropic(msg.role)
        if result and result[-1]["role"] == role:
            result[-1]["content"].extend(content)
        else:
            result.append({"role": role, "content": content})

    return result


# ==================== Streaming ====================

_STOP_REASONS = {
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "tool_use": FinishReason.TOOL_USE,
    "max_tokens": FinishReason.MAX_TOKENS,
    "refusal": FinishReason.SAFETY,
}


class StreamTranslator:
    """Translates Anthropic stream events into conductor StreamChunks.

    Tool-use blocks become TOOL_CALL_START / TOOL_CALL_DELTA / TOOL_CALL_END
    sequences keyed by the block's tool_use id. Usage is accumulated from
    ``message_start`` (input tokens) and ``message_delta`` (output tokens).
    """

    def __init__(self):
        self.usage = TokenUsage()
        self.finish_reason = FinishReason.UNKNOWN
        self._tool_blocks: Dict[int, str] = {}  # content block index -> call id

    def feed(self, event: Any) -> List[StreamChunk]:
        event_type = getattr(event, "type", None)

        if event_type == "message_start":
            usage = getattr(getattr(event, "message", None), "usage", None)
            if usage is not None:
                input_tokens = getattr(usage, "input_tokens", 0) or 0
                output_tokens = getattr(usage, "output_tokens", 0) or 0
                self.usage = TokenUsage(input_tokens, output_tokens, input_tokens + output_tokens)
            return []

        if event_type == "content_block_start":
            block = getattr(event, "content_block", None)
            if getattr(block, "type", None) == "tool_use":
                call_id = getattr(block, "id", "")
                self._tool_blocks[getattr(event, "index", 0)] = call_id
                return [StreamChunk.tool_call_start(call_id, getattr(block, "name", ""))]
            return []

        if event_type == "content_block_delta":
            delta = getattr(event, "delta", None)
            delta_type = getattr(delta, "type", None)
            if delta_type == "text_delta":
                text = getattr(delta, "text", "")
                return [StreamChunk.text_chunk(text)] if text else []
            if delta_type == "input_json_delta":
                call_id = self._tool_blocks.get(getattr(event, "index", 0))
                fragment = getattr(delta, "partial_json", "")
                if call_id is not None and fragment:
                    return [StreamChunk.tool_call_delta(call_id, fragment)]
            return []  # thinking and signature deltas are not surfaced

        if event_type == "content_block_stop":
            call_id = self._tool_blocks.pop(getattr(event, "index", 0), None)
            if call_id is not None:
                return [StreamChunk.tool_call_end(call_id)]
            return []

        if event_type == "message_delta":
            reason = getattr(getattr(event, "delta", None), "stop_reason", None)
            if reason:
                self.finish_reason = _STOP_REASONS.get(reason, FinishReason.UNKNOWN)
            usage = getattr(event, "usage", None)
            if usage is not None:
                output_tokens = getattr(usage, "output_tokens", 0) or 0
                self.usage = TokenUsage(
                    prompt_tokens=self.usage.prompt_tokens,
                    output_tokens=output_tokens,
                    total_tokens=self.usage.prompt_tokens + output_tokens,
                )
            return []

        return []

    def finish(self) -> StreamChunk:
        """The DONE chunk closing the stream."""
        return StreamChunk.done(self.finish_reason, self.usage)
