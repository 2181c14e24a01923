"""Response parser: raw provider chunks to structured segments.

The parser consumes a ``StreamChunk`` iterator and lazily yields
``TextSegment``, ``CodeBlockSegment`` and ``ToolCallSegment`` objects while the
provider is still streaming.

States:
    TEXT       prose; text is split into lines, a line spanning chunks is buffered
    FENCE      inside a ``` or ~~~ fence; closed by a fence line of the same
               character that is at least as long as the opener
    TOOL_CALL  between TOOL_CALL_START and TOOL_CALL_END; argument JSON is
               accumulated from the deltas

Usage:
    parser = ResponseParser(on_text=lambda t: print(t, end=""))
    segments = list(parser.parse(adapter.stream(model, history, tools)))
    if parser.partial:
        ...  # stream was cancelled
"""

import json
import re
import uuid
from enum import Enum
from typing import Any, Callable, Iterable, Iterator, List, Optional

from .errors import MalformedCompletionError
from .plugins.model_provider.types import (
    ChunkType,
    CodeBlockSegment,
    FinishReason,
    Segment,
    StreamChunk,
    TextSegment,
    TokenUsage,
    ToolCallSegment,
)

# Up to 3 spaces of indentation, then a run of 3+ backticks or tildes
_FENCE_OPEN = re.compile(r"^ {0,3}(`{3,}|~{3,})(.*)$")
_FENCE_CLOSE = re.compile(r"^ {0,3}(`{3,}|~{3,})[ \t]*$")


class ParserState(str, Enum):
    TEXT = "text"
    FENCE = "fence"
    TOOL_CALL = "tool_call"


class ResponseParser:
    """Single-pass, lazy parser for one provider response.

    Attributes:
        partial: True once a PARTIAL marker ended the stream.
        usage: Token usage reported by the stream.
        finish_reason: Finish reason from the DONE chunk, if any.
    """

    def __init__(self, on_text: Optional[Callable[[str], None]] = None):
        self._on_text = on_text
        self._reset()

    def _reset(self) -> None:
        self.state = ParserState.TEXT
        self.partial = False
        self.usage = TokenUsage()
        self.finish_reason: Optional[FinishReason] = None

        self._line_buf = ""
        self._prose: List[str] = []

        self._fence_char = ""
        self._fence_len = 0
        self._fence_lang: Optional[str] = None
        self._fence_lines: List[str] = []

        self._call_id: Optional[str] = None
        self._call_name = ""
        self._call_json: List[str] = []

    # ==================== Public ====================

    def parse(self, chunks: Iterable[StreamChunk]) -> Iterator[Segment]:
        """Yield segments as the chunks arrive.

        Raises:
            MalformedCompletionError: Unterminated fence or tool call at end of
                stream, tool-call arguments that are not a JSON object, or
                chunks that are out of order. Prose parsed before the failure
                is yielded first.
        """
        self._reset()

        for chunk in chunks:
            kind = chunk.type

            if kind == ChunkType.TEXT:
                if self.state == ParserState.TOOL_CALL:
                    yield from self._fail("text received inside an open tool call")
                if self._on_text and chunk.text:
                    self._on_text(chunk.text)
                yield from self._feed_text(chunk.text)

            elif kind == ChunkType.TOOL_CALL:
                error = self._call_start_error(chunk)
                if error:
                    yield from self._fail(error)
                yield from self._flush_prose(include_line=True)
                yield self._make_call(chunk.call_id, chunk.name, chunk.arguments)

            elif kind == ChunkType.TOOL_CALL_START:
                error = self._call_start_error(chunk)
                if error:
                    yield from self._fail(error)
                yield from self._flush_prose(include_line=True)
                self.state = ParserState.TOOL_CALL
                self._call_id = chunk.call_id or self._new_call_id()
                self._call_name = chunk.name or ""
                self._call_json = []

            elif kind == ChunkType.TOOL_CALL_DELTA:
                if self.state != ParserState.TOOL_CALL or not self._same_call(chunk.call_id):
                    yield from self._fail("tool-call delta without a matching open call")
                self._call_json.append(chunk.text)

            elif kind == ChunkType.TOOL_CALL_END:
                if self.state != ParserState.TOOL_CALL or not self._same_call(chunk.call_id):
                    yield from self._fail("tool-call end without a matching open call")
                raw = "".join(self._call_json).strip()
                try:
                    arguments = json.loads(raw) if raw else {}
                except json.JSONDecodeError as exc:
                    yield from self._fail(f"tool-call arguments for '{self._call_name}' are not valid JSON: {exc}")
                self.state = ParserState.TEXT
                yield self._make_call(self._call_id, self._call_name, arguments)

            elif kind == ChunkType.USAGE:
                if chunk.usage is not None:
                    self.usage = chunk.usage

            elif kind == ChunkType.DONE:
                self.finish_reason = chunk.finish_reason
                if chunk.usage is not None:
                    self.usage = chunk.usage
                break

            elif kind == ChunkType.PARTIAL:
                self.partial = True
                self.finish_reason = FinishReason.CANCELLED
                yield from self._finish_partial()
                return

        yield from self._finish()

    # ==================== Text ====================

    def _feed_text(self, text: str) -> Iterator[Segment]:
        pieces = (self._line_buf + text).split("\n")
        self._line_buf = pieces.pop()
        for piece in pieces:
            yield from self._process_line(piece + "\n")

    def _process_line(self, line: str) -> Iterator[Segment]:
        bare = line.rstrip("\r\n")

        if self.state == ParserState.FENCE:
            match = _FENCE_CLOSE.match(bare)
            if match:
                run = match.group(1)
                if run[0] == self._fence_char and len(run) >= self._fence_len:
                    yield self._close_fence()
                    return
            self._fence_lines.append(line)
            return

        match = _FENCE_OPEN.match(bare)
        if match:
            run, info = match.group(1), match.group(2).strip()
            # A backtick fence's info string may not contain backticks
            if not (run[0] == "`" and "`" in info):
                yield from self._flush_prose()
                self.state = ParserState.FENCE
                self._fence_char = run[0]
                self._fence_len = len(run)
                self._fence_lang = info.split()[0] if info else None
                self._fence_lines = []
                return

        self._prose.append(line)

    def _close_fence(self) -> CodeBlockSegment:
        content = "".join(self._fence_lines)
        if content.endswith("\r\n"):
            content = content[:-2]
        elif content.endswith("\n"):
            content = content[:-1]
        segment = CodeBlockSegment(language=self._fence_lang, content=content)
        self.state = ParserState.TEXT
        self._fence_lines = []
        return segment

    def _flush_prose(self, include_line: bool = False) -> Iterator[Segment]:
        if include_line and self._line_buf:
            self._prose.append(self._line_buf)
            self._line_buf = ""
        text = "".join(self._prose)
        self._prose = []
        if text.strip():
            yield TextSegment(text)

    # ==================== Tool calls ====================

    @staticmethod
    def _new_call_id() -> str:
        return f"call_{uuid.uuid4().hex[:12]}"

    def _same_call(self, call_id: Optional[str]) -> bool:
        return call_id is None or call_id == self._call_id

    def _call_start_error(self, chunk: StreamChunk) -> Optional[str]:
        if self.state == ParserState.FENCE:
            return f"tool call '{chunk.name}' inside an open code fence"
        if self.state == ParserState.TOOL_CALL:
            return f"tool call '{chunk.name}' started before '{self._call_name}' ended"
        return None

    def _make_call(self, call_id: Optional[str], name: Optional[str], arguments: Any) -> ToolCallSegment:
        if arguments is None:
            arguments = {}
        if not isinstance(arguments, dict):
            raise MalformedCompletionError(
                f"tool-call arguments for '{name}' must be a JSON object, got {type(arguments).__name__}"
            )
        if not name:
            raise MalformedCompletionError("tool call without a name")
        return ToolCallSegment(name=name, arguments=arguments, call_id=call_id or self._new_call_id())

    # ==================== End of stream ====================

    def _finish(self) -> Iterator[Segment]:
        if self._line_buf:
            line, self._line_buf = self._line_buf, ""
            yield from self._process_line(line)

        if self.state == ParserState.FENCE:
            yield from self._fail("unterminated code fence at end of stream")
        if self.state == ParserState.TOOL_CALL:
            yield from self._fail(f"unterminated tool call '{self._call_name}' at end of stream")

        yield from self._flush_prose()

    def _finish_partial(self) -> Iterator[Segment]:
        if self.state == ParserState.FENCE:
            self._fence_lines.append(self._line_buf)
            self._line_buf = ""
            yield self._close_fence()
        elif self.state == ParserState.TOOL_CALL:
            # Incomplete arguments cannot be executed
            self.state = ParserState.TEXT
            self._call_json = []
        yield from self._flush_prose(include_line=True)

    def _fail(self, reason: str) -> Iterator[Segment]:
        """Yield prose parsed so far, then raise MalformedCompletionError."""
        if self.state != ParserState.FENCE:
            yield from self._flush_prose(include_line=True)
        raise MalformedCompletionError(reason)
