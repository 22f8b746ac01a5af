"""
Incremental parser for tool calls embedded in streamed model output.

The model asks for tools by emitting a fenced block tagged ``tool_code``::

    ```tool_code
    {"tool_calls": [{"name": "<tool>", "arguments": { ... }}]}
    ```

:class:`StreamingToolParser` receives the raw text in arbitrarily sized chunks and recognises such
blocks as soon as their closing fence arrives.  Everything outside a block is narrated as
"thinking" planner steps for live progress display.  The final result only depends on the full
text, never on where the chunk boundaries fell.
"""

import json
import logging
import re
from typing import (
    Any,
    Dict,
    List,
    Optional,
)

from superpowers.core.schema import (
    PlannerStep,
    PlannerStepType,
    ToolCall,
    ToolParseResult,
)

logger = logging.getLogger(__name__)

TOOL_CODE_TAG = "tool_code"
"""Language tag of the fenced block the model uses to call tools."""

TOOL_FENCE = f"```{TOOL_CODE_TAG}"

_BLOCK_START = re.compile(rf"{re.escape(TOOL_FENCE)}[ \t\r]*\n")
_BLOCK_END = re.compile(r"\n```")
_FULL_BLOCK = re.compile(rf"{re.escape(TOOL_FENCE)}[ \t\r]*\n.*?(?:\n```|\Z)", re.DOTALL)


class ToolCallParseError(RuntimeError):
    """Raised when a tool block cannot be turned into {"tool_calls": [...]}."""


# ---------------------------------------------------------------------------
# Small helpers
# ---------------------------------------------------------------------------
def parse_tool_calls_json(content: str, strict: bool = False) -> List[ToolCall]:
    """
    Turn the body of a ``tool_code`` block into :class:`ToolCall` objects.

    Every call gets a freshly generated id.  A missing ``name`` becomes an empty string and missing
    ``arguments`` an empty mapping; lookup failures are the executor's business.  An entry that is
    not an object, or whose ``arguments`` are not an object, is skipped on its own.

    Parameters
    ----------
    content:
        Raw text between the fences.
    strict:
        When *True*, malformed input raises :class:`ToolCallParseError`.  Otherwise it is logged
        and yields no calls.
    """
    text = content.strip()
    if not text:
        return []

    try:
        parsed = json.loads(text)
        if not isinstance(parsed, dict) or not isinstance(parsed.get("tool_calls"), list):
            raise ToolCallParseError("expected an object with a 'tool_calls' array")

        calls: List[ToolCall] = []
        for entry in parsed["tool_calls"]:
            problem = _entry_problem(entry)
            if problem is not None:
                if strict:
                    raise ToolCallParseError(problem)
                logger.warning("Skipping tool call entry: %s", problem)
                continue
            arguments = entry.get("arguments") or {}
            calls.append(ToolCall(name=str(entry.get("name") or ""), arguments=arguments))
        return calls

    except (json.JSONDecodeError, ToolCallParseError) as exc:
        if strict:
            if isinstance(exc, ToolCallParseError):
                raise
            raise ToolCallParseError(f"invalid JSON in tool block: {exc}") from exc
        logger.warning("Failed to parse tool calls JSON: %s", exc)
        return []


def _entry_problem(entry: Any) -> Optional[str]:
    if not isinstance(entry, dict):
        return f"tool call entry must be an object, got {entry!r}"
    arguments = entry.get("arguments") or {}
    if not isinstance(arguments, dict):
        return f"arguments must be an object, got {arguments!r}"
    return None


def strip_tool_blocks(text: str) -> str:
    """Return *text* with every ``tool_code`` block removed and surrounding whitespace trimmed."""
    return _FULL_BLOCK.sub("", text).strip()


def _pending_fence_start(text: str) -> int:
    """Index where a possibly incomplete opening fence begins at the end of *text*."""
    for i in range(max(0, len(text) - len(TOOL_FENCE)), len(text)):
        if TOOL_FENCE.startswith(text[i:]):
            return i
    cut = text.rfind(TOOL_FENCE)
    if cut != -1 and not text[cut + len(TOOL_FENCE) :].strip():
        return cut  # fence complete, newline not yet seen
    return len(text)


# ---------------------------------------------------------------------------
# Parser
# ---------------------------------------------------------------------------
class StreamingToolParser:
    """State machine that extracts tool calls from a token stream.

    ``SCANNING`` looks for the opening fence, ``IN_BLOCK`` collects the JSON body until the closing
    fence.  Call :meth:`parse` for each chunk, :meth:`finalize` once the stream ends and
    :meth:`reset` before reusing the parser for another model turn.
    """

    def __init__(self) -> None:
        self._buffer = ""
        self._in_block = False
        self._block_start = 0  # buffer offset of the current block body
        self._cursor = 0  # buffer offset up to which text has been consumed
        self._completed: List[ToolCall] = []
        self._steps: List[PlannerStep] = []
        self._open_thinking: Optional[int] = None  # index into _steps

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #
    def parse(self, chunk: str) -> ToolParseResult:
        """Consume *chunk* and report the tool calls it completed."""
        self._buffer += chunk
        calls: List[ToolCall] = []
        closed_block = False

        while True:
            if not self._in_block:
                if not self._scan_for_block_start():
                    break
            block_calls = self._scan_for_block_end()
            if block_calls is None:
                break
            closed_block = True
            calls.extend(block_calls)

        return ToolParseResult(
            tool_calls=calls,
            is_complete=closed_block,
            has_tool_block=closed_block or self._in_block,
        )

    def finalize(self) -> ToolParseResult:
        """Flush whatever is left once the stream has ended."""
        if self._in_block:
            # Stream ended inside a block: treat the rest as the complete body.
            body = self._buffer[self._block_start :].rstrip().rstrip("`")
            self._in_block = False
            self._cursor = len(self._buffer)
            self._complete_block(body)
        else:
            self._append_thinking(self._buffer[self._cursor :])
            self._cursor = len(self._buffer)
        self._close_thinking()

        return ToolParseResult(
            tool_calls=list(self._completed),
            is_complete=True,
            has_tool_block=bool(self._completed),
            display_message=self.display_message,
        )

    def add_tool_result(self, tool_name: str, result: Any, error: Optional[str] = None) -> None:
        """Mark the latest open execution step for *tool_name* done and log a result step."""
        for index in range(len(self._steps) - 1, -1, -1):
            step = self._steps[index]
            if (
                step.type == "tool_execution"
                and step.tool_name == tool_name
                and not step.is_completed
            ):
                self._steps[index] = step.model_copy(
                    update={"is_completed": True, "tool_result": result}
                )
                break

        content = f"Error: {error}" if error else f"Completed {tool_name}"
        self._add_step(content, "tool_result", tool_name=tool_name, completed=True)

    def reset(self) -> None:
        """Clear all state so the parser can be reused for the next model turn."""
        self._buffer = ""
        self._in_block = False
        self._block_start = 0
        self._cursor = 0
        self._completed = []
        self._steps = []
        self._open_thinking = None

    # ------------------------------------------------------------------ #
    # Accessors
    # ------------------------------------------------------------------ #
    @property
    def buffer(self) -> str:
        """Everything received so far."""
        return self._buffer

    @property
    def in_tool_block(self) -> bool:
        return self._in_block

    @property
    def planner_steps(self) -> List[PlannerStep]:
        """Snapshot of the planner steps in the order they were observed."""
        return [step.model_copy() for step in self._steps]

    @property
    def completed_tool_calls(self) -> List[ToolCall]:
        return list(self._completed)

    @property
    def current_planner_step(self) -> Optional[PlannerStep]:
        return self._steps[-1].model_copy() if self._steps else None

    @property
    def display_message(self) -> str:
        """User-visible text: the buffer without any tool blocks."""
        return strip_tool_blocks(self._buffer)

    def has_incomplete_tool_executions(self) -> bool:
        return any(s.type == "tool_execution" and not s.is_completed for s in self._steps)

    def diagnostics(self) -> Dict[str, Any]:
        """Debug snapshot of the parser state."""
        block_length = len(self._buffer) - self._block_start if self._in_block else 0
        return {
            "in_tool_block": self._in_block,
            "buffer_length": len(self._buffer),
            "tool_content_length": block_length,
            "has_partial_content": self._in_block and block_length > 0,
            "planner_steps_count": len(self._steps),
        }

    # ------------------------------------------------------------------ #
    # State transitions
    # ------------------------------------------------------------------ #
    def _scan_for_block_start(self) -> bool:
        match = _BLOCK_START.search(self._buffer, self._cursor)
        if match is None:
            pending = self._buffer[self._cursor :]
            safe = self._cursor + _pending_fence_start(pending)
            self._append_thinking(self._buffer[self._cursor : safe])
            self._cursor = safe
            return False

        self._append_thinking(self._buffer[self._cursor : match.start()])
        self._close_thinking()
        self._in_block = True
        self._block_start = match.end()
        self._cursor = match.end()
        return True

    def _scan_for_block_end(self) -> Optional[List[ToolCall]]:
        match = _BLOCK_END.search(self._buffer, self._block_start)
        if match is None:
            return None
        body = self._buffer[self._block_start : match.start()]
        self._in_block = False
        self._cursor = match.end()
        return self._complete_block(body)

    def _complete_block(self, body: str) -> List[ToolCall]:
        calls = parse_tool_calls_json(body)
        self._completed.extend(calls)
        for call in calls:
            self._add_step(f"Executing {call.name}", "tool_execution", tool_name=call.name)
        return calls

    # ------------------------------------------------------------------ #
    # Planner steps
    # ------------------------------------------------------------------ #
    def _add_step(
        self,
        content: str,
        step_type: PlannerStepType,
        tool_name: Optional[str] = None,
        completed: bool = False,
    ) -> None:
        self._close_thinking()
        self._steps.append(
            PlannerStep(
                type=step_type, content=content, tool_name=tool_name, is_completed=completed
            )
        )
        if step_type == "thinking":
            self._open_thinking = len(self._steps) - 1

    def _append_thinking(self, text: str) -> None:
        if not text:
            return
        if self._open_thinking is not None:
            step = self._steps[self._open_thinking]
            self._steps[self._open_thinking] = step.model_copy(
                update={"content": step.content + text}
            )
        elif text.strip():
            self._add_step(text.lstrip(), "thinking")

    def _close_thinking(self) -> None:
        if self._open_thinking is None:
            return
        index, self._open_thinking = self._open_thinking, None
        step = self._steps[index]
        self._steps[index] = step.model_copy(
            update={"content": step.content.strip(), "is_completed": True}
        )
