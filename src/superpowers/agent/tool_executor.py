"""Dispatches tool calls through a :class:`~superpowers.tools.ToolRegistry` and wraps errors."""

import logging
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    List,
    Optional,
    Sequence,
    Tuple,
    Type,
)

from pydantic import (
    BaseModel,
    ConfigDict,
    ValidationError,
    create_model,
)

from superpowers.core.schema import (
    Tool,
    ToolCall,
    ToolResult,
)
from superpowers.tools import ToolRegistry

logger = logging.getLogger(__name__)

_JSON_TYPES: Dict[str, Any] = {
    "string": str,
    "number": float,
    "integer": int,
    "boolean": bool,
    "array": list,
    "object": dict,
}

_ARGUMENT_MODELS: Dict[Tuple[str, str], Type[BaseModel]] = {}


class ToolExecutionError(RuntimeError):
    """Raised when a requested tool cannot run or fails."""


def _arguments_model(tool: Tool) -> Type[BaseModel]:
    """Build (and cache) a pydantic model mirroring the tool's declared parameters."""
    key = (tool.name, tool.parameters.model_dump_json())
    model = _ARGUMENT_MODELS.get(key)
    if model is not None:
        return model

    required = set(tool.parameters.required)
    fields: Dict[str, Any] = {}
    for name, spec in tool.parameters.properties.items():
        if name.startswith("_"):
            continue
        py_type = _JSON_TYPES.get(spec.type, Any)
        if name in required:
            fields[name] = (py_type, ...)
        else:
            fields[name] = (Optional[py_type], None)

    model = create_model(  # type: ignore[call-overload]
        f"{tool.name or 'tool'}_arguments",
        __config__=ConfigDict(extra="allow", coerce_numbers_to_str=True),
        **fields,
    )
    _ARGUMENT_MODELS[key] = model
    return model


def validate_arguments(tool: Tool, arguments: Dict[str, Any]) -> None:
    """
    Check *arguments* against the declaration of *tool*.

    Raises
    ------
    ToolExecutionError
        If a required parameter is missing or a value has the wrong JSON type.
    """
    try:
        _arguments_model(tool).model_validate(arguments)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'arguments'}: {err['msg']}"
            for err in exc.errors()
        )
        raise ToolExecutionError(f"Invalid arguments for tool '{tool.name}': {problems}") from exc


async def execute_tool(registry: ToolRegistry, call: ToolCall) -> ToolResult:
    """
    Look up ``call.name`` in *registry* and invoke its handler with ``call.arguments``.

    Parameters
    ----------
    registry:
        Where handlers and declarations live.
    call:
        The call recognised in the model output.

    Returns
    -------
    ToolResult
        Always a result: unknown tools, invalid arguments and handler exceptions are reported in
        :attr:`ToolResult.error` so the model can see them on its next turn.
    """
    handler = registry.get_handler(call.name)
    if handler is None:
        logger.warning("Model requested unknown tool '%s'", call.name)
        return ToolResult(id=call.id, name=call.name, error=f'Tool "{call.name}" not found')

    try:
        tool = registry.get_tool(call.name)
        if tool is not None:
            validate_arguments(tool, call.arguments)
        logger.debug("Executing tool '%s' with args=%s", call.name, call.arguments)
        result = await handler(call.arguments)
    except ToolExecutionError as exc:
        logger.warning("%s", exc)
        return ToolResult(id=call.id, name=call.name, error=str(exc))
    except Exception as exc:  # noqa: BLE001
        logger.exception("Unhandled error in tool '%s'", call.name)
        return ToolResult(id=call.id, name=call.name, error=str(exc) or type(exc).__name__)

    logger.info("Tool '%s' completed", call.name)
    return ToolResult(id=call.id, name=call.name, result=result)


async def execute_tool_calls(
    registry: ToolRegistry,
    calls: Sequence[ToolCall],
    before_each: Optional[Callable[[ToolCall], Awaitable[bool]]] = None,
) -> List[ToolResult]:
    """
    Run *calls* one after another, in order.

    *before_each* is awaited ahead of every call; returning *False* stops the batch and the
    results gathered so far are returned.
    """
    results: List[ToolResult] = []
    for call in calls:
        if before_each is not None and not await before_each(call):
            break
        results.append(await execute_tool(registry, call))
    return results
