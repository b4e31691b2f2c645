"""Dispatches tool-use requests to executors and wraps every outcome in a tool result."""

import copy
import inspect
import json
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError

from converse_driver.errors import ToolArgumentError, ToolError, UnknownToolError
from converse_driver.models.llm import ToolResultBlock, ToolSpec, ToolUseBlock
from converse_driver.tools.base import ToolExecutor
from converse_driver.tools.schema import validate_arguments
from converse_driver.utils.logging import get_logger

logger = get_logger(__name__)

ToolRegistryLike = Mapping[str, ToolSpec] | Iterable[ToolSpec]


def index_registry(registry: ToolRegistryLike) -> dict[str, ToolSpec]:
    """Index tool specs by name."""
    if isinstance(registry, Mapping):
        return dict(registry)
    return {spec.name: spec for spec in registry}


def serialize_result(result: Any) -> str | dict[str, Any]:
    """Turn an executor's return value into tool result content.

    Strings pass through, mappings and pydantic models become JSON objects,
    anything else is JSON-encoded text.
    """
    if isinstance(result, str):
        return result
    if isinstance(result, BaseModel):
        return result.model_dump(mode="json")
    if isinstance(result, Mapping):
        return json.loads(json.dumps(dict(result), default=str))
    return json.dumps(result, default=str)


def describe_validation_error(error: PydanticValidationError) -> str:
    """Flatten a pydantic validation error into one readable line."""
    problems = []
    for err in error.errors():
        location = ".".join(str(part) for part in err["loc"]) or "input"
        problems.append(f"{location}: {err['msg']}")
    return "; ".join(problems)


def error_result(request: ToolUseBlock, message: str) -> ToolResultBlock:
    return ToolResultBlock(tool_use_id=request.id, content=f"Error: {message}", is_error=True)


async def dispatch(
    request: ToolUseBlock,
    registry: ToolRegistryLike,
    executor_table: Mapping[str, ToolExecutor],
) -> ToolResultBlock:
    """Execute one tool-use request and package the outcome.

    The executor is called at most once. Validation failures, unknown tools
    and exceptions raised by the executor all come back as a tool result with
    ``is_error=True`` instead of propagating, so a failing tool never aborts
    the conversation.

    Args:
        request: Tool invocation requested by the model
        registry: Declared tool specs, as a sequence or a name mapping
        executor_table: Callables keyed by tool name, taking the argument mapping

    Returns:
        The tool result for ``request``
    """
    tool_name = request.name
    logger.debug(f"Executing tool: {tool_name} with input: {request.input}")

    try:
        specs = index_registry(registry)
        spec = specs.get(tool_name)
        if spec is None:
            raise UnknownToolError(tool_name, list(specs))

        validate_arguments(tool_name, request.input, spec.input_schema)

        executor = executor_table.get(tool_name)
        if executor is None:
            raise ToolError(f"Tool '{tool_name}' is declared but has no executor")

        # Executors get their own copy so recorded history stays untouched
        result = executor(copy.deepcopy(request.input))
        if inspect.isawaitable(result):
            result = await result

        content = serialize_result(result)

    except ToolArgumentError as e:
        logger.warning(f"Rejected tool call {tool_name}: {e}")
        return error_result(request, str(e))

    except PydanticValidationError as e:
        logger.warning(f"Tool {tool_name} input failed validation: {e}")
        return error_result(request, f"Invalid arguments for tool '{tool_name}': {describe_validation_error(e)}")

    except Exception as e:
        logger.error(f"Tool {tool_name} failed: {e}", exc_info=True)
        return error_result(request, f"Tool '{tool_name}' failed: {e}")

    logger.debug(f"Tool {tool_name} succeeded: {str(content)[:100]}...")
    return ToolResultBlock(tool_use_id=request.id, content=content)
