"""Tools registry for managing the tools exposed to the model."""

import inspect
import json
import os
from collections.abc import Iterable
from typing import Any

from converse_driver.models.llm import ToolSpec
from converse_driver.services.weather import InMemoryWeatherService, WeatherService
from converse_driver.tools.base import ToolDefinition, ToolExecutor
from converse_driver.tools.remote import create_lambda_executor
from converse_driver.tools.weather import create_get_weather_tool
from converse_driver.utils.logging import get_logger

logger = get_logger(__name__)


class ToolsRegistry:
    """Registry of tool definitions, keyed by unique name.

    Local tools are ``ToolDefinition``s whose arguments are parsed through a
    pydantic model. Remote tools are declared with a raw ``ToolSpec`` and run
    by an executor that receives the arguments as sent by the model.
    """

    def __init__(self, tools: Iterable[ToolDefinition] = ()):
        """Initialize the registry with an optional set of tools."""
        self._tools: dict[str, ToolDefinition] = {}
        self._remote_tools: dict[str, tuple[ToolSpec, ToolExecutor]] = {}
        for tool in tools:
            self.register_tool(tool)

    def register_tool(self, tool: ToolDefinition) -> None:
        """Register a new tool in the registry.

        Raises:
            ValueError: If a tool with the same name is already registered
        """
        self._check_name_free(tool.name)
        logger.debug(f"Registering tool '{tool.name}'")
        self._tools[tool.name] = tool

    def register_remote_tool(self, spec: ToolSpec, executor: ToolExecutor) -> None:
        """Register a tool declared by ``spec`` and run by ``executor``.

        Raises:
            ValueError: If a tool with the same name is already registered
        """
        self._check_name_free(spec.name)
        logger.debug(f"Registering remote tool '{spec.name}'")
        self._remote_tools[spec.name] = (spec, executor)

    def register_lambda_tool(self, spec: ToolSpec, function_name: str, lambda_client: Any | None = None) -> None:
        """Register a tool backed by an AWS Lambda function."""
        self.register_remote_tool(spec, create_lambda_executor(function_name, lambda_client))

    def get_tool_specs(self) -> list[ToolSpec]:
        """Get the declarations sent to the model, in registration order."""
        specs = [tool.to_spec() for tool in self._tools.values()]
        specs.extend(spec for spec, _ in self._remote_tools.values())
        return specs

    def get_executor_table(self) -> dict[str, ToolExecutor]:
        """Get executors that parse raw arguments through each tool's input model."""

        def create_tool_callable(tool: ToolDefinition) -> ToolExecutor:
            async def tool_callable(params: dict[str, Any]) -> Any:
                parsed_params = tool.parse_input(params)
                result = tool.handler(parsed_params)
                if inspect.isawaitable(result):
                    result = await result
                return result

            return tool_callable

        table = {name: create_tool_callable(tool) for name, tool in self._tools.items()}
        table.update((name, executor) for name, (_, executor) in self._remote_tools.items())
        return table

    def get_tool_names(self) -> list[str]:
        """Get list of all registered tool names."""
        return [*self._tools, *self._remote_tools]

    def has_tool(self, name: str) -> bool:
        """Check if a tool is registered."""
        return name in self._tools or name in self._remote_tools

    def _check_name_free(self, name: str) -> None:
        if self.has_tool(name):
            raise ValueError(f"Tool '{name}' is already registered")


def load_lambda_tools(registry: ToolsRegistry, config: str, lambda_client: Any | None = None) -> None:
    """Register Lambda tools described by a JSON list.

    Each entry has ``name``, ``description``, ``input_schema`` and
    ``function_name``.
    """
    for entry in json.loads(config):
        spec = ToolSpec(
            name=entry["name"],
            description=entry["description"],
            input_schema=entry.get("input_schema", {"type": "object", "properties": {}}),
        )
        registry.register_lambda_tool(spec, entry["function_name"], lambda_client)
        logger.info(f"Registered Lambda tool '{spec.name}' -> {entry['function_name']}")


def create_default_registry(weather_service: WeatherService | None = None) -> ToolsRegistry:
    """Build the registry with the bundled tools."""
    return ToolsRegistry([create_get_weather_tool(weather_service or InMemoryWeatherService())])


_tools_registry: ToolsRegistry | None = None


def get_tools_registry() -> ToolsRegistry:
    """Get or create tools registry instance.

    Lambda tools listed in the ``LAMBDA_TOOLS`` environment variable are
    registered next to the bundled ones.
    """
    global _tools_registry

    if _tools_registry is None:
        _tools_registry = create_default_registry()
        lambda_tools = os.getenv("LAMBDA_TOOLS")
        if lambda_tools:
            load_lambda_tools(_tools_registry, lambda_tools)

    return _tools_registry
