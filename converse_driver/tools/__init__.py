"""Tools the model can call, and the dispatcher that runs them."""

from converse_driver.tools.dispatcher import dispatch
from converse_driver.tools.registry import (
    ToolsRegistry,
    create_default_registry,
    get_tools_registry,
    load_lambda_tools,
)
from converse_driver.tools.remote import create_lambda_executor

__all__ = [
    "ToolsRegistry",
    "create_default_registry",
    "create_lambda_executor",
    "dispatch",
    "get_tools_registry",
    "load_lambda_tools",
]
