"""Model invocation clients."""

from converse_driver.clients.base import ModelClient
from converse_driver.clients.factory import create_model_client, get_model_client

__all__ = ["ModelClient", "create_model_client", "get_model_client"]
