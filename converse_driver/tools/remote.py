"""Executors for tools hosted as AWS Lambda functions."""

import asyncio
import json
from typing import Any

import boto3

from converse_driver.errors import RemoteToolError
from converse_driver.tools.base import ToolExecutor
from converse_driver.utils.logging import get_logger

logger = get_logger(__name__)


def create_lambda_executor(function_name: str, lambda_client: Any | None = None) -> ToolExecutor:
    """Create an executor that runs a tool as a synchronous Lambda invocation.

    The tool arguments are sent as the JSON event. The decoded JSON payload
    returned by the function is the tool result.

    Args:
        function_name: Name or ARN of the Lambda function
        lambda_client: Pre-built ``lambda`` client, defaults to a new boto3 client

    Returns:
        Executor suitable for an executor table
    """
    client = lambda_client or boto3.client("lambda")

    async def invoke_lambda(arguments: dict[str, Any]) -> Any:
        logger.debug(f"Invoking Lambda {function_name} with {arguments}")
        response = await asyncio.to_thread(
            client.invoke,
            FunctionName=function_name,
            InvocationType="RequestResponse",
            Payload=json.dumps(arguments).encode("utf-8"),
        )

        raw_payload = response["Payload"].read()
        try:
            payload = json.loads(raw_payload) if raw_payload else None
        except json.JSONDecodeError as e:
            raise RemoteToolError(f"Lambda {function_name} returned a non-JSON payload", details=raw_payload) from e

        if response.get("FunctionError"):
            message = payload.get("errorMessage", "unknown error") if isinstance(payload, dict) else str(payload)
            raise RemoteToolError(f"Lambda {function_name} failed: {message}", details=payload)

        return payload

    return invoke_lambda
