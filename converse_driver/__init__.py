"""Tool-augmented conversation driver for Amazon Bedrock hosted models."""

__version__ = "0.1.0"
