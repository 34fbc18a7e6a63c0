"""MCP tool-server orchestration for conversational assistants."""

__version__ = "0.1.0"
