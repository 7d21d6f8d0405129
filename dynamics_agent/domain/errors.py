from typing import Optional


class AgentError(Exception):
    """Base class for errors raised by the chat agent"""


class ConfigurationError(AgentError):
    """Required configuration is missing or invalid"""


class ToolInputError(AgentError):
    """A tool was called with missing or invalid arguments"""


class UnknownToolError(ToolInputError):
    """The model asked for a tool that is not in the catalog"""

    def __init__(self, tool_name: str):
        super().__init__(f"Unknown tool: {tool_name}")
        self.tool_name = tool_name


class CrmQueryError(AgentError):
    """The CRM rejected a query or could not be reached"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ModelProviderError(AgentError):
    """The model provider failed after retry and fallback were exhausted"""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
