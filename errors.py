"""
errors.py — Error taxonomy

Validation and transport errors are caught at the orchestrator boundary;
sync and index errors are rendered as error-flagged tool results. Nothing
here escapes chat().
"""


class InventoryError(Exception):
    """Base class for every failure this project raises on purpose."""


class UnknownTool(InventoryError):
    def __init__(self, name: str, valid=()):
        self.name = name
        valid_list = ", ".join(valid)
        msg = f"Invalid tool name: {name}"
        if valid_list:
            msg += f". Valid tools: {valid_list}"
        super().__init__(msg)


class InvalidArguments(InventoryError):
    def __init__(self, tool: str, problem: str):
        self.tool = tool
        self.problem = problem
        super().__init__(f"Invalid arguments for {tool}: {problem}")


class TransportError(InventoryError):
    """The stdio transport to the execution server is closed or cannot be opened."""


class ProtocolError(InventoryError):
    """The execution server answered with something other than one text segment."""


class SyncFailed(InventoryError):
    pass


class IndexUpdateFailed(InventoryError):
    pass


class ProviderError(InventoryError):
    """The language-model provider call failed or returned an unexpected status."""


class CommerceClientError(InventoryError):
    """Aggregated failure while fetching from one or more commerce platforms."""
