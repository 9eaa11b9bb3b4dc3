# errors.py
# Error taxonomy for the ReAct execution kernel.
#
# Recovered locally:   ToolNotFoundError, ToolExecutionError (become failed
#                      observations, the run continues).
# Phase failures:      ProtocolParseError, FatalError (the run ends in ERROR).
# Surfaced to caller:  SessionNotFoundError, VersionConflictError.


class KernelError(Exception):
    """Base class. `code` is a stable identifier for callers and logs."""

    code = "KERNEL_ERROR"


class ProtocolParseError(KernelError):
    """Raised when model output cannot be parsed into a valid Step."""

    code = "PROTOCOL_PARSE_ERROR"

    def __init__(self, reason: str, original_text: str | None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.original_text = original_text


class ToolNotFoundError(KernelError):
    """Raised when a dispatch name is absent from the registry."""

    code = "TOOL_NOT_FOUND"

    def __init__(self, tool_name: str) -> None:
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolExecutionError(KernelError):
    """Raised by a tool invocation that failed."""

    code = "TOOL_EXECUTION_ERROR"

    def __init__(self, tool_name: str, message: str) -> None:
        super().__init__(message)
        self.tool_name = tool_name


class RemoteSourceError(KernelError):
    """Raised when a remote tool source is unknown or its transport fails."""

    code = "REMOTE_SOURCE_ERROR"

    def __init__(self, source_id: str, message: str) -> None:
        super().__init__(message)
        self.source_id = source_id


class SessionNotFoundError(KernelError):
    code = "SESSION_NOT_FOUND"

    def __init__(self, conversation_id: str) -> None:
        super().__init__(f"Session not found: {conversation_id}")
        self.conversation_id = conversation_id


class VersionConflictError(KernelError):
    """Another request already claimed this conversation's version."""

    code = "VERSION_CONFLICT"

    def __init__(self, conversation_id: str, expected_version: int) -> None:
        super().__init__(
            f"Concurrent modification detected for conversation {conversation_id} "
            f"(expected version {expected_version})"
        )
        self.conversation_id = conversation_id
        self.expected_version = expected_version


class FatalError(KernelError):
    """Unexpected failure inside a think/act phase. Aborts the current run only."""

    code = "FATAL"
