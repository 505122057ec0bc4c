"""
Controller/worker protocol: message schema and transport channel.
"""

from .messages import (
    ErrorReason,
    MessageValidationError,
    LoadCommand,
    SelfTestCommand,
    SubmitCommand,
    RunCommand,
    CancelCommand,
    BudgetPayload,
    InitializedMessage,
    ReadyMessage,
    SelfTestResultMessage,
    ProgressMessage,
    StdoutMessage,
    StderrMessage,
    CompleteMessage,
    ErrorMessage,
    engine_log_message,
    is_terminal,
    parse_inbound,
    parse_outbound,
)
from .channel import (
    Channel,
    ChannelClosedError,
    MemoryChannel,
)

__all__ = [
    # Errors
    "ErrorReason",
    "MessageValidationError",
    "ChannelClosedError",
    # Inbound
    "LoadCommand",
    "SelfTestCommand",
    "SubmitCommand",
    "RunCommand",
    "CancelCommand",
    # Outbound
    "BudgetPayload",
    "InitializedMessage",
    "ReadyMessage",
    "SelfTestResultMessage",
    "ProgressMessage",
    "StdoutMessage",
    "StderrMessage",
    "CompleteMessage",
    "ErrorMessage",
    # Helpers
    "engine_log_message",
    "is_terminal",
    "parse_inbound",
    "parse_outbound",
    # Transport
    "Channel",
    "MemoryChannel",
]
