"""Shared models, configuration and logging for the assistant."""

from shared.models import (
    AssistantMessage,
    CapabilityCall,
    CapabilityCallResult,
    CapabilityDescriptor,
    CapabilityRequest,
    Conversation,
    FinalAnswer,
    LoopState,
    Message,
    ToolMessage,
    TurnResult,
    UserMessage,
)
from shared.config import Settings, get_settings
from shared.logging import get_logger, setup_logging

__all__ = [
    "AssistantMessage",
    "CapabilityCall",
    "CapabilityCallResult",
    "CapabilityDescriptor",
    "CapabilityRequest",
    "Conversation",
    "FinalAnswer",
    "LoopState",
    "Message",
    "ToolMessage",
    "TurnResult",
    "UserMessage",
    "Settings",
    "get_settings",
    "get_logger",
    "setup_logging",
]
