from .schemas import (
    AIResponse,
    Agent,
    Case,
    ConversationEntry,
    DeliveryStatus,
    FunnelStatus,
    HandoffArtifact,
    InboundMessage,
    MessageRole,
    TurnAction,
)

__all__ = [
    "AIResponse",
    "Agent",
    "Case",
    "ConversationEntry",
    "DeliveryStatus",
    "FunnelStatus",
    "HandoffArtifact",
    "InboundMessage",
    "MessageRole",
    "TurnAction",
]
