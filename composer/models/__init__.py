from .checkpoint import ConversationCheckpoint, ConversationCheckpointWrite

__all__ = [
    "ConversationCheckpoint",
    "ConversationCheckpointWrite",
]
