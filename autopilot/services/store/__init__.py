from autopilot.services.store.base import ConversationStore

__all__ = ["ConversationStore"]
