"""Error taxonomy for draft composition runs."""

from typing import Optional


class CompositionError(Exception):
    """Base class for every error surfaced by a composition run."""

    code = "composition_error"

    def __init__(self, message: str, *, conversation_id: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.conversation_id = conversation_id


class InvalidRequest(CompositionError):
    code = "invalid_request"


class ConversationNotFound(CompositionError):
    code = "conversation_not_found"

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation '{conversation_id}' was not found.", conversation_id=conversation_id)


class ContextUnavailable(CompositionError):
    code = "context_unavailable"


class CapabilityFailure(CompositionError):
    code = "capability_failure"

    def __init__(self, name: str, message: str):
        super().__init__(f"Tool '{name}' failed: {message}")
        self.name = name


class UnknownCapability(CompositionError):
    code = "unknown_capability"

    def __init__(self, name: str):
        super().__init__(f"Tool '{name}' is not available.")
        self.name = name


class AgentLoopExceeded(CompositionError):
    code = "agent_loop_exceeded"


class ModelUnavailable(CompositionError):
    """The language model did not answer within the configured timeout."""

    code = "model_unavailable"


class PreconditionFailed(CompositionError):
    """Raised when a step runs without the state its predecessors guarantee."""

    code = "precondition_failed"


class RunCancelled(Exception):
    """Cooperative cancellation. Not an application error: never reported as `error`."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(reason)
        self.reason = reason


# ==========================================
# Provider errors (raised by external collaborators)
# ==========================================


class ProviderError(Exception):
    pass


class ThreadNotFound(ProviderError):
    pass


class AuthExpired(ProviderError):
    pass
