"""Exceptions raised by the careflow core.

Adapters translate these into their own medium (HTTP status codes,
CLI error payloads).
"""


class CareflowError(Exception):
    """Base exception for careflow errors."""


class EpisodeNotFound(CareflowError):
    """Raised when an episode id does not exist."""

    def __init__(self, episode_id: str):
        self.episode_id = episode_id
        super().__init__(f"Episode {episode_id} not found")


class RecordNotFound(CareflowError):
    """Raised when a document in a record collection does not exist."""

    def __init__(self, collection: str, record_id: str):
        self.collection = collection
        self.record_id = record_id
        super().__init__(f"Record {collection}/{record_id} not found")


class InvalidTransition(CareflowError):
    """Raised when no transition exists for a state and trigger."""

    def __init__(self, from_state: str, trigger: str, reason: str | None = None):
        self.from_state = from_state
        self.trigger = trigger
        self.reason = reason or f"No transition from '{from_state}' on '{trigger}'"
        super().__init__(self.reason)


class GuardRejected(CareflowError):
    """Raised when a transition exists but its guard does not hold."""

    def __init__(self, from_state: str, trigger: str, guard: str):
        self.from_state = from_state
        self.trigger = trigger
        self.guard = guard
        super().__init__(
            f"Transition from '{from_state}' on '{trigger}' blocked by guard '{guard}'"
        )


class TransitionConflict(CareflowError):
    """Raised when concurrent writers keep moving the episode underneath us."""

    def __init__(self, episode_id: str, attempts: int):
        self.episode_id = episode_id
        self.attempts = attempts
        super().__init__(
            f"Episode {episode_id} changed concurrently; gave up after {attempts} attempts"
        )


class InvalidDefinition(CareflowError):
    """Raised when a transition table fails graph validation."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Invalid state machine definition: " + "; ".join(errors))


class ValidationFailed(CareflowError):
    """Raised when command input breaks a domain rule."""

    def __init__(self, errors: list[str] | str):
        self.errors = [errors] if isinstance(errors, str) else list(errors)
        super().__init__("; ".join(self.errors))


class ConsentRequired(CareflowError):
    """Raised when an operation needs a signed consent that is missing."""

    def __init__(self, episode_id: str, consent_type: str):
        self.episode_id = episode_id
        self.consent_type = consent_type
        super().__init__(
            f"A signed {consent_type} consent is required for episode {episode_id}"
        )


class NotAuthenticated(CareflowError):
    """Raised when a command arrives without an identified actor."""

    def __init__(self) -> None:
        super().__init__("Not authenticated")


class PermissionDenied(CareflowError):
    """Raised when the actor may not perform an operation."""

    def __init__(self, user_id: str, operation: str):
        self.user_id = user_id
        self.operation = operation
        super().__init__(f"User {user_id} is not allowed to {operation}")
