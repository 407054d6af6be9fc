"""Custom exception types for notetriage.

Messages name the operation that failed and the condition behind it,
and end with a hint when the user can do something about it.
"""


class NoteTriageError(Exception):
    """Base exception for all notetriage errors."""

    pass


class ConfigValidationError(NoteTriageError):
    """config.yaml parsed but its settings are invalid; the message lists each bad field."""

    pass


class ConfigLoadError(NoteTriageError):
    """config.yaml is missing, unreadable or not valid YAML."""

    pass


class DatabaseError(NoteTriageError):
    """A SQLite read or write failed."""

    pass


class InferenceError(NoteTriageError):
    """Raised when the inference endpoint returns an error.

    Attributes:
        status_code: HTTP status code from the endpoint (if a response arrived)
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class InferenceUnavailableError(InferenceError):
    """Raised when the inference endpoint cannot be reached at call time.

    The re-classification engine answers this with the rule-based fallback
    instead of failing the candidate.
    """

    pass


class InferenceTimeoutError(InferenceError):
    """Raised when a single inference call exceeds its request timeout."""

    pass


class OutputParseError(NoteTriageError):
    """Raised when model output cannot be repaired into a JSON object.

    Attributes:
        attempts: Number of parse attempts made (initial + repair retries)
        raw_output: The unmodified model text, truncated for logging
    """

    def __init__(self, message: str, attempts: int = 0, raw_output: str = ""):
        super().__init__(message)
        self.attempts = attempts
        self.raw_output = raw_output[:500]


class ReviewActionError(NoteTriageError):
    """Raised when a human review action is rejected.

    No state is changed when this is raised.

    Attributes:
        target_id: ID of the LLM result or notification the action targeted
    """

    def __init__(self, message: str, target_id: int | None = None):
        super().__init__(message)
        self.target_id = target_id


class ResultNotFoundError(ReviewActionError):
    """Raised when an LLM inference result ID does not exist."""

    pass


class NotificationNotFoundError(ReviewActionError):
    """Raised when a promotion notification ID does not exist."""

    pass


class InvalidActionError(ReviewActionError):
    """Raised when an action is not allowed from the target's current status.

    For example, approving a result that is already approved, or overriding
    with a type outside the taxonomy.
    """

    pass


class PatternTimeoutError(NoteTriageError):
    """Raised when a classification regex exceeds its timeout.

    This is a non-fatal error: the pattern is treated as not matching and
    classification continues. Used for logging rather than halting execution.

    Attributes:
        pattern: The pattern source that timed out
    """

    def __init__(self, message: str, pattern: str):
        super().__init__(message)
        self.pattern = pattern
