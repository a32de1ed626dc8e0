"""
Error taxonomy for the analysis engine.

Collaborator failures are recorded, not raised, by the orchestrator; the rest
propagate to whoever owns the retry decision (usually the job queue).
"""


class EscalateError(Exception):
    """Base exception for the analysis engine."""
    pass


class LockUnavailable(EscalateError):
    """Another worker holds the per-incident lock. Skip or retry later."""

    def __init__(self, key: str):
        super().__init__(f"Could not acquire lock {key}")
        self.key = key


class CollaboratorFailure(EscalateError):
    """An external data/notification collaborator failed."""

    def __init__(self, name: str, cause: BaseException):
        super().__init__(f"{name}: {cause}")
        self.name = name
        self.cause = cause


class SummarizationFailure(EscalateError):
    """The summarization collaborator failed; fatal to the pipeline attempt."""
    pass


class PersistenceFailure(EscalateError):
    """The relational store rejected or failed a write."""
    pass


class MaxRetriesExceeded(EscalateError):
    """A job or pipeline ran out of attempts."""

    def __init__(self, attempts: int, last_error: BaseException):
        super().__init__(f"Gave up after {attempts} attempts: {last_error}")
        self.attempts = attempts
        self.last_error = last_error


class JobValidationError(EscalateError):
    """Unknown queue or a payload that does not match the queue's schema."""
    pass


class InvalidTransition(EscalateError):
    """Analysis status change outside pending -> processing -> completed|failed."""
    pass


class ConfigurationError(EscalateError):
    """Raised when configuration is invalid or missing."""
    pass


class AnalysisTimeout(EscalateError):
    """The locked part of the pipeline ran past its deadline and was abandoned."""
    pass
