"""Error taxonomy for the intake core.

Safety and coherence findings are not exceptions: they are recorded on the
artifact as warnings with a score. Idempotency short-circuits are ordinary
return values of the controller.
"""


class ExtractionParseError(ValueError):
    """LLM extraction output could not be turned into field updates."""


class GenerationTransportError(RuntimeError):
    """Dispatching the asynchronous artifact build failed."""


class ArtifactStructuralError(ValueError):
    """A generated artifact is missing required identifiers or prompt text."""


class InvalidTransitionError(ValueError):
    """A configGeneration status change outside the allowed transition table."""


class ConditionalWriteError(RuntimeError):
    """A store write was rejected because its precondition did not hold."""

    def __init__(self, message: str, current_status: str | None = None):
        super().__init__(message)
        self.current_status = current_status


class SessionNotFoundError(LookupError):
    """No session record exists for the given user and session id."""
