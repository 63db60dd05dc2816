from __future__ import annotations


class ProctorError(Exception):
    """Base class for engine errors."""


class InitializationFailure(ProctorError):
    """A model or resource a detector needs could not be loaded. Fatal for that detector."""


class TransientDetectionError(ProctorError):
    """Single frame/window failure. Detector state is left untouched."""


class InvalidInput(ProctorError, ValueError):
    """Malformed matrix or buffer rejected at the function boundary."""


class EscalationFailure(ProctorError):
    """Analysis or persistence call failed; retried at the next eligible escalation."""

    def __init__(self, stage: str, cause: BaseException | None = None):
        self.stage = stage
        self.cause = cause
        msg = f"{stage} failed"
        if cause is not None:
            msg = f"{msg}: {cause!r}"
        super().__init__(msg)
