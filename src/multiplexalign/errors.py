"""Error taxonomy for a registration run.

Every error below is fatal to the run it is raised in. The pipeline never
retries at the orchestration level and never rolls back files that were
already written.
"""

import enum
from typing import Any, Dict, Optional


class ErrorKind(enum.Enum):
    CONFIG = "ConfigError"
    OUTPUT_CONFLICT = "OutputConflictError"
    REFERENCE_OPEN = "ReferenceOpenError"
    CORRESPONDENCE_NOT_FOUND = "CorrespondenceNotFoundError"
    LANDMARK_MISSING = "LandmarkMissingError"
    WARP_APPLICATION = "WarpApplicationError"
    RUN_IN_PROGRESS = "RunInProgressError"
    CANCELLED = "RegistrationCancelled"


class RegistrationError(Exception):
    """Base class; carries the error kind and diagnostic context."""

    kind: ErrorKind

    def __init__(self, message: str, **context: Any):
        super().__init__(message)
        self.message = message
        self.context: Dict[str, Any] = {
            kk: vv for kk, vv in context.items() if vv is not None
        }

    def __str__(self):
        details = ", ".join(f"{kk}={vv}" for kk, vv in self.context.items())
        if details:
            return f"[{self.kind.value}] {self.message} ({details})"
        return f"[{self.kind.value}] {self.message}"


class ConfigError(RegistrationError):
    kind = ErrorKind.CONFIG


class OutputConflictError(RegistrationError):
    kind = ErrorKind.OUTPUT_CONFLICT


class ReferenceOpenError(RegistrationError):
    kind = ErrorKind.REFERENCE_OPEN


class CorrespondenceNotFoundError(RegistrationError):
    kind = ErrorKind.CORRESPONDENCE_NOT_FOUND


class LandmarkMissingError(RegistrationError):
    kind = ErrorKind.LANDMARK_MISSING


class WarpApplicationError(RegistrationError):
    kind = ErrorKind.WARP_APPLICATION


class RunInProgressError(RegistrationError):
    kind = ErrorKind.RUN_IN_PROGRESS


class RegistrationCancelled(RegistrationError):
    kind = ErrorKind.CANCELLED


def raise_if_cancelled(cancel_event, where: str, round_index: Optional[int] = None):
    """Raises `RegistrationCancelled` when `cancel_event` has been set."""
    if cancel_event is not None and cancel_event.is_set():
        raise RegistrationCancelled(f"Cancelled {where}", round=round_index)
