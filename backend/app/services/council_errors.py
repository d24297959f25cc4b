"""
Council Errors - Centralized failure taxonomy for the orchestrator.

These are ORCHESTRATION errors, not backend errors.
Backend transport failures never raise out of a stage: they are recorded
per backend (see backend_client). The errors here are the ones that stop a
stage or the service itself.

Each error has:
- ERROR_CODE: Unique identifier for logging/monitoring
- message: Human-readable description
- to_dict(): Structured output for API responses
"""

from enum import Enum
from typing import Any, Dict, Optional


class CouncilErrorCode(str, Enum):
    """
    Canonical error codes for orchestration failures.
    """
    # Request errors
    INVALID_REQUEST = "INVALID_REQUEST"

    # Lookup errors
    RUN_NOT_FOUND = "RUN_NOT_FOUND"

    # Stage precondition errors
    INSUFFICIENT_ANSWERS = "INSUFFICIENT_ANSWERS"
    NO_ANSWERS = "NO_ANSWERS"
    MISSING_RANKING = "MISSING_RANKING"

    # Startup errors
    INVALID_CONFIG = "INVALID_CONFIG"


class CouncilError(Exception):
    """
    Base class for all orchestration errors.
    """

    ERROR_CODE: Optional[CouncilErrorCode] = None  # Override in subclasses

    def __init__(
        self,
        message: str,
        request_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.request_id = request_id
        self.metadata = metadata or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """
        Convert error to structured dict for API responses.

        Returns:
            {
                "error_code": "INSUFFICIENT_ANSWERS",
                "error_type": "InsufficientAnswersError",
                "error": "Not enough answers to run stage2",
                "request_id": "...",
                "metadata": {"answers": 1, "required": 2}
            }
        """
        return {
            "error_code": self.ERROR_CODE.value if self.ERROR_CODE else "COUNCIL_ERROR",
            "error_type": self.__class__.__name__,
            "error": self.message,
            "request_id": self.request_id,
            "metadata": self.metadata,
        }


class InvalidRequestError(CouncilError):
    """
    ERROR_CODE: INVALID_REQUEST

    Raised before any backend call when required input is missing or blank.
    """
    ERROR_CODE = CouncilErrorCode.INVALID_REQUEST


class RunNotFoundError(CouncilError):
    """
    ERROR_CODE: RUN_NOT_FOUND

    Raised when a stage or lookup names a request id the store does not know.
    """
    ERROR_CODE = CouncilErrorCode.RUN_NOT_FOUND

    def __init__(self, request_id: str):
        super().__init__(message="Request not found", request_id=request_id)


# ============================================================================
# STAGE PRECONDITION ERRORS
# ============================================================================

class StagePreconditionError(CouncilError):
    """
    A stage was triggered before the data it depends on exists.

    The stage aborts without touching the field it could not compute.
    """
    stage: str = ""


class InsufficientAnswersError(StagePreconditionError):
    """
    ERROR_CODE: INSUFFICIENT_ANSWERS

    Stage 2 needs at least two anonymized answers so every reviewer has a peer.
    """
    ERROR_CODE = CouncilErrorCode.INSUFFICIENT_ANSWERS
    stage = "stage2"

    def __init__(self, request_id: str, answers: int, required: int = 2):
        super().__init__(
            message="Not enough answers to run stage2",
            request_id=request_id,
            metadata={"answers": answers, "required": required},
        )


class NoAnswersError(StagePreconditionError):
    """
    ERROR_CODE: NO_ANSWERS
    """
    ERROR_CODE = CouncilErrorCode.NO_ANSWERS
    stage = "stage3"

    def __init__(self, request_id: str):
        super().__init__(message="No answers available for stage3", request_id=request_id)


class MissingRankingError(StagePreconditionError):
    """
    ERROR_CODE: MISSING_RANKING

    Stage 3 needs a non-empty aggregated ranking from stage 2.
    """
    ERROR_CODE = CouncilErrorCode.MISSING_RANKING
    stage = "stage3"

    def __init__(self, request_id: str):
        super().__init__(message="Stage2 results are required for stage3", request_id=request_id)


class ConfigError(CouncilError):
    """
    ERROR_CODE: INVALID_CONFIG

    Startup configuration is unusable. The service must not start.
    """
    ERROR_CODE = CouncilErrorCode.INVALID_CONFIG
