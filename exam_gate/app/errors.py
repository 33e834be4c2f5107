"""
Exam Gate - Error Taxonomy

Failure reasons surfaced to the exam UI and the exceptions raised below the
controller/service boundaries.
"""

from enum import Enum


class FailureReason(str, Enum):
    """Why a verification attempt failed."""
    NO_FACE_DETECTED = "no_face_detected"
    MISMATCH = "mismatch"
    NETWORK_ERROR = "network_error"
    SERVER_ERROR = "server_error"
    MODEL_LOAD_FAILURE = "model_load_failure"
    CAMERA_UNAVAILABLE = "camera_unavailable"
    LOCKED_OUT = "locked_out"
    INTERNAL_ERROR = "internal_error"
    CANCELLED = "cancelled"

    @property
    def is_fatal(self) -> bool:
        """Fatal failures block the capture UI instead of offering a retry."""
        return self in (FailureReason.MODEL_LOAD_FAILURE, FailureReason.LOCKED_OUT)

    @property
    def user_message(self) -> str:
        return _USER_MESSAGES[self]


_USER_MESSAGES = {
    FailureReason.NO_FACE_DETECTED: (
        "No face detected. Face the camera in good lighting and try again."
    ),
    FailureReason.MISMATCH: "Verification failed. Please try again.",
    FailureReason.NETWORK_ERROR: "Could not reach the server. Please try again.",
    FailureReason.SERVER_ERROR: "Could not reach the server. Please try again.",
    FailureReason.MODEL_LOAD_FAILURE: (
        "Face verification is unavailable on this device."
    ),
    FailureReason.CAMERA_UNAVAILABLE: (
        "Camera is not available. Check camera permissions and try again."
    ),
    FailureReason.LOCKED_OUT: (
        "Too many failed verifications. Please contact your proctor."
    ),
    FailureReason.INTERNAL_ERROR: (
        "Verification could not be completed. Please try again."
    ),
    FailureReason.CANCELLED: "Verification cancelled.",
}


class ExamGateError(Exception):
    """Base class for exam gate errors."""


class ModelLoadError(ExamGateError):
    """Face models could not be loaded. Fatal for the session."""


class DescriptorLengthError(ExamGateError, ValueError):
    """Two descriptors (or a descriptor and the model) disagree on length."""


class CameraUnavailableError(ExamGateError):
    """Camera could not be opened or returned no frame."""


class InvalidTransitionError(ExamGateError):
    """An exam session was asked to make a transition it does not allow."""


class ApiError(ExamGateError):
    """Base class for backend call failures."""

    def __init__(self, message: str, status_code: int = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkError(ApiError):
    """Transport failure: DNS, connect, timeout, reset."""


class ServerError(ApiError):
    """Backend answered with an unexpected status or malformed body."""


class EligibilitySourceUnreachable(ExamGateError):
    """Course progress could not be fetched; eligibility fails closed."""
