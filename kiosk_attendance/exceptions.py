from typing import Optional


class AttendanceError(Exception):
    """Base exception for the kiosk."""


class EnrollmentError(AttendanceError):
    """Raised when an identity cannot be enrolled, updated or removed."""


class InfrastructureError(AttendanceError):
    """A collaborator (record store, descriptor oracle, camera) failed.

    Carries the failing operation and the underlying cause so callers can
    decide on their own retry policy.
    """

    def __init__(self, message: str, operation: str = "", cause: Optional[BaseException] = None):
        super().__init__(message)
        self.operation = operation
        self.cause = cause


class CameraError(InfrastructureError):
    """Raised when webcam access fails."""


class FaceEngineError(InfrastructureError):
    """Raised when face detection or descriptor extraction fails."""


class DatabaseError(InfrastructureError):
    """Raised when record store operations fail."""
