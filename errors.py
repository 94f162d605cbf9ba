class FitFlowError(Exception):
    """Base class for errors raised by the session engine."""

    status_code = 500


class NotAuthenticatedError(FitFlowError):
    """No user identity is available for an operation that needs one."""

    status_code = 401

    def __init__(self, message: str = "Not authenticated") -> None:
        super().__init__(message)


class RemoteStoreError(FitFlowError):
    """A read or write against the remote store failed."""

    status_code = 502


class LocalStorageError(FitFlowError):
    """The local durable queue could not be written or read."""

    status_code = 500


class InvalidInputError(FitFlowError, ValueError):
    """Input was rejected before any write happened."""

    status_code = 400


class SessionStateError(FitFlowError):
    """The operation is not valid in the recorder's current state."""

    status_code = 409


class SessionConflictError(SessionStateError):
    """A resumable session exists for a different workout."""

    def __init__(self, workout_id: str, workout_name: str) -> None:
        super().__init__(
            f"Another workout session is in progress: {workout_name}"
        )
        self.workout_id = workout_id
        self.workout_name = workout_name
