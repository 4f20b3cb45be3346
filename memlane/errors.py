"""Error taxonomy shared by the capture pipeline, the stores and the HTTP layer."""


class MemlaneError(Exception):
    """Base class for all application errors."""

    status_code = 500


class Unauthorized(MemlaneError):
    """No valid identity was presented."""

    status_code = 401


class Forbidden(MemlaneError):
    """The record exists but belongs to another user."""

    status_code = 403


class NotFound(MemlaneError):
    status_code = 404


class InvalidRequest(MemlaneError):
    status_code = 400


class SessionStateError(MemlaneError):
    """An action was attempted that the capture session's current state does not allow."""

    status_code = 409


class DeviceUnavailable(MemlaneError):
    """The audio input could not be opened (missing device, permission denied)."""

    status_code = 503


class TranscriptionError(MemlaneError):
    status_code = 502


class TranscriptionTimeout(TranscriptionError):
    """The transcription call for one segment did not answer in time."""


class PersistenceError(MemlaneError):
    status_code = 500


class SummarizationError(MemlaneError):
    status_code = 502


class EmbeddingError(MemlaneError):
    status_code = 502


class CompletionError(MemlaneError):
    status_code = 502
