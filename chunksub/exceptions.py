"""Custom Exceptions for the ChunkSub application."""

from typing import Optional


class ChunkSubError(Exception):
    """Base class for exceptions in this package.

    ``user_message`` is the short, human-readable explanation shown to the
    user; ``str(exc)`` keeps the technical detail for the logs.
    """

    default_user_message = "Subtitle generation failed."

    def __init__(self, message: str = "", user_message: Optional[str] = None):
        super().__init__(message)
        self.user_message = user_message or self.default_user_message


class ConfigurationError(ChunkSubError):
    """Exception raised for errors in configuration loading."""
    default_user_message = "The configuration is invalid."


class FileSystemError(ChunkSubError):
    """Exception raised for file system related errors (permissions, not found etc)."""
    default_user_message = "A file or directory could not be accessed."


class AudioExtractionError(ChunkSubError):
    """Exception raised for errors during audio extraction."""
    default_user_message = "Audio could not be extracted from the media file."


class DurationUnavailable(AudioExtractionError):
    """Raised when the audio duration cannot be probed by any method."""
    default_user_message = "The audio duration could not be determined."


class ChunkExtractionFailed(AudioExtractionError):
    """Raised when cutting one audio chunk fails."""
    default_user_message = "The audio could not be split into chunks."

    def __init__(self, message: str = "", chunk_index: Optional[int] = None, user_message: Optional[str] = None):
        super().__init__(message, user_message)
        self.chunk_index = chunk_index


class TranscriptionError(ChunkSubError):
    """Exception raised for errors during transcription."""
    default_user_message = "Transcription failed."


class AuthenticationMissing(TranscriptionError, ConfigurationError):
    """The backend requires credentials that were not configured."""
    default_user_message = "No API key is configured for the transcription service."


class TransientBackendError(TranscriptionError):
    """Timeouts, rate limits and server errors. Retried."""
    default_user_message = "The transcription service is temporarily unavailable."

    def __init__(self, message: str = "", status_code: Optional[int] = None, user_message: Optional[str] = None):
        super().__init__(message, user_message)
        self.status_code = status_code


class BackendUnavailable(TransientBackendError):
    """HTTP 5xx, 429 or a timeout from a backend."""


class PermanentBackendError(TranscriptionError):
    """The request was refused and repeating it will not help."""
    default_user_message = "The transcription service rejected the request."

    def __init__(self, message: str = "", status_code: Optional[int] = None, user_message: Optional[str] = None):
        super().__init__(message, user_message)
        self.status_code = status_code


class BackendRejected(PermanentBackendError):
    """HTTP 4xx other than 429."""


class ResultUnparseable(TranscriptionError):
    """The backend answered, but its output could not be read as subtitles."""
    default_user_message = "The transcription result could not be read."


class ChunkTranscriptionFailed(TranscriptionError):
    """One chunk failed after its retries; fatal for the whole job."""

    def __init__(self, chunk_index: int, cause: BaseException):
        cause_user_message = getattr(cause, "user_message", None) or "Transcription failed."
        super().__init__(
            f"Chunk {chunk_index} failed: {cause}",
            user_message=f"{cause_user_message} (chunk {chunk_index + 1})",
        )
        self.chunk_index = chunk_index
        self.cause = cause


class RetryExhausted(ChunkSubError):
    """The operation failed and no further attempt will be made."""

    def __init__(self, cause: BaseException, attempts: int):
        super().__init__(
            f"Operation failed after {attempts} attempt(s): {cause}",
            user_message=getattr(cause, "user_message", None) or "The request failed after several attempts.",
        )
        self.cause = cause
        self.attempts = attempts


class OptimizationFailed(ChunkSubError):
    """Subtitle correction failed. Never fatal for a job."""
    default_user_message = "Subtitle correction failed; the uncorrected text was kept."


class CacheIOError(ChunkSubError):
    """Reading or writing the result cache failed. Treated as a cache miss."""
    default_user_message = "The subtitle cache could not be used."


class FormattingError(ChunkSubError):
    """Exception raised for errors during subtitle formatting."""
    default_user_message = "The subtitle file could not be written."


class OperationCancelled(ChunkSubError):
    """Raised at a cancellation checkpoint once cancellation was requested."""
    default_user_message = "The operation was cancelled."


class BatchError(ChunkSubError):
    """Errors in driving the batch queue itself."""
    default_user_message = "The batch could not be processed."


class AlreadyRunning(BatchError):
    """start() was called while the batch is running."""
    default_user_message = "Batch processing is already in progress."


class EmptyQueue(BatchError):
    """start() was called with no pending jobs."""
    default_user_message = "There are no pending jobs to process."


class JobNotRemovable(BatchError):
    """A job or the queue cannot be removed in its current state."""
    default_user_message = "The job cannot be removed while it is being processed."
