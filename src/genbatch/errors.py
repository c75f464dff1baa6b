"""Error taxonomy shared by providers, the batch engine and the image orchestrator.

Only ``ConfigurationError`` is expected to escape a batch run. Everything else
is caught at the task boundary and recorded on the task (``error_code`` /
``error_message``) or on the per-job result.
"""

from typing import Optional


class GenBatchError(Exception):
    """Base class for all genbatch errors."""

    code = "GENERAL_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return self.message


class ConfigurationError(GenBatchError):
    """No usable credential or an invalid configuration. Aborts the run."""

    code = "CONFIG_ERROR"


class InvalidTransitionError(GenBatchError):
    """A task was asked to move along an edge the state machine forbids."""

    code = "INVALID_TRANSITION"


class ProviderError(GenBatchError):
    """Fatal provider failure (4xx, business error). Never retried."""

    code = "PROVIDER_ERROR"
    transient = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        status_code: Optional[int] = None,
        provider: Optional[str] = None,
    ):
        super().__init__(message, code)
        self.status_code = status_code
        self.provider = provider


class PayloadValidationError(ProviderError):
    """Input rejected locally before any network call."""

    code = "VALIDATION_ERROR"


class ResponseParseError(ProviderError):
    """Provider answered with a body we cannot interpret."""

    code = "PARSE_ERROR"


class TransientProviderError(ProviderError):
    """Network error, timeout or 5xx. Safe to retry."""

    code = "TRANSIENT_ERROR"
    transient = True


class RateLimitError(TransientProviderError):
    """HTTP 429 or a vendor 'call frequency too high' answer."""

    code = "RATE_LIMIT"


class StorageError(GenBatchError):
    """Downloading a result or writing it to disk failed."""

    code = "DOWNLOAD_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, transient: bool = False):
        super().__init__(message, code)
        self.transient = transient
