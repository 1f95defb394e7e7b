from typing import Any, Dict, Optional


class AudioSourceError(RuntimeError):
    """Error amigable con código HTTP asociado."""

    status_code = 500
    code = "INTERNAL_ERROR"


class ValidationError(AudioSourceError):
    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None) -> None:
        super().__init__(message)
        self.details = details or {}


class NoResultsFound(AudioSourceError):
    status_code = 404
    code = "NOT_FOUND"


class ProviderError(AudioSourceError):
    status_code = 502
    code = "PROVIDER_ERROR"


class MetadataParseError(ProviderError):
    code = "METADATA_PARSE_ERROR"


class ProcessExitedWithError(ProviderError):
    code = "PROCESS_EXITED_WITH_ERROR"

    def __init__(self, program: str, returncode: Optional[int], stderr: str = "") -> None:
        tail = stderr.strip().splitlines()[-1] if stderr.strip() else "sin salida de error"
        super().__init__(f"{program} terminó con código {returncode}: {tail}")
        self.program = program
        self.returncode = returncode
        self.stderr = stderr


class ProcessStartTimeout(AudioSourceError):
    status_code = 504
    code = "PROCESS_START_TIMEOUT"


class RequestTimeoutError(AudioSourceError):
    status_code = 504
    code = "TIMEOUT"
