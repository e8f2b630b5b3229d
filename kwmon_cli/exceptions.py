# kwmon_cli/exceptions.py
from typing import Optional
from datetime import datetime, timezone

class KWMONBaseError(Exception):
    """Base class for all custom errors in the kwmon-cli application."""
    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message)
        self.original_error = original_error
        if original_error:
            self.__cause__ = original_error

# --- Configuration Errors ---
class ConfigError(KWMONBaseError):
    """Errors related to application configuration loading or validation."""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message, original_error=original_error)

class ConfigValidationError(ConfigError):
    """Raised specifically when configuration validation fails."""

    def __init__(self, message: str, config_path: Optional[str] = None, original_error: Optional[Exception] = None):
        self.config_path = config_path
        super().__init__(message, original_error=original_error)

class SecretResolutionError(ConfigError):
    """Raised when a ${NAME} reference in the config has no value in the environment."""

    def __init__(self, variable: str):
        self.variable = variable
        super().__init__(f"Environment variable {variable} is not set")

# --- Repository/Target Errors ---
class RepoIdentificationError(KWMONBaseError):
    """Errors identifying a repository target (e.g. a malformed URL)."""
    def __init__(self, message: str, target: Optional[str] = None, original_error: Optional[Exception] = None):
        self.target = target
        super().__init__(message, original_error=original_error)

class FetchError(RepoIdentificationError):
    """A request to the hosting API failed, timed out, or returned an unusable payload."""
    def __init__(self, message: str, target: Optional[str] = None, status_code: Optional[int] = None,
                 original_error: Optional[Exception] = None):
        self.status_code = status_code
        if status_code is not None:
            message = f"{message} (Status: {status_code})"
        super().__init__(message, target=target, original_error=original_error)

class RateLimitError(FetchError):
    """Raised when API rate limit is exceeded."""
    def __init__(self, service: str, reset_time: Optional[int] = None, status_code: Optional[int] = None,
                 original_error: Optional[Exception] = None):
        self.service = service
        self.reset_time = reset_time
        msg = f"Rate limit exceeded for {service}"
        if reset_time:
            reset_dt = datetime.fromtimestamp(reset_time, tz=timezone.utc)
            msg += f". Reset approx: {reset_dt.isoformat()}"
        super().__init__(msg, target=service, status_code=status_code, original_error=original_error)

class BlobSkippedError(FetchError):
    """A file blob was not scanned because it is too large or not text."""
    def __init__(self, blob_sha: str, reason: str):
        self.blob_sha = blob_sha
        self.reason = reason
        super().__init__(f"Skipped blob {blob_sha[:12]}: {reason}", target=blob_sha)

# --- State Errors ---
class StateError(KWMONBaseError):
    """Errors writing the durable watermark state."""
    def __init__(self, state_path: str, message: str, original_error: Optional[Exception] = None):
        self.state_path = state_path
        super().__init__(f"StateError for '{state_path}': {message}", original_error=original_error)

# --- Notification Errors ---
class NotificationError(KWMONBaseError):
    """Errors during the notification sending process."""
    def __init__(self, service: str, message: str, status_code: Optional[int] = None, response_body: Optional[str] = None, original_error: Optional[Exception] = None):
        self.service = service
        self.status_code = status_code
        self.response_body = response_body

        error_msg = f"Notification error for {service}"
        if status_code is not None:
            error_msg += f" (Status: {status_code})"
        error_msg += f": {message}"

        if response_body:
            snippet = response_body[:200] + ('...' if len(response_body) > 200 else '')
            error_msg += f" - Response: {snippet}"

        super().__init__(error_msg, original_error=original_error)
