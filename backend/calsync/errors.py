from fastapi import status

class BaseAppException(Exception):
    def __init__(self, code: str, message: str, http_status: int):
        self.code = code
        self.message = message
        self.http_status = http_status
        super().__init__(message)

class NotFoundError(BaseAppException):
    def __init__(self, code: str, message: str):
        super().__init__(code, message, status.HTTP_404_NOT_FOUND)

class ConflictError(BaseAppException):
    def __init__(self, code: str, message: str):
        super().__init__(code, message, status.HTTP_409_CONFLICT)

class ValidationAppError(BaseAppException):
    def __init__(self, code: str, message: str):
        super().__init__(code, message, status.HTTP_400_BAD_REQUEST)

class InternalServerError(BaseAppException):
    def __init__(self, message: str = "internal error"):
        super().__init__("INTERNAL_ERROR", message, status.HTTP_500_INTERNAL_SERVER_ERROR)


# --- Sync taxonomy ---

class CredentialExpiredError(BaseAppException):
    """Refresh-token grant rejected; the integration needs reconnection."""

    def __init__(self, message: str = "credential expired or revoked"):
        super().__init__("CREDENTIAL_EXPIRED", message, status.HTTP_401_UNAUTHORIZED)

class CursorInvalidatedError(BaseAppException):
    def __init__(self, message: str = "sync cursor is no longer valid"):
        super().__init__("CURSOR_INVALIDATED", message, status.HTTP_409_CONFLICT)

class RemoteNotFoundError(BaseAppException):
    def __init__(self, message: str = "external event not found", provider_status: int | None = None):
        self.provider_status = provider_status
        super().__init__("REMOTE_NOT_FOUND", message, status.HTTP_404_NOT_FOUND)

class TransientProviderError(BaseAppException):
    """Timeout, 5xx or rate limit. Retried with backoff before surfacing."""

    def __init__(self, message: str = "provider temporarily unavailable", retry_after: float | None = None):
        self.retry_after = retry_after
        super().__init__("PROVIDER_TRANSIENT", message, status.HTTP_503_SERVICE_UNAVAILABLE)

class ProviderRequestError(BaseAppException):
    def __init__(self, message: str, provider_status: int | None = None):
        self.provider_status = provider_status
        super().__init__("PROVIDER_REQUEST_FAILED", message, status.HTTP_502_BAD_GATEWAY)

class PayloadValidationError(BaseAppException):
    def __init__(self, message: str):
        super().__init__("PAYLOAD_INVALID", message, status.HTTP_400_BAD_REQUEST)

class SyncAlreadyRunningError(ConflictError):
    def __init__(self, message: str = "a sync run is already in progress"):
        super().__init__("SYNC_ALREADY_RUNNING", message)
