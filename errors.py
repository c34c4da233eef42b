"""Error types shared by the backend functions.

Each error carries the HTTP status and short code the functions app
answers with, so handlers can simply raise and let the app render
``{"error": ..., "code": ...}``.
"""


class FinanceChatError(Exception):
    status_code = 500
    code = "internal_error"


class AuthenticationError(FinanceChatError):
    """No session, an unknown user id, or a wrong password."""

    status_code = 401
    code = "unauthenticated"


class InvalidRequestError(FinanceChatError):
    status_code = 400
    code = "invalid_request"


class DataIntegrityError(FinanceChatError):
    """A row the request depends on does not exist. Never retried."""

    status_code = 400
    code = "data_integrity"


class ExternalServiceError(FinanceChatError):
    """A provider (LLM, OCR, Plaid, FCM, storage) failed or is not configured."""

    status_code = 502
    code = "external_api_error"


class RunFailedError(ExternalServiceError):
    code = "run_failed"


class RunTimeoutError(ExternalServiceError):
    status_code = 504
    code = "run_timeout"


class ActiveRunError(ExternalServiceError):
    status_code = 409
    code = "active_run"


class DocumentProcessingError(FinanceChatError):
    code = "document_error"
