"""API error definitions.

All API errors are defined here with their corresponding HTTP status codes.
"""

from enum import Enum


class ApiErrorCode(str, Enum):
    """Standardized error codes for the API.

    Format: E_CATEGORY_NAME
    """

    # Authentication errors (401)
    E_UNAUTHENTICATED = "E_UNAUTHENTICATED"

    # Authorization errors (403)
    E_FORBIDDEN = "E_FORBIDDEN"

    # Not found errors (404)
    E_NOT_FOUND = "E_NOT_FOUND"
    E_MANGA_NOT_FOUND = "E_MANGA_NOT_FOUND"
    E_CHAPTER_NOT_FOUND = "E_CHAPTER_NOT_FOUND"
    E_DRAFT_NOT_FOUND = "E_DRAFT_NOT_FOUND"
    E_JOB_NOT_FOUND = "E_JOB_NOT_FOUND"

    # Validation errors (400)
    E_INVALID_REQUEST = "E_INVALID_REQUEST"
    E_INVALID_TOKEN = "E_INVALID_TOKEN"
    E_INVALID_DRAFT = "E_INVALID_DRAFT"
    E_INVALID_PAGE_ID = "E_INVALID_PAGE_ID"
    E_INVALID_PAGE_LIST = "E_INVALID_PAGE_LIST"
    E_INVALID_IMAGE = "E_INVALID_IMAGE"
    E_FILE_TOO_LARGE = "E_FILE_TOO_LARGE"

    # Conflict errors (409)
    E_ALREADY_PROCESSING = "E_ALREADY_PROCESSING"
    E_CHAPTER_EXISTS = "E_CHAPTER_EXISTS"
    E_NOT_RETRYABLE = "E_NOT_RETRYABLE"

    # Server errors
    E_INTERNAL = "E_INTERNAL"  # 500
    E_UPLOAD_FAILED = "E_UPLOAD_FAILED"  # 502
    E_STORAGE_ERROR = "E_STORAGE_ERROR"  # 502
    E_STORAGE_UNAVAILABLE = "E_STORAGE_UNAVAILABLE"  # 503


# Error code to HTTP status mapping
ERROR_CODE_TO_STATUS: dict[ApiErrorCode, int] = {
    ApiErrorCode.E_UNAUTHENTICATED: 401,
    ApiErrorCode.E_FORBIDDEN: 403,
    ApiErrorCode.E_NOT_FOUND: 404,
    ApiErrorCode.E_MANGA_NOT_FOUND: 404,
    ApiErrorCode.E_CHAPTER_NOT_FOUND: 404,
    ApiErrorCode.E_DRAFT_NOT_FOUND: 404,
    ApiErrorCode.E_JOB_NOT_FOUND: 404,
    ApiErrorCode.E_INVALID_REQUEST: 400,
    ApiErrorCode.E_INVALID_TOKEN: 400,
    ApiErrorCode.E_INVALID_DRAFT: 400,
    ApiErrorCode.E_INVALID_PAGE_ID: 400,
    ApiErrorCode.E_INVALID_PAGE_LIST: 400,
    ApiErrorCode.E_INVALID_IMAGE: 400,
    ApiErrorCode.E_FILE_TOO_LARGE: 400,
    ApiErrorCode.E_ALREADY_PROCESSING: 409,
    ApiErrorCode.E_CHAPTER_EXISTS: 409,
    ApiErrorCode.E_NOT_RETRYABLE: 409,
    ApiErrorCode.E_INTERNAL: 500,
    ApiErrorCode.E_UPLOAD_FAILED: 502,
    ApiErrorCode.E_STORAGE_ERROR: 502,
    ApiErrorCode.E_STORAGE_UNAVAILABLE: 503,
}


class ApiError(Exception):
    """Base exception for API errors.

    Attributes:
        code: The error code enum value
        message: Human-readable error message
        status_code: HTTP status code (derived from code)
    """

    def __init__(self, code: ApiErrorCode, message: str):
        self.code = code
        self.message = message
        self.status_code = ERROR_CODE_TO_STATUS.get(code, 500)
        super().__init__(message)


class NotFoundError(ApiError):
    """Resource not found error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_NOT_FOUND, message: str = "Not found"):
        super().__init__(code, message)


class ForbiddenError(ApiError):
    """Authorization failure error."""

    def __init__(self, code: ApiErrorCode = ApiErrorCode.E_FORBIDDEN, message: str = "Forbidden"):
        super().__init__(code, message)


class InvalidRequestError(ApiError):
    """Invalid request error (malformed token, page id, page list or image)."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_INVALID_REQUEST, message: str = "Invalid request"
    ):
        super().__init__(code, message)


class ConflictError(ApiError):
    """Request conflicts with current resource state."""

    def __init__(
        self,
        code: ApiErrorCode = ApiErrorCode.E_ALREADY_PROCESSING,
        message: str = "Chapter is already being processed, please wait",
    ):
        super().__init__(code, message)


class NotRetryableError(ApiError):
    """Retry requested on a record that is not failed or lacks retry data."""

    def __init__(self, message: str = "Chapter processing cannot be retried"):
        super().__init__(ApiErrorCode.E_NOT_RETRYABLE, message)


class StorageUnavailableError(ApiError):
    """No object storage backend is configured."""

    def __init__(self, message: str = "Object storage is not configured"):
        super().__init__(ApiErrorCode.E_STORAGE_UNAVAILABLE, message)


class UpstreamError(ApiError):
    """A collaborator (object store) call failed."""

    def __init__(
        self, code: ApiErrorCode = ApiErrorCode.E_STORAGE_ERROR, message: str = "Storage error"
    ):
        super().__init__(code, message)
