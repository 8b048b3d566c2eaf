"""
errors.py — The error taxonomy.

Every failure the pipeline can report is one of the classes below. Each
carries a human-readable message, a machine-readable `reason` code, an
HTTP-ish status code and a `details` dict that always includes a
`suggestion`. Callers render differentiated guidance from `reason`
("remove the password" vs "upload a smaller file") without parsing the
message text.

Loaders and the extraction adapter raise these directly; nothing below the
HTTP/CLI layer catches a TenderBOQError except to log and re-raise.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Optional


class TenderBOQError(Exception):
    """Base class. Never raised directly."""

    def __init__(
        self,
        message: str,
        status_code: int,
        reason: str,
        details: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.reason = reason
        self.details = details or {}

    @property
    def suggestion(self) -> Optional[str]:
        return self.details.get("suggestion")

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"message": self.message, "reason": self.reason}
        if self.details:
            payload["details"] = self.details
        return payload


# ── Intake errors ─────────────────────────────────────────────────────────


class UnsupportedFileTypeError(TenderBOQError):
    def __init__(self, file_type: str, supported_types: List[str]):
        super().__init__(
            f"File type '{file_type}' is not supported",
            400,
            "UNSUPPORTED_FILE_TYPE",
            {
                "fileType": file_type,
                "supportedTypes": list(supported_types),
                "suggestion": (
                    "Please upload one of the supported file types: "
                    f"{', '.join(supported_types)}"
                ),
            },
        )


class FileSizeLimitError(TenderBOQError):
    def __init__(self, file_size: int, max_size: int):
        file_mb = f"{file_size / (1024 * 1024):.2f}"
        max_mb = f"{max_size / (1024 * 1024):.2f}"
        super().__init__(
            f"File size {file_mb}MB exceeds the maximum limit of {max_mb}MB",
            413,
            "FILE_SIZE_LIMIT_EXCEEDED",
            {
                "fileSize": file_size,
                "maxSize": max_size,
                "suggestion": f"Please upload a file smaller than {max_mb}MB",
            },
        )


class NoFileUploadedError(TenderBOQError):
    def __init__(self):
        super().__init__(
            "No file was uploaded",
            400,
            "NO_FILE_UPLOADED",
            {"suggestion": "Please select a file to upload"},
        )


# ── Loader errors ─────────────────────────────────────────────────────────


class EmptyFileError(TenderBOQError):
    """The loader produced zero usable content."""

    def __init__(self, file_type: str, details: Optional[str] = None):
        payload: Dict[str, Any] = {"fileType": file_type}
        if details:
            payload["details"] = details
        payload["suggestion"] = "Please ensure the file contains data and try again"
        super().__init__(
            f"The {file_type} file is empty or contains no extractable data",
            400,
            "EMPTY_FILE",
            payload,
        )


class CorruptFileError(TenderBOQError):
    """Structural damage: the bytes are not a readable file of this type."""

    def __init__(
        self,
        file_type: str,
        details: Optional[str] = None,
        message: Optional[str] = None,
        reason: str = "CORRUPT_FILE",
        suggestion: str = "Please ensure the file is not corrupted and try again",
    ):
        payload: Dict[str, Any] = {"fileType": file_type}
        if details:
            payload["details"] = details
        payload["suggestion"] = suggestion
        super().__init__(
            message or f"The {file_type} file appears to be corrupted or malformed",
            400,
            reason,
            payload,
        )


class PasswordProtectedFileError(CorruptFileError):
    """
    Encrypted input. A subtype of CorruptFileError so callers that only
    care about "unreadable" can catch one class, but with its own reason
    code so the UI can tell the user to remove the password.
    """

    def __init__(self, file_type: str):
        super().__init__(
            file_type,
            details=f"The {file_type} file is encrypted or password-protected",
            message=f"Cannot process password-protected {file_type} files",
            reason="PASSWORD_PROTECTED_FILE",
            suggestion="Please remove the password protection and try again",
        )


class ParsingError(TenderBOQError):
    """Anything a loader could not classify more precisely."""

    def __init__(
        self,
        file_type: str,
        error_details: str,
        suggestion: str = "There was an error processing the file. Please try again",
    ):
        super().__init__(
            f"Failed to parse {file_type} file",
            500,
            "PARSING_ERROR",
            {
                "fileType": file_type,
                "errorDetails": error_details,
                "suggestion": suggestion,
            },
        )


# ── AI extraction errors ──────────────────────────────────────────────────


class AIFailureKind(str, Enum):
    AUTHENTICATION = "authentication"
    RATE_LIMIT = "rate_limit"
    NETWORK = "network"
    SCHEMA = "schema"
    GENERIC = "generic"


# kind -> (status, reason, message, suggestion)
_AI_FAILURES = {
    AIFailureKind.AUTHENTICATION: (
        502,
        "AI_AUTHENTICATION_FAILED",
        "The AI service rejected the configured credentials",
        "Check that OPENAI_API_KEY is set to a valid key",
    ),
    AIFailureKind.RATE_LIMIT: (
        429,
        "AI_RATE_LIMITED",
        "The AI service rate limit or quota was exceeded",
        "Wait a minute and try again, or check the account's usage quota",
    ),
    AIFailureKind.NETWORK: (
        503,
        "AI_SERVICE_UNAVAILABLE",
        "Could not reach the AI service",
        "Check network connectivity and try again; a smaller file also shortens the request",
    ),
    AIFailureKind.SCHEMA: (
        502,
        "AI_RESPONSE_INVALID",
        "The AI service returned data that does not match the BOQ schema",
        "Try again, or add extraction instructions describing the document layout",
    ),
    AIFailureKind.GENERIC: (
        500,
        "AI_EXTRACTION_FAILED",
        "AI extraction failed",
        "The AI service encountered an error. Please try again or contact support",
    ),
}


class AIExtractionError(TenderBOQError):
    """The extraction adapter failed. `kind` is a best-effort classification."""

    def __init__(
        self,
        kind: AIFailureKind,
        error_details: Optional[str] = None,
        extra: Optional[Dict[str, Any]] = None,
    ):
        status_code, reason, message, suggestion = _AI_FAILURES[kind]
        payload: Dict[str, Any] = {"failureType": kind.value}
        if error_details:
            payload["errorDetails"] = error_details
        if extra:
            payload.update(extra)
        payload["suggestion"] = suggestion
        super().__init__(message, status_code, reason, payload)
        self.kind = kind


# ── Review / request errors ───────────────────────────────────────────────


class ResourceNotFoundError(TenderBOQError):
    def __init__(self, resource_type: str, resource_id: str):
        super().__init__(
            f"{resource_type} with ID '{resource_id}' not found",
            404,
            "RESOURCE_NOT_FOUND",
            {
                "resourceType": resource_type,
                "resourceId": resource_id,
                "suggestion": f"Check the {resource_type.lower()} ID and try again",
            },
        )


class InputValidationError(TenderBOQError):
    """Malformed caller input, e.g. a missing or invalid items array."""

    def __init__(self, message: str, errors: Optional[List[Any]] = None):
        payload: Dict[str, Any] = {}
        if errors:
            payload["errors"] = errors
        payload["suggestion"] = "Correct the request payload and try again"
        super().__init__(message, 400, "VALIDATION_ERROR", payload)


class InvalidStateTransitionError(TenderBOQError):
    def __init__(self, tender_id: str, current_status: str, action: str):
        super().__init__(
            f"Cannot {action} tender '{tender_id}' in status '{current_status}'",
            409,
            "INVALID_STATE_TRANSITION",
            {
                "tenderId": tender_id,
                "currentStatus": current_status,
                "action": action,
                "suggestion": "Only tenders pending review can be approved or rejected",
            },
        )
