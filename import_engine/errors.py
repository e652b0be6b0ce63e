"""
Error hierarchy for the import pipeline.

Every error carries a stable machine-readable ``code`` and the HTTP status the
request layer should answer with. ``to_dict`` is what gets rendered to
clients; ``details`` may contain internals (paths, offending values) and is
only included when the caller asks for it.
"""
from typing import Any, Dict, List, Optional


class ImportPipelineError(Exception):
    """Base class for all import pipeline failures."""

    code = "IMPORT_ERROR"
    http_status = 400

    def __init__(
        self,
        message: str,
        *,
        details: Optional[Dict[str, Any]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.cause = cause
        if cause is not None:
            self.__cause__ = cause

    def to_dict(self, include_details: bool = True) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if include_details and self.details:
            payload["details"] = self.details
        return payload

    def __str__(self) -> str:
        return f"[{self.code}] {self.message}"


# ==================== Configuration ====================

class ConfigurationError(ImportPipelineError):
    code = "CONFIG_ERROR"
    http_status = 500


class ConfigMissingError(ConfigurationError):
    code = "CONFIG_MISSING"


class ConfigMalformedError(ConfigurationError):
    code = "CONFIG_MALFORMED"


class SystemNotFoundError(ImportPipelineError):
    code = "SYSTEM_NOT_FOUND"
    http_status = 404

    def __init__(self, system_id: str, available: Optional[List[str]] = None):
        super().__init__(
            f"Unknown import system '{system_id}'",
            details={"system_id": system_id, "available": list(available or [])},
        )
        self.system_id = system_id


# ==================== File ingestion ====================

class FileParseError(ImportPipelineError):
    code = "FILE_PARSE_ERROR"


class UnsupportedFileFormatError(FileParseError):
    code = "UNSUPPORTED_FILE_FORMAT"
    http_status = 415


class EmptyFileError(FileParseError):
    code = "EMPTY_FILE"


class NoDataRowsError(FileParseError):
    code = "NO_DATA_ROWS"


class MissingRequiredColumnsError(ImportPipelineError):
    code = "MISSING_REQUIRED_COLUMNS"

    def __init__(self, missing: List[str]):
        super().__init__(
            f"Missing required columns: {', '.join(missing)}",
            details={"missing": list(missing)},
        )
        self.missing = list(missing)

    def to_dict(self, include_details: bool = True) -> Dict[str, Any]:
        # Missing column names are operator-facing, not internal detail
        payload = super().to_dict(include_details=False)
        payload["missing"] = list(self.missing)
        return payload


class InvalidMergeModeError(ImportPipelineError):
    code = "INVALID_MODE"


# ==================== Validation / commit ====================

class ValidationFailedError(ImportPipelineError):
    code = "VALIDATION_FAILED"
    http_status = 422

    def __init__(self, errors: List[Dict[str, Any]]):
        super().__init__(
            f"Import has {len(errors)} validation error(s); fix the file or commit "
            f"with skip_invalid to import only valid records",
        )
        self.errors = list(errors)

    def to_dict(self, include_details: bool = True) -> Dict[str, Any]:
        payload = super().to_dict(include_details=False)
        payload["errors"] = list(self.errors)
        return payload


class ReassignmentConflictError(ImportPipelineError):
    code = "REASSIGNMENT_CONFLICT"
    http_status = 409

    def __init__(self, reassignments: List[Dict[str, Any]]):
        super().__init__(
            f"{len(reassignments)} patient(s) would be reassigned to a different owner; "
            f"confirm the reassignment to continue",
        )
        self.reassignments = list(reassignments)

    def to_dict(self, include_details: bool = True) -> Dict[str, Any]:
        payload = super().to_dict(include_details=False)
        payload["reassignments"] = list(self.reassignments)
        return payload


# ==================== Preview cache ====================

class PreviewNotFoundError(ImportPipelineError):
    code = "PREVIEW_NOT_FOUND"
    http_status = 404

    def __init__(self, preview_id: str):
        super().__init__(f"Preview '{preview_id}' not found")
        self.preview_id = preview_id


class PreviewExpiredError(ImportPipelineError):
    code = "PREVIEW_EXPIRED"
    http_status = 410

    def __init__(self, preview_id: str):
        super().__init__(f"Preview '{preview_id}' has expired; upload the file again")
        self.preview_id = preview_id
