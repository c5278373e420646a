from __future__ import annotations

from typing import Any


class CRMError(Exception):
    """Base class for custom-field domain failures surfaced to API callers."""

    status_code = 400
    code = "crm_error"

    def __init__(self, message: str, details: Any = None) -> None:
        self.message = message
        self.details = details if details is not None else message
        super().__init__(message)


class NotFoundError(CRMError):
    """Raised when a referenced field, section or record id does not exist."""

    status_code = 404
    code = "not_found"


class ValidationError(CRMError):
    """Raised for missing or malformed input; ``details`` carries field-level info."""

    status_code = 422
    code = "validation_error"


class ImportFileTooLargeError(ValidationError):
    status_code = 413
    code = "import_file_too_large"

    def __init__(self, size_bytes: int, max_bytes: int) -> None:
        self.size_bytes = size_bytes
        self.max_bytes = max_bytes
        super().__init__(
            f"import file is {size_bytes} bytes, limit is {max_bytes} bytes",
            details={"size_bytes": size_bytes, "max_bytes": max_bytes},
        )


class SystemFieldProtectedError(CRMError):
    """Raised when deleting a seeded system field."""

    status_code = 409
    code = "system_field_protected"

    def __init__(self, field_id: int, name: str) -> None:
        self.field_id = field_id
        self.name = name
        super().__init__(f"system field '{name}' cannot be deleted", details={"field_id": field_id, "name": name})


class UniqueConstraintViolationError(CRMError):
    status_code = 409
    code = "unique_constraint_violation"
