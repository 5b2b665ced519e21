from typing import Dict, List, Optional


class LibraryError(Exception):
    """Base class for errors the service reports to its callers."""

    status_code = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"message": self.message}


class ValidationError(LibraryError):
    """Input rejected with field-level messages."""

    status_code = 422

    def __init__(self, errors: Dict[str, List[str]], message: str = "Validation failed.") -> None:
        super().__init__(message)
        self.errors = errors

    @classmethod
    def single(cls, field: str, message: str) -> "ValidationError":
        return cls({field: [message]}, message)

    def to_dict(self) -> dict:
        return {"message": self.message, "errors": self.errors}


class NotFoundError(LibraryError):
    status_code = 404

    def __init__(self, resource: str, resource_id: Optional[int] = None) -> None:
        super().__init__(f"{resource} not found.")
        self.resource = resource
        self.resource_id = resource_id


class ConflictError(LibraryError):
    """A business rule refused the operation (unavailable copy, limit reached...)."""

    status_code = 409


class AuthenticationError(LibraryError):
    status_code = 401


class PermissionDeniedError(LibraryError):
    status_code = 403
