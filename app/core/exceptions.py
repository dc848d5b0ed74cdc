from typing import Optional

from fastapi import status


class ServiceError(Exception):
    """Base exception for service layer errors."""

    def __init__(self, message: str, status_code: int = status.HTTP_500_INTERNAL_SERVER_ERROR) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ImportFileError(ServiceError):
    """Uploaded workbook cannot be read at all (wrong type, empty, corrupt)."""

    def __init__(self, message: str) -> None:
        super().__init__(message, status.HTTP_400_BAD_REQUEST)


class SchoolApiError(ServiceError):
    """Non-OK or unreadable response from the school system API."""

    def __init__(self, message: str, status_code: int = status.HTTP_502_BAD_GATEWAY, upstream_status: Optional[int] = None) -> None:
        super().__init__(message, status_code)
        self.upstream_status = upstream_status

    @property
    def is_duplicate(self) -> bool:
        if self.upstream_status == status.HTTP_409_CONFLICT:
            return True
        return "already exist" in self.message.lower()
