# backend/autocrop/errors.py
from typing import Optional


class CropServiceError(Exception):
    """Base class for every failure the service reports to callers."""


class ValidationError(CropServiceError):
    """Input is missing or malformed (no source reference, bad file type...)."""


class DecodeError(CropServiceError):
    pass


class EncodeError(CropServiceError):
    pass


class FetchError(CropServiceError):
    """Remote source unreachable or answered with a non-2xx status.

    status_code is None for network level failures.
    """

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class StorageError(CropServiceError):
    pass


class NotFoundError(CropServiceError):
    pass
