"""Error taxonomy for the date selection and deposit checkout flow."""

from __future__ import annotations

from fastapi import status


class TripDateSelectionError(Exception):
    """Base class; every subclass maps to one HTTP status."""

    status_code: int = status.HTTP_400_BAD_REQUEST

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class AuthError(TripDateSelectionError):
    status_code = status.HTTP_401_UNAUTHORIZED


class ForbiddenError(AuthError):
    status_code = status.HTTP_403_FORBIDDEN


class NotFoundError(TripDateSelectionError):
    status_code = status.HTTP_404_NOT_FOUND


class ValidationError(TripDateSelectionError):
    status_code = status.HTTP_400_BAD_REQUEST


class ExpiredTokenError(TripDateSelectionError):
    status_code = status.HTTP_410_GONE


class ConflictError(TripDateSelectionError):
    status_code = status.HTTP_409_CONFLICT


class RuleMissingError(TripDateSelectionError):
    status_code = status.HTTP_400_BAD_REQUEST


class InvalidDepositError(TripDateSelectionError):
    status_code = status.HTTP_400_BAD_REQUEST


class ExternalServiceError(TripDateSelectionError):
    status_code = status.HTTP_502_BAD_GATEWAY


class ConfigurationError(TripDateSelectionError):
    status_code = status.HTTP_500_INTERNAL_SERVER_ERROR


__all__ = [
    "AuthError",
    "ConfigurationError",
    "ConflictError",
    "ExpiredTokenError",
    "ExternalServiceError",
    "ForbiddenError",
    "InvalidDepositError",
    "NotFoundError",
    "RuleMissingError",
    "TripDateSelectionError",
    "ValidationError",
]
