from __future__ import annotations

import logging
from collections.abc import Mapping, Sequence
from typing import Any

from django.db import InterfaceError, OperationalError
from rest_framework import status
from rest_framework.exceptions import (
    APIException,
    AuthenticationFailed,
    MethodNotAllowed,
    NotAuthenticated,
    NotFound,
    NotAcceptable,
    ParseError,
    PermissionDenied,
    Throttled,
    UnsupportedMediaType,
    ValidationError,
)
from rest_framework.response import Response
from rest_framework.views import exception_handler as drf_exception_handler

logger = logging.getLogger(__name__)

GENERIC_SERVER_ERROR_MESSAGE = "An unexpected error occurred."


class LedgerError(APIException):
    """Base class for caller-correctable ledger failures.

    Subclasses carry a stable ``default_code`` that becomes the envelope
    ``code``. Extra keyword arguments are exposed as attributes and rendered
    under ``errors``.
    """

    status_code = status.HTTP_400_BAD_REQUEST
    default_detail = "Request failed."
    default_code = "ledger_error"

    def __init__(self, detail=None, **context):
        self.context = context
        for key, value in context.items():
            setattr(self, key, value)
        message = detail or self.default_detail
        payload = {"detail": message}
        payload.update({key: value for key, value in context.items() if value is not None})
        super().__init__(detail=message, code=self.default_code)
        if len(payload) > 1:
            # Context values keep their JSON types in the error envelope.
            payload["detail"] = self.detail
            self.detail = payload
        self.message = str(message)

    def __str__(self):
        return self.message


class InvalidQuantity(LedgerError):
    default_detail = "Quantity must be a positive whole number."
    default_code = "invalid_quantity"


class InvalidLRNumber(LedgerError):
    default_detail = "LR number must be a non-empty string."
    default_code = "invalid_lr_number"


class UnknownEmployee(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Employee is not in the directory."
    default_code = "unknown_employee"


class UnknownItem(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Stock item does not exist."
    default_code = "unknown_item"


class LineNotFound(LedgerError):
    status_code = status.HTTP_404_NOT_FOUND
    default_detail = "Employee has no allocation line on this assignment."
    default_code = "line_not_found"


class InsufficientStock(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Not enough stock for this allocation."
    default_code = "insufficient_stock"


class PurposeNotDispatchable(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Only project/marketing assignments can be sent to the vendor."
    default_code = "purpose_not_dispatchable"


class LRMissing(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "LR number must be set before proof of delivery is sent."
    default_code = "lr_missing"


class LRAlreadyAssigned(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "A different LR number is already recorded for this assignment."
    default_code = "lr_already_assigned"


class UsageExceedsAvailable(LedgerError):
    status_code = status.HTTP_409_CONFLICT
    default_detail = "Usage exceeds the quantity available on this allocation."
    default_code = "usage_exceeds_available"


class StorageUnavailable(APIException):
    status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    default_detail = "Storage is temporarily unavailable."
    default_code = "storage_unavailable"


EXCEPTION_CODE_MAP: dict[type[Exception], str] = {
    ValidationError: "validation_error",
    NotAuthenticated: "not_authenticated",
    AuthenticationFailed: "authentication_failed",
    PermissionDenied: "permission_denied",
    NotFound: "not_found",
    MethodNotAllowed: "method_not_allowed",
    NotAcceptable: "not_acceptable",
    UnsupportedMediaType: "unsupported_media_type",
    ParseError: "parse_error",
    Throttled: "throttled",
}


def build_error_envelope(
    *,
    code: str,
    message: str,
    errors: Any,
    status_code: int,
) -> dict[str, Any]:
    return {
        "code": code,
        "message": message,
        "errors": errors,
        "status": status_code,
    }


def error_response(
    *,
    code: str,
    message: str,
    errors: Any = None,
    status_code: int = status.HTTP_400_BAD_REQUEST,
) -> Response:
    return Response(
        build_error_envelope(
            code=code,
            message=message,
            errors=errors,
            status_code=status_code,
        ),
        status=status_code,
    )


def custom_exception_handler(exc: Exception, context: dict[str, Any]) -> Response:
    if isinstance(exc, (OperationalError, InterfaceError)):
        view_name = context.get("view").__class__.__name__ if context.get("view") else "unknown"
        logger.warning("storage_unavailable in %s: %s", view_name, exc)
        exc = StorageUnavailable()

    response = drf_exception_handler(exc, context)

    if response is None:
        view_name = context.get("view").__class__.__name__ if context.get("view") else "unknown"
        logger.exception("Unhandled API exception in %s", view_name)
        return error_response(
            code="internal_server_error",
            message=GENERIC_SERVER_ERROR_MESSAGE,
            errors=None,
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        )

    status_code = response.status_code
    errors = _normalize_errors(response.data)
    message = _build_message(exc, response.data)
    code = _build_code(exc)

    response.data = build_error_envelope(
        code=code,
        message=message,
        errors=errors,
        status_code=status_code,
    )
    return response


def _build_code(exc: Exception) -> str:
    for exception_type, stable_code in EXCEPTION_CODE_MAP.items():
        if isinstance(exc, exception_type):
            return stable_code

    if isinstance(exc, APIException):
        return str(getattr(exc, "default_code", "api_error"))

    return "internal_server_error"


def _build_message(exc: Exception, data: Any) -> str:
    if isinstance(exc, ValidationError):
        return "Validation failed."

    detail = None
    if isinstance(data, Mapping):
        detail = data.get("detail")
    elif isinstance(data, str):
        detail = data

    if detail:
        return str(detail)

    if isinstance(exc, Throttled):
        return "Request was throttled."

    if isinstance(exc, APIException):
        return str(getattr(exc, "detail", "Request failed."))

    return GENERIC_SERVER_ERROR_MESSAGE


def _normalize_errors(data: Any) -> Any:
    if isinstance(data, Mapping):
        if set(data.keys()) == {"detail"}:
            return None
        return {key: value for key, value in data.items() if key != "detail"}

    if isinstance(data, Sequence) and not isinstance(data, str):
        return data

    return None
