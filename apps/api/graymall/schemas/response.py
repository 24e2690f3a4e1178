"""
Standardized API Response Schemas

Error Response:
{
    "success": false,
    "error": {
        "code": "insufficient_balance",
        "message": "The requested amount exceeds your withdrawable balance.",
        "details": { "withdrawable": 5000, "requested": 6000 }
    }
}

Ledger rejections use their lowercase reason code as ``code`` so clients
can branch on it directly; generic failures use the upper-case ErrorCodes.
"""

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class PaginationMeta(BaseModel):
    """Pagination metadata"""

    page: int = Field(ge=1, description="Current page number")
    limit: int = Field(ge=1, le=100, description="Items per page")
    total: int = Field(ge=0, description="Total number of items")
    total_pages: int = Field(ge=0, description="Total number of pages")
    has_next: bool = Field(description="Whether there are more pages")
    has_prev: bool = Field(description="Whether there are previous pages")

    @classmethod
    def create(cls, page: int, limit: int, total: int) -> "PaginationMeta":
        """Factory method to create pagination meta from params"""
        total_pages = (total + limit - 1) // limit if limit > 0 else 0
        return cls(
            page=page,
            limit=limit,
            total=total,
            total_pages=total_pages,
            has_next=page < total_pages,
            has_prev=page > 1,
        )


class ErrorDetail(BaseModel):
    """Error detail structure"""

    code: str = Field(description="Machine-readable error code")
    message: str = Field(description="Human-readable error message")
    details: Optional[Dict[str, Any]] = Field(
        default=None, description="Additional error details"
    )


class ErrorResponse(BaseModel):
    """Standard error response wrapper"""

    success: bool = False
    error: ErrorDetail


# Common error codes
class ErrorCodes:
    """Standard error codes for API responses"""

    # Authentication & Authorization
    UNAUTHORIZED = "UNAUTHORIZED"
    FORBIDDEN = "FORBIDDEN"

    # Validation
    VALIDATION_ERROR = "VALIDATION_ERROR"
    INVALID_INPUT = "INVALID_INPUT"

    # Resource errors
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"

    # Payment errors
    PAYMENT_ERROR = "PAYMENT_ERROR"
    PAYMENT_NOT_CONFIGURED = "PAYMENT_NOT_CONFIGURED"
    INVALID_SIGNATURE = "INVALID_SIGNATURE"

    # Server errors
    INTERNAL_ERROR = "INTERNAL_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    EXTERNAL_SERVICE_ERROR = "EXTERNAL_SERVICE_ERROR"
    WEBHOOK_PROCESSING_ERROR = "WEBHOOK_PROCESSING_ERROR"


def create_error_response(
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
) -> Dict[str, Any]:
    """Helper function to create error response dict"""
    return {
        "success": False,
        "error": {
            "code": code,
            "message": message,
            "details": details,
        },
    }


def create_paginated_response(
    data: List[Any],
    page: int,
    limit: int,
    total: int,
) -> Dict[str, Any]:
    """Helper function to create paginated response dict"""
    return {
        "success": True,
        "data": data,
        "meta": PaginationMeta.create(page, limit, total).model_dump(),
    }


# ===========================================
# Standardized Error Messages
# ===========================================

class ErrorMessages:
    """Standardized error messages for consistency across the API."""

    NOT_AUTHENTICATED = "Authentication required. Please log in."
    FORBIDDEN = "You don't have permission to perform this action."
    NOT_FOUND = "{resource} not found."
    CONFLICT = "Operation conflicts with current state."

    PAYMENT_FAILED = "Payment provider error. Please try again."
    PAYMENT_NOT_CONFIGURED = "Payment system not configured."
    INVALID_SIGNATURE = "Invalid webhook signature."
    EMPTY_PAYLOAD = "Empty webhook payload."

    INVALID_INPUT = "Invalid input provided."
    INTERNAL_ERROR = "An unexpected error occurred. Please try again."
    WEBHOOK_PROCESSING_ERROR = "Webhook processing error."


def api_error(
    status_code: int,
    code: str,
    message: str,
    details: Optional[Dict[str, Any]] = None,
    headers: Optional[Dict[str, str]] = None,
) -> None:
    """
    Raise an HTTPException with standardized error format.

    Example:
        from graymall.schemas.response import api_error, ErrorCodes, ErrorMessages

        api_error(404, ErrorCodes.NOT_FOUND, ErrorMessages.NOT_FOUND.format(resource="Article"))
    """
    from fastapi import HTTPException

    content = create_error_response(code, message, details)

    raise HTTPException(
        status_code=status_code,
        detail=content["error"],
        headers=headers,
    )
