"""
Pydantic Schemas
================

Request/response schemas and the shared subscription record.
"""

from app.schemas.subscription import (
    ReceiptValidation,
    SubscriptionRecord,
    is_entitled_status,
)

__all__ = [
    "ReceiptValidation",
    "SubscriptionRecord",
    "is_entitled_status",
]
