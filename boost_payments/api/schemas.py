"""
Pydantic schemas for API request/response models.
"""
from typing import Any, Dict, Optional

from pydantic import BaseModel, Field, field_validator


class CreateBoostOrderRequest(BaseModel):
    """Request schema for creating a boost order."""

    product_id: int = Field(..., gt=0, description="Product to boost")
    package_id: int = Field(..., gt=0, description="Boost package ID")
    email: Optional[str] = Field(default=None, description="Email the bill is issued to")
    name: Optional[str] = Field(default=None, max_length=255, description="Payer name")
    idempotency_key: Optional[str] = Field(
        default=None,
        min_length=1,
        max_length=255,
        description="Client idempotency key (the Idempotency-Key header takes precedence)",
    )

    @field_validator("email")
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        """Basic shape check; the gateway performs the real validation."""
        if v is not None and "@" not in v:
            raise ValueError("Invalid email address")
        return v

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "product_id": 146,
                    "package_id": 2,
                    "email": "seller@example.com",
                    "name": "Aina",
                }
            ]
        }
    }


class BoostOrderData(BaseModel):
    """Created boost order."""

    payment_id: int = Field(..., description="Payment record ID")
    order_id: str = Field(..., description="Order reference sent to the gateway")
    amount: int = Field(..., description="Amount in sen")
    status: str = Field(..., description="Payment status")
    product_id: int = Field(..., description="Boosted product")
    package_id: int = Field(..., description="Boost package")
    transaction_id: str = Field(..., description="Transaction that created the order")
    bill_id: Optional[str] = Field(default=None, description="Gateway bill ID")
    bill_url: Optional[str] = Field(default=None, description="URL where the payer pays")


class BoostOrderResponse(BaseModel):
    """Response schema for boost order creation."""

    success: bool = True
    data: BoostOrderData


class NotificationResponse(BaseModel):
    """Response schema for gateway notifications."""

    success: bool = True
    data: Dict[str, Any]


class HealthCheckResponse(BaseModel):
    """Response schema for health checks."""

    status: str = Field(..., description="Overall health status")
    checks: Dict[str, Any] = Field(default_factory=dict, description="Per-dependency results")
