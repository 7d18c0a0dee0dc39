"""
Records served by the gateway's user and merchant surfaces.
"""

from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(BaseModel):
    """Gateway account, scoped to one tenant."""

    id: Optional[int] = None
    username: str
    email: str
    tenant_id: str
    status: str = "active"
    roles: List[str] = Field(default_factory=lambda: ["user"])
    created_at: datetime = Field(default_factory=_utcnow)
    last_login: Optional[datetime] = None


class Shop(BaseModel):
    id: Optional[int] = None
    merchant_id: int
    tenant_id: str
    name: str
    status: str = "open"


class Product(BaseModel):
    id: Optional[int] = None
    merchant_id: int
    shop_id: Optional[int] = None
    tenant_id: str
    name: str
    price: float
    stock: int = 0
    updated_at: datetime = Field(default_factory=_utcnow)


class RegisterConfig(BaseModel):
    """Sign-up requirements shown to new users."""

    id: Optional[int] = None
    real_name_verification: bool = False
    real_name_required: bool = False
    phone_verification: bool = False
    phone_required: bool = False
    captcha_type: str = "none"
    updated_at: datetime = Field(default_factory=_utcnow)
