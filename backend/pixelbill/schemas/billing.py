"""Pydantic schemas for the billing API"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional


class CheckoutRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    price_id: str = Field(alias="priceId", min_length=1)


class RedirectResponse(BaseModel):
    url: str


class DashboardView(BaseModel):
    user_id: int = Field(serialization_alias="userId")
    credits: int
    plan: str


class RefreshResponse(DashboardView):
    success: bool = True
    refreshed: bool = True


class ConsumeCreditsRequest(BaseModel):
    amount: int = Field(default=1, ge=1)
    reason: Optional[str] = None
