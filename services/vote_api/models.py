"""Pydantic models for request/response validation."""
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator


class PurchaseRequest(BaseModel):
    """Vote purchase request model."""

    contestant_id: str = Field(..., description="Contestant receiving the votes")
    email: str = Field(..., description="Purchaser email, receives the payment receipt")
    vote_count: int = Field(..., description="Number of votes to buy")

    @field_validator("contestant_id")
    @classmethod
    def validate_contestant_id(cls, v):
        """Validate contestant_id is not empty."""
        if not v or not v.strip():
            raise ValueError("Contestant ID cannot be empty")
        return v.strip()

    @field_validator("email")
    @classmethod
    def strip_email(cls, v):
        # Format is checked with the rest of the payment intent
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {
                "contestant_id": "3f2b9c1e8d4a4f5b9e0c7a6d5b4c3a21",
                "email": "fan@example.com",
                "vote_count": 5
            }
        }


class PurchaseResponse(BaseModel):
    """Returned once the ledger entry is pending and checkout is open."""

    reference: str = Field(..., description="Transaction reference")
    status: str = Field(..., description="Ledger entry status")
    contestant_id: str
    contestant_name: str
    vote_count: int
    amount: int = Field(..., description="Charge in the smallest currency unit")
    formatted_amount: str
    currency: str
    authorization_url: Optional[str] = Field(default=None, description="Hosted checkout URL")
    access_code: Optional[str] = None
    public_key: Optional[str] = Field(default=None, description="Key for the inline checkout widget")

    class Config:
        json_schema_extra = {
            "example": {
                "reference": "VOTE_1718000000000_K3J9Q2ZP7XWA",
                "status": "pending",
                "contestant_id": "3f2b9c1e8d4a4f5b9e0c7a6d5b4c3a21",
                "contestant_name": "Adaeze Okafor",
                "vote_count": 5,
                "amount": 50000,
                "formatted_amount": "₦500.00",
                "currency": "NGN",
                "authorization_url": "https://checkout.paystack.com/abc123",
                "access_code": "abc123",
                "public_key": "pk_test_xxx"
            }
        }


class PriceQuote(BaseModel):
    vote_count: int
    price_per_vote: int
    amount: int
    formatted_amount: str
    currency: str


class ContestantResponse(BaseModel):
    """Contestant with its tally and, in standings, its placing."""

    id: str
    name: str
    bio: str = ""
    category: str = ""
    location: str = ""
    age: Optional[int] = None
    image_url: str = ""
    vote_count: int
    evicted: bool
    rank: Optional[int] = Field(default=None, description="Position among active contestants")
    badge: Optional[Literal["gold", "silver", "bronze"]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class StandingsResponse(BaseModel):
    """Ranking view: active contestants by votes, then evicted ones."""

    contestants: List[ContestantResponse]
    total_votes: int
    active_count: int
    evicted_count: int

    class Config:
        json_schema_extra = {
            "example": {
                "contestants": [
                    {"id": "a1", "name": "Adaeze Okafor", "vote_count": 50, "evicted": False, "rank": 1, "badge": "gold"},
                    {"id": "c3", "name": "Chidi Eze", "vote_count": 30, "evicted": False, "rank": 2, "badge": "silver"},
                    {"id": "b2", "name": "Bola Ade", "vote_count": 80, "evicted": True, "rank": None, "badge": None}
                ],
                "total_votes": 160,
                "active_count": 2,
                "evicted_count": 1
            }
        }


class TransactionResponse(BaseModel):
    """Ledger entry as exposed over HTTP."""

    reference: str
    contestant_id: str
    contestant_name: str
    vote_count: int
    amount: int
    status: Literal["pending", "completed", "failed"]
    provider_reference: Optional[str] = None
    created_at: str
    settled_at: Optional[str] = None


class SettlementResponse(BaseModel):
    """Outcome of a payment callback."""

    reference: str
    status: Literal["pending", "completed", "failed"]
    message: str
    contestant_id: Optional[str] = None
    vote_count: Optional[int] = Field(default=None, description="Contestant tally after the credit")


class ContestantCreate(BaseModel):
    """Administrative contestant creation."""

    name: str
    bio: str = ""
    category: str = ""
    location: str = ""
    age: Optional[int] = Field(default=None, ge=0)
    image_url: str = ""

    @field_validator("name")
    @classmethod
    def validate_name(cls, v):
        if not v or not v.strip():
            raise ValueError("Name cannot be empty")
        return v.strip()

    class Config:
        json_schema_extra = {
            "example": {
                "name": "Adaeze Okafor",
                "bio": "Singer and songwriter",
                "category": "Music",
                "location": "Lagos",
                "age": 24,
                "image_url": "https://example.com/adaeze.jpg"
            }
        }


class EvictionUpdate(BaseModel):
    evicted: bool


class HealthResponse(BaseModel):
    """Health check response model."""

    status: Literal["healthy", "unhealthy"] = Field(..., description="Overall health status")
    services: dict = Field(..., description="Status of individual services")
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc), description="Health check timestamp")

    class Config:
        json_schema_extra = {
            "example": {
                "status": "healthy",
                "services": {
                    "store": "connected",
                    "payments": "available"
                },
                "timestamp": "2024-01-15T10:30:00"
            }
        }


class ErrorResponse(BaseModel):
    """Error response model."""

    error: str = Field(..., description="Error type")
    message: str = Field(..., description="Error message")
    details: dict = Field(default_factory=dict, description="Additional error details")

    class Config:
        json_schema_extra = {
            "example": {
                "error": "invalid_payment_intent",
                "message": "Invalid email format; Amount must be greater than 0",
                "details": {"errors": ["Invalid email format", "Amount must be greater than 0"]}
            }
        }


class ContestantDrift(BaseModel):
    contestant_id: str
    name: str
    tally: int
    ledger_votes: int
    difference: int


class ReconciliationReport(BaseModel):
    """Stale pending entries and tally/ledger drift."""

    stale_pending: List[TransactionResponse]
    drift: List[ContestantDrift]
    checked_contestants: int
    generated_at: str
