from datetime import datetime

from beanie import Document, Indexed
from pydantic import BaseModel, Field


class LastPurchase(BaseModel):
    amount: int
    date: datetime = Field(default_factory=datetime.utcnow)
    reason: str = ""


class CreditAccount(BaseModel):
    """Embedded credit counters. Mutated only with atomic $inc updates (see services.credits)."""
    balance: int = 0
    total_purchased: int = 0
    total_used: int = 0  # debits minus refunds
    last_purchase: LastPurchase | None = None


class User(Document):
    email: Indexed(str, unique=True)
    name: str = ""
    role: str = "user"  # "user" | "admin"
    credits: CreditAccount = Field(default_factory=CreditAccount)
    session_version: int = 0
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    class Settings:
        name = "users"
