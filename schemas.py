from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from models import AccountType, RecurringInterval, TransactionType


class UserIdentity(BaseModel):
    external_id: str = Field(..., min_length=1, max_length=120)
    email: str = Field(..., min_length=3, max_length=255)
    name: Optional[str] = Field(default=None, max_length=200)
    image_url: Optional[str] = None


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    type: AccountType
    balance_cents: int = 0
    is_default: bool = False


class TransactionIn(BaseModel):
    type: TransactionType
    amount_cents: int = Field(..., gt=0)
    description: Optional[str] = Field(default=None, max_length=500)
    date: datetime
    account_id: int
    category: str = Field(..., min_length=1, max_length=100)
    receipt_url: Optional[str] = None
    is_recurring: bool = False
    recurring_interval: Optional[RecurringInterval] = None

    @model_validator(mode="after")
    def _interval_required_when_recurring(self) -> "TransactionIn":
        if self.is_recurring and self.recurring_interval is None:
            raise ValueError(
                "Recurring interval is required for recurring transactions"
            )
        if not self.is_recurring:
            self.recurring_interval = None
        return self


class BulkDeleteIn(BaseModel):
    transaction_ids: list[int] = Field(..., min_length=1)


class BudgetIn(BaseModel):
    amount_cents: int = Field(..., ge=0)


class RecurringTaskPayload(BaseModel):
    model_config = ConfigDict(extra="ignore")

    transaction_id: int
    user_id: int


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    type: AccountType
    balance_cents: int
    is_default: bool
    transaction_count: int = 0


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    type: TransactionType
    amount_cents: int
    description: Optional[str]
    date: datetime
    category: str
    receipt_url: Optional[str]
    is_recurring: bool
    recurring_interval: Optional[RecurringInterval]
    next_recurring_date: Optional[datetime]
    last_processed: Optional[datetime]


class BudgetOut(BaseModel):
    budget_id: Optional[int]
    amount_cents: Optional[int]
    current_expenses_cents: int
    percentage_used: float
