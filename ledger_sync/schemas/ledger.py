from datetime import date
from decimal import Decimal
from typing import Optional
from pydantic import BaseModel


class Balance(BaseModel):
    amount: Decimal
    currency: Optional[str] = None


class SourceAccount(BaseModel):
    """Account snapshot as exported by the ledger source."""
    id: str
    account_number: Optional[str] = None
    name: str
    balance: Optional[Balance] = None

    class Config:
        frozen = True


class SourceTransaction(BaseModel):
    """
    Transaction snapshot as exported by the ledger source.

    Fields are optional on purpose: the ledger occasionally exports
    damaged rows, which the reconciler rejects with a descriptive error
    instead of failing deep inside validation.
    """
    id: Optional[str] = None
    account_id: Optional[str] = None
    amount: Optional[Decimal] = None
    booked: bool = True
    value_date: Optional[date] = None
    booking_date: Optional[date] = None
    name: Optional[str] = None
    purpose: Optional[str] = None
    comment: Optional[str] = None

    class Config:
        frozen = True
