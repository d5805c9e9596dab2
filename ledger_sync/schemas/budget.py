from datetime import date
from typing import Any, List, Optional
from pydantic import BaseModel, Field, field_validator


class DestinationAccount(BaseModel):
    id: str
    name: str
    type: Optional[str] = None  # checking, savings, credit, ... passthrough only
    closed: bool = False

    class Config:
        frozen = True
        extra = "ignore"


class DestinationTransaction(BaseModel):
    """Transaction format for the budget service (amount in minor units)."""
    id: Optional[str] = None
    date: date
    amount: int  # 100 = 1.00
    imported_id: Optional[str] = None  # For duplicate detection
    imported_payee: Optional[str] = None
    payee_name: Optional[str] = None
    cleared: Optional[bool] = None
    notes: Optional[str] = None

    class Config:
        extra = "ignore"

    def to_payload(self) -> dict:
        """Serialise for the SDK, omitting unset fields such as ``cleared``."""
        return self.model_dump(mode="json", exclude_none=True)


class ImportRecordError(BaseModel):
    message: str

    class Config:
        extra = "ignore"


class ImportResult(BaseModel):
    """Result of a budget service import operation."""
    added: List[Any] = Field(default_factory=list)
    updated: List[Any] = Field(default_factory=list)
    errors: List[ImportRecordError] = Field(default_factory=list)

    @field_validator("added", "updated", "errors", mode="before")
    @classmethod
    def drop_empty(cls, value):
        if value is None:
            return []
        return [
            {"message": item} if isinstance(item, str) else item
            for item in value
            if item
        ]


class BudgetMetadata(BaseModel):
    """The ``metadata.json`` the budget SDK keeps in each local budget directory."""
    id: str
    group_id: Optional[str] = Field(default=None, alias="groupId")
    budget_name: Optional[str] = Field(default=None, alias="budgetName")

    class Config:
        populate_by_name = True
        extra = "ignore"
