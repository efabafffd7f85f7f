"""
Domain models for settlement records kept in the record store.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field


class TransactionStatus(str, Enum):
    """Settlement lifecycle of a transaction."""

    PENDING = "pending"
    HELD_IN_ESCROW = "held_in_escrow"
    RELEASED = "released"
    FAILED = "failed"


class ProjectStatus(str, Enum):
    OPEN = "open"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"


class TransactionRecord(BaseModel):
    """Represents a row of the ``transactions`` table."""

    id: str = Field(..., description="Store-issued transaction identifier.")
    status: TransactionStatus = TransactionStatus.PENDING
    project_id: Optional[str] = None
    amount: Optional[int] = None
    payment_intent_id: Optional[str] = Field(
        None, description="Charge correlation id used for escrow confirmation."
    )
    mpesa_conversation_id: Optional[str] = Field(
        None, description="B2C ConversationID returned when the payout was accepted."
    )
    mpesa_transaction_id: Optional[str] = None
    b2c_result_code: Optional[str] = None
    b2c_result_description: Optional[str] = None
    escrowed_at: Optional[datetime] = None
    released_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ProjectRecord(BaseModel):
    """Represents a row of the ``projects`` table."""

    id: str
    status: str = ProjectStatus.OPEN.value
    created_at: datetime
    updated_at: datetime


__all__ = [
    "ProjectRecord",
    "ProjectStatus",
    "TransactionRecord",
    "TransactionStatus",
]
