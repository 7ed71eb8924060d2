from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional, Union
from datetime import date as date_type, datetime
from decimal import Decimal
from enum import Enum


class TransactionType(str, Enum):
    EARNING = "EARNING"
    EXPENSE = "EXPENSE"


class Platform(str, Enum):
    UBER = "Uber"
    DIDI = "DiDi"
    OLA = "Ola"
    OTHER = "Other"


class CamelModel(BaseModel):
    """Base model that reads and writes camelCase JSON keys."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BusinessPercentages(CamelModel):
    motor_vehicle: int = Field(60, ge=0, le=100)
    mobile_phone: int = Field(30, ge=0, le=100)
    internet: int = Field(0, ge=0, le=100)
    music_subscriptions: int = Field(0, ge=0, le=100)


class TransactionCandidate(CamelModel):
    """A transaction as returned by document extraction, before it gets an id."""
    date: date_type
    description: str = ""
    type: TransactionType
    category: str
    gross_amount: Decimal
    gst_amount: Decimal
    net_amount: Optional[Decimal] = None
    platform: Platform
    confidence: float = Field(0.8, ge=0, le=1)
    source_file: Optional[str] = None


class Transaction(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    id: str
    date: date_type
    description: str = ""
    type: TransactionType
    category: str
    gross_amount: Decimal
    gst_amount: Decimal
    net_amount: Decimal
    platform: Platform
    confidence: float = Field(1.0, ge=0, le=1)
    source_file: Optional[str] = None


class ManualEntry(CamelModel):
    """Raw manual form input. Amounts are checked by the handler so bad numbers get a 400."""
    type: TransactionType = TransactionType.EXPENSE
    platform: Platform = Platform.UBER
    date: Optional[date_type] = None
    description: str = ""
    category: Optional[str] = None
    gross_amount: Union[str, int, float]
    gst_amount: Optional[Union[str, int, float]] = None


class ExtractionResult(CamelModel):
    transactions: List[TransactionCandidate]
    summary_note: Optional[str] = None


class GSTSummary(CamelModel):
    total_collected: Decimal
    total_paid: Decimal
    net_payable: Decimal
    period_label: str

    @property
    def is_refund(self) -> bool:
        return self.net_payable < 0


class User(CamelModel):
    id: str
    name: str
    email: str
    dob: Optional[str] = None
    avatar: Optional[str] = None
    created_at: str = Field(default_factory=lambda: datetime.now().isoformat())
