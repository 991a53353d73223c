from typing import Optional
from sqlmodel import SQLModel, Field
from datetime import datetime, date, timezone
from decimal import Decimal

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

# ============== Trips ==============
class TripBase(SQLModel):
    name: str
    description: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None

class Trip(TripBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    settled: bool = False
    created_at: datetime = Field(default_factory=utcnow)

# ============== Members ==============
class MemberBase(SQLModel):
    name: str

class Member(MemberBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    trip_id: int = Field(foreign_key="trip.id", index=True)
    created_at: datetime = Field(default_factory=utcnow)

# ============== Receipts ==============
class ReceiptBase(SQLModel):
    title: str
    merchant: Optional[str] = None
    event_date: date
    total_amount: Decimal = Field(max_digits=12, decimal_places=2)
    split_type: str = "full"  # "full" or "line_item"

class Receipt(ReceiptBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    trip_id: int = Field(foreign_key="trip.id", index=True)
    payer_id: int = Field(foreign_key="member.id")  # who actually paid
    created_at: datetime = Field(default_factory=utcnow)

class LineItemBase(SQLModel):
    description: Optional[str] = None
    amount: Decimal = Field(max_digits=12, decimal_places=2)  # unit price
    quantity: int = 1

class LineItem(LineItemBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    receipt_id: int = Field(foreign_key="receipt.id", index=True)

# ============== Splits ==============
class SplitBase(SQLModel):
    member_id: int = Field(foreign_key="member.id")
    percentage: Decimal = Field(max_digits=7, decimal_places=4)
    amount: Decimal = Field(default=Decimal("0"), max_digits=14, decimal_places=4)  # computed share, informational

class ReceiptSplit(SplitBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    receipt_id: int = Field(foreign_key="receipt.id", index=True)

class LineItemSplit(SplitBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    line_item_id: int = Field(foreign_key="lineitem.id", index=True)

# ============== Settlements ==============
class SettlementBase(SQLModel):
    payer_id: int = Field(foreign_key="member.id")
    receiver_id: int = Field(foreign_key="member.id")
    amount: Decimal = Field(max_digits=12, decimal_places=2)
    event_date: Optional[date] = None

class Settlement(SettlementBase, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    trip_id: int = Field(foreign_key="trip.id", index=True)
    created_at: datetime = Field(default_factory=utcnow)
