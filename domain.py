from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Hashable, List, Tuple, Union

Member = Hashable

# ============== Split policies ==============
class SplitMode(str, Enum):
    FULL = "full"
    LINE_ITEM = "line_item"

@dataclass
class Even:
    """Split equally; the first member absorbs the percentage remainder."""
    members: List[Member]

@dataclass
class Weighted:
    """Explicit (member, percentage) pairs, used as given."""
    shares: List[Tuple[Member, Decimal]]

SplitPolicy = Union[Even, Weighted]

# ============== Receipts ==============
@dataclass
class LineItem:
    amount: Decimal
    policy: SplitPolicy
    quantity: int = 1
    description: str = ""

@dataclass
class Receipt:
    id: Hashable
    payer: Member
    total_amount: Decimal
    split_mode: SplitMode
    splits: List[Tuple[Member, Decimal]] = field(default_factory=list)  # FULL
    line_items: List[LineItem] = field(default_factory=list)  # LINE_ITEM

# ============== Settlements ==============
@dataclass
class Settlement:
    """A payment already made outside the app."""
    payer: Member
    receiver: Member
    amount: Decimal

# ============== Results ==============
@dataclass
class Balance:
    paid: Decimal = Decimal("0")
    owed: Decimal = Decimal("0")
    net: Decimal = Decimal("0")

    def as_dict(self) -> dict:
        return {"paid": str(self.paid), "owed": str(self.owed), "net": str(self.net)}

@dataclass(frozen=True)
class Transaction:
    from_member: Member
    to_member: Member
    amount: Decimal

    def as_dict(self) -> dict:
        return {"from": self.from_member, "to": self.to_member, "amount": str(self.amount)}
