import logging
from decimal import Decimal, ROUND_FLOOR, ROUND_HALF_UP
from typing import Dict, Iterable, List, Mapping, Optional, Tuple

from domain import (
    Balance,
    Even,
    Member,
    Receipt,
    Settlement,
    SplitMode,
    SplitPolicy,
    Transaction,
    Weighted,
)

logger = logging.getLogger(__name__)

HUNDRED = Decimal("100")
CENT = Decimal("0.01")

# ============== Errors ==============
class LedgerError(Exception):
    """Base class for ledger computation errors."""

class SplitValidationError(LedgerError, ValueError):
    pass

class UnknownMemberError(LedgerError, KeyError):
    def __init__(self, member: Member, context: str):
        super().__init__(member)
        self.member = member
        self.context = context

    def __str__(self) -> str:
        return f"{self.context} references member {self.member!r} who is not on the trip roster"

# ============== Money helpers ==============
def to_dec(x) -> Decimal:
    if isinstance(x, Decimal):
        return x
    return Decimal(str(x))

def round2(d: Decimal) -> Decimal:
    return d.quantize(CENT, rounding=ROUND_HALF_UP)

def check_percentages(percentages: Iterable, tolerance: Decimal = Decimal("0.1")) -> Decimal:
    """
    Caller-side validation: raise SplitValidationError unless the percentages
    add up to 100 within `tolerance`. Returns the sum.
    """
    total = sum((to_dec(p) for p in percentages), Decimal("0"))
    if abs(total - HUNDRED) > to_dec(tolerance):
        raise SplitValidationError(f"Split percentages add up to {total}%, expected 100%.")
    return total

# ============== Split allocator ==============
def even_percentages(count: int) -> List[Decimal]:
    """
    Percentages for an even split among `count` members. Each share is
    truncated to 2 decimals and the first member takes the remainder, so the
    list always sums to exactly 100.
    """
    if count <= 0:
        return []
    base = (HUNDRED / count * 100).to_integral_value(rounding=ROUND_FLOOR) / 100
    remainder = HUNDRED - base * count
    return [base + remainder] + [base] * (count - 1)

def allocate(amount, policy: SplitPolicy) -> List[Tuple[Member, Decimal]]:
    """
    Turn a split policy into per-member shares of `amount`, in the policy's
    member order. Shares are left unrounded; weighted percentages are not
    required to sum to 100.
    """
    amount = to_dec(amount)
    if isinstance(policy, Even):
        pairs = list(zip(policy.members, even_percentages(len(policy.members))))
    elif isinstance(policy, Weighted):
        pairs = [(member, to_dec(pct)) for member, pct in policy.shares]
    else:
        raise TypeError(f"Unsupported split policy: {policy!r}")
    return [(member, amount * pct / HUNDRED) for member, pct in pairs]

# ============== Receipt resolver ==============
def resolve(receipt: Receipt) -> Dict[Member, Decimal]:
    """
    Per-member owed amounts for one receipt. A receipt without a split for its
    mode resolves to an empty mapping.
    """
    mode = SplitMode(receipt.split_mode)
    if mode is SplitMode.FULL:
        parts = [(to_dec(receipt.total_amount), Weighted(receipt.splits))] if receipt.splits else []
    else:
        parts = [(to_dec(item.amount) * item.quantity, item.policy) for item in receipt.line_items or []]

    owed: Dict[Member, Decimal] = {}
    for amount, policy in parts:
        for member, share in allocate(amount, policy):
            owed[member] = owed.get(member, Decimal("0")) + share
    if not owed:
        logger.debug("Receipt %r has no %s split; nobody owes anything", receipt.id, mode.value)
    return owed

# ============== Balance aggregator ==============
def aggregate(
    members: Iterable[Member],
    receipts: Optional[Iterable[Receipt]],
    settlements: Optional[Iterable[Settlement]],
    strict: bool = False,
) -> Dict[Member, Balance]:
    """
    Fold receipts and recorded settlements into {member: Balance}.

    The roster is authoritative: amounts booked to members outside it are
    dropped, or raise UnknownMemberError when `strict` is set. A settlement
    counts as paid for its payer and as owed for its receiver, which cancels
    the matching debt under net = paid - owed.
    """
    paid = {m: Decimal("0") for m in members}
    owed = {m: Decimal("0") for m in paid}

    def book(ledger: Dict[Member, Decimal], member: Member, amount: Decimal, context: str) -> None:
        if member in ledger:
            ledger[member] += amount
        elif strict:
            raise UnknownMemberError(member, context)
        else:
            logger.debug("%s: dropping %s for off-roster member %r", context, amount, member)

    for r in receipts or []:
        book(paid, r.payer, to_dec(r.total_amount), f"Receipt {r.id!r}")
        for member, share in resolve(r).items():
            book(owed, member, share, f"Receipt {r.id!r}")

    for s in settlements or []:
        amount = to_dec(s.amount)
        book(paid, s.payer, amount, "Settlement")
        book(owed, s.receiver, amount, "Settlement")

    return {
        m: Balance(paid=round2(paid[m]), owed=round2(owed[m]), net=round2(paid[m] - owed[m]))
        for m in paid
    }

# ============== Debt minimizer ==============
def minimize(balances: Mapping[Member, object]) -> List[Transaction]:
    """
    Greedy settlement: the largest debtor pays the largest creditor until one
    side runs out. Values may be Balance objects or bare net amounts.
    Not guaranteed to use the fewest possible transfers.
    """
    debtors = []
    creditors = []
    for member, value in balances.items():
        net = to_dec(value.net if isinstance(value, Balance) else value)
        if net < 0:
            debtors.append([member, -net])  # store positive owed amount
        elif net > 0:
            creditors.append([member, net])

    # list.sort is stable, so equal amounts keep the roster order
    debtors.sort(key=lambda x: x[1], reverse=True)
    creditors.sort(key=lambda x: x[1], reverse=True)

    transactions = []
    while debtors and creditors:
        debtor, creditor = debtors[0], creditors[0]
        payment = min(debtor[1], creditor[1])
        amount = round2(payment)
        if amount > 0:
            transactions.append(Transaction(from_member=debtor[0], to_member=creditor[0], amount=amount))
        debtor[1] -= payment
        creditor[1] -= payment
        if debtor[1] < CENT:
            debtors.pop(0)
        if creditor[1] < CENT:
            creditors.pop(0)

    logger.debug("Settled %d balances with %d transactions", len(balances), len(transactions))
    return transactions

def settle_up(
    members: Iterable[Member],
    receipts: Optional[Iterable[Receipt]],
    settlements: Optional[Iterable[Settlement]],
    strict: bool = False,
) -> Tuple[Dict[Member, Balance], List[Transaction]]:
    balances = aggregate(members, receipts, settlements, strict=strict)
    return balances, minimize(balances)
