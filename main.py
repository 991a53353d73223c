import logging
from datetime import date
from decimal import Decimal
from typing import Dict, List, Optional

from fastapi import FastAPI, HTTPException, Depends
from pydantic import BaseModel
from sqlmodel import Session, select, SQLModel, create_engine

import domain
from compute import (
    SplitValidationError,
    UnknownMemberError,
    allocate,
    check_percentages,
    even_percentages,
    resolve,
    round2,
    settle_up,
    to_dec,
)
from config import config
from domain import SplitMode
from models import Trip, Member, Receipt, LineItem, ReceiptSplit, LineItemSplit, Settlement

logging.basicConfig(level=config.LOG_LEVEL, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

connect_args = {"check_same_thread": False} if config.DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(config.DATABASE_URL, echo=False, connect_args=connect_args)

app = FastAPI(title="Trip Ledger API")

def create_db_and_tables():
    SQLModel.metadata.create_all(engine)

@app.on_event("startup")
def on_startup():
    create_db_and_tables()

def get_session():
    with Session(engine) as session:
        yield session

# ========== Request bodies ==========
class TripIn(BaseModel):
    name: str
    description: Optional[str] = None
    start_date: date
    end_date: Optional[date] = None

class TripUpdate(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    settled: Optional[bool] = None

class MemberIn(BaseModel):
    name: str

class LineItemIn(BaseModel):
    description: Optional[str] = None
    amount: Decimal
    quantity: int = 1

class ReceiptIn(BaseModel):
    title: str
    event_date: date
    total_amount: Optional[Decimal] = None  # itemized receipts default to the sum of their line items
    payer_id: int
    split_type: SplitMode
    merchant: Optional[str] = None
    line_items: List[LineItemIn] = []

class ReceiptUpdate(BaseModel):
    title: Optional[str] = None
    merchant: Optional[str] = None
    event_date: Optional[date] = None
    total_amount: Optional[Decimal] = None
    payer_id: Optional[int] = None
    split_type: Optional[SplitMode] = None

class ShareIn(BaseModel):
    member_id: int
    percentage: Decimal

class LineSplitIn(BaseModel):
    line_item_id: int
    splits: List[ShareIn]

class SplitIn(BaseModel):
    split_type: SplitMode
    splits: Optional[List[ShareIn]] = None  # full receipt
    line_splits: Optional[List[LineSplitIn]] = None  # per line item

class SettlementIn(BaseModel):
    payer_id: int
    receiver_id: int
    amount: Decimal
    event_date: Optional[date] = None

# ========== Lookups ==========
def money(x) -> str:
    return str(round2(to_dec(x)))

def member_key(member_id: int) -> str:
    return str(member_id)

def get_trip_or_404(session: Session, trip_id: int) -> Trip:
    trip = session.get(Trip, trip_id)
    if trip is None:
        raise HTTPException(status_code=404, detail="Trip not found")
    return trip

def get_receipt_or_404(session: Session, receipt_id: int) -> Receipt:
    receipt = session.get(Receipt, receipt_id)
    if receipt is None:
        raise HTTPException(status_code=404, detail="Receipt not found")
    return receipt

def trip_members(session: Session, trip_id: int) -> List[Member]:
    return session.exec(select(Member).where(Member.trip_id == trip_id).order_by(Member.id)).all()

def receipt_line_items(session: Session, receipt_id: int) -> List[LineItem]:
    return session.exec(select(LineItem).where(LineItem.receipt_id == receipt_id).order_by(LineItem.id)).all()

def receipt_splits(session: Session, receipt_id: int) -> List[ReceiptSplit]:
    return session.exec(select(ReceiptSplit).where(ReceiptSplit.receipt_id == receipt_id).order_by(ReceiptSplit.id)).all()

def line_item_splits(session: Session, line_item_id: int) -> List[LineItemSplit]:
    return session.exec(select(LineItemSplit).where(LineItemSplit.line_item_id == line_item_id).order_by(LineItemSplit.id)).all()

# ========== Snapshot -> ledger data ==========
def to_ledger_receipt(session: Session, r: Receipt) -> domain.Receipt:
    mode = SplitMode(r.split_type)
    receipt = domain.Receipt(id=r.id, payer=member_key(r.payer_id), total_amount=to_dec(r.total_amount), split_mode=mode)
    if mode is SplitMode.FULL:
        receipt.splits = [(member_key(s.member_id), to_dec(s.percentage)) for s in receipt_splits(session, r.id)]
    else:
        for li in receipt_line_items(session, r.id):
            shares = [(member_key(s.member_id), to_dec(s.percentage)) for s in line_item_splits(session, li.id)]
            receipt.line_items.append(domain.LineItem(
                amount=to_dec(li.amount),
                quantity=li.quantity,
                policy=domain.Weighted(shares),
                description=li.description or "",
            ))
    return receipt

def compute_trip_balances(session: Session, trip_id: int):
    members = trip_members(session, trip_id)
    receipts = session.exec(select(Receipt).where(Receipt.trip_id == trip_id).order_by(Receipt.id)).all()
    settlements = session.exec(select(Settlement).where(Settlement.trip_id == trip_id).order_by(Settlement.id)).all()
    try:
        return members, settle_up(
            [member_key(m.id) for m in members],
            [to_ledger_receipt(session, r) for r in receipts],
            [domain.Settlement(payer=member_key(s.payer_id), receiver=member_key(s.receiver_id), amount=to_dec(s.amount)) for s in settlements],
            strict=config.STRICT_MEMBERS,
        )
    except UnknownMemberError as e:
        logger.error("Trip %s has inconsistent data: %s", trip_id, e)
        raise HTTPException(status_code=409, detail=str(e))

# ========== Validation ==========
def validate_shares(shares: List[ShareIn], member_ids: set, context: str) -> None:
    unknown = sorted({s.member_id for s in shares if s.member_id not in member_ids})
    if unknown:
        raise HTTPException(status_code=400, detail=f"{context}: members {unknown} are not on this trip.")
    try:
        check_percentages([s.percentage for s in shares], config.SPLIT_TOLERANCE)
    except SplitValidationError as e:
        logger.warning("Rejected split (%s): %s", context, e)
        raise HTTPException(status_code=400, detail=f"{context}: {e}")

def delete_receipt_rows(session: Session, receipt: Receipt) -> None:
    for split in receipt_splits(session, receipt.id):
        session.delete(split)
    for li in receipt_line_items(session, receipt.id):
        for split in line_item_splits(session, li.id):
            session.delete(split)
        session.delete(li)
    session.delete(receipt)

def split_out(s) -> dict:
    return {"member_id": s.member_id, "percentage": float(s.percentage), "amount": money(s.amount)}

def receipt_out(r: Receipt) -> dict:
    return {
        "id": r.id,
        "trip_id": r.trip_id,
        "payer_id": r.payer_id,
        "title": r.title,
        "merchant": r.merchant,
        "event_date": r.event_date.isoformat() if r.event_date else None,
        "total_amount": money(r.total_amount),
        "split_type": r.split_type,
    }

# ========== Trip endpoints ==========
@app.post("/trips", response_model=Trip)
def create_trip(payload: TripIn, session: Session = Depends(get_session)):
    if not payload.name.strip():
        raise HTTPException(status_code=400, detail="Name and start date are required")
    trip = Trip(**payload.model_dump())
    session.add(trip)
    session.commit()
    session.refresh(trip)
    logger.info("Created trip %s (%s)", trip.id, trip.name)
    return trip

@app.get("/trips", response_model=List[Trip])
def list_trips(session: Session = Depends(get_session)):
    return session.exec(select(Trip).order_by(Trip.id)).all()

@app.get("/trips/{trip_id}")
def get_trip(trip_id: int, session: Session = Depends(get_session)):
    trip = get_trip_or_404(session, trip_id)
    members = trip_members(session, trip_id)
    return {**trip.model_dump(), "members": [m.model_dump() for m in members]}

@app.put("/trips/{trip_id}", response_model=Trip)
def update_trip(trip_id: int, payload: TripUpdate, session: Session = Depends(get_session)):
    trip = get_trip_or_404(session, trip_id)
    changes = payload.model_dump(exclude_unset=True)
    if "name" in changes and not (changes["name"] or "").strip():
        raise HTTPException(status_code=400, detail="Trip name cannot be empty")
    if "start_date" in changes and changes["start_date"] is None:
        raise HTTPException(status_code=400, detail="Trip start date cannot be removed")
    for key, value in changes.items():
        setattr(trip, key, value)
    session.add(trip)
    session.commit()
    session.refresh(trip)
    logger.info("Updated trip %s: %s", trip_id, sorted(changes))
    return trip

@app.delete("/trips/{trip_id}")
def delete_trip(trip_id: int, session: Session = Depends(get_session)):
    trip = get_trip_or_404(session, trip_id)
    for receipt in session.exec(select(Receipt).where(Receipt.trip_id == trip_id)).all():
        delete_receipt_rows(session, receipt)
    for settlement in session.exec(select(Settlement).where(Settlement.trip_id == trip_id)).all():
        session.delete(settlement)
    for member in trip_members(session, trip_id):
        session.delete(member)
    session.delete(trip)
    session.commit()
    logger.info("Deleted trip %s", trip_id)
    return {"success": True}

# ========== Member endpoints ==========
@app.post("/trips/{trip_id}/members", response_model=Member)
def add_member(trip_id: int, payload: MemberIn, session: Session = Depends(get_session)):
    get_trip_or_404(session, trip_id)
    name = payload.name.strip()
    if not name:
        raise HTTPException(status_code=400, detail="Member name is required")
    member = Member(name=name, trip_id=trip_id)
    session.add(member)
    session.commit()
    session.refresh(member)
    logger.info("Added member %s to trip %s", member.id, trip_id)
    return member

@app.get("/trips/{trip_id}/members", response_model=List[Member])
def list_members(trip_id: int, session: Session = Depends(get_session)):
    get_trip_or_404(session, trip_id)
    return trip_members(session, trip_id)

# ========== Receipt endpoints ==========
@app.post("/trips/{trip_id}/receipts")
def create_receipt(trip_id: int, payload: ReceiptIn, session: Session = Depends(get_session)):
    trip = get_trip_or_404(session, trip_id)
    if not payload.title.strip():
        raise HTTPException(status_code=400, detail="Title, date, total amount, and split type are required")
    payer = session.get(Member, payload.payer_id)
    if payer is None or payer.trip_id != trip_id:
        raise HTTPException(status_code=400, detail="Payer must be a member of this trip")
    if any(li.quantity < 1 for li in payload.line_items):
        raise HTTPException(status_code=400, detail="Line item quantity must be at least 1")
    total_amount = payload.total_amount
    if total_amount is None:
        if not payload.line_items:
            raise HTTPException(status_code=400, detail="Title, date, total amount, and split type are required")
        total_amount = sum((li.amount * li.quantity for li in payload.line_items), Decimal("0"))
    if total_amount < 0:
        raise HTTPException(status_code=400, detail="Total amount cannot be negative")

    receipt = Receipt(
        trip_id=trip_id,
        payer_id=payload.payer_id,
        title=payload.title,
        merchant=payload.merchant,
        event_date=payload.event_date,
        total_amount=total_amount,
        split_type=payload.split_type.value,
    )
    session.add(receipt)
    session.commit()
    session.refresh(receipt)
    for li in payload.line_items:
        session.add(LineItem(receipt_id=receipt.id, description=li.description, amount=li.amount, quantity=li.quantity))
    # new expenses reopen a settled trip
    trip.settled = False
    session.add(trip)
    session.commit()
    logger.info("Created receipt %s on trip %s for %s", receipt.id, trip_id, total_amount)
    return {
        **receipt_out(receipt),
        "line_items": [
            {"id": li.id, "description": li.description, "amount": money(li.amount), "quantity": li.quantity}
            for li in receipt_line_items(session, receipt.id)
        ],
    }

@app.get("/trips/{trip_id}/receipts")
def list_receipts(trip_id: int, session: Session = Depends(get_session)):
    get_trip_or_404(session, trip_id)
    receipts = session.exec(select(Receipt).where(Receipt.trip_id == trip_id).order_by(Receipt.id)).all()
    return [receipt_out(r) for r in receipts]

@app.get("/receipts/{receipt_id}")
def get_receipt(receipt_id: int, session: Session = Depends(get_session)):
    receipt = get_receipt_or_404(session, receipt_id)
    owed = resolve(to_ledger_receipt(session, receipt))
    return {
        **receipt_out(receipt),
        "splits": [split_out(s) for s in receipt_splits(session, receipt_id)],
        "line_items": [
            {
                "id": li.id,
                "description": li.description,
                "amount": money(li.amount),
                "quantity": li.quantity,
                "splits": [split_out(s) for s in line_item_splits(session, li.id)],
            }
            for li in receipt_line_items(session, receipt_id)
        ],
        "owed": {member: money(amount) for member, amount in owed.items()},
    }

@app.put("/receipts/{receipt_id}")
def update_receipt(receipt_id: int, payload: ReceiptUpdate, session: Session = Depends(get_session)):
    receipt = get_receipt_or_404(session, receipt_id)
    changes = payload.model_dump(exclude_unset=True)
    if any(changes.get(k, "") is None for k in ("title", "event_date", "total_amount", "payer_id", "split_type")):
        raise HTTPException(status_code=400, detail="Title, date, total amount, payer and split type cannot be removed")
    if "title" in changes and not changes["title"].strip():
        raise HTTPException(status_code=400, detail="Title cannot be empty")
    if "total_amount" in changes and changes["total_amount"] < 0:
        raise HTTPException(status_code=400, detail="Total amount cannot be negative")
    if "payer_id" in changes:
        payer = session.get(Member, changes["payer_id"])
        if payer is None or payer.trip_id != receipt.trip_id:
            raise HTTPException(status_code=400, detail="Payer must be a member of this trip")
    if "split_type" in changes:
        changes["split_type"] = changes["split_type"].value

    for key, value in changes.items():
        setattr(receipt, key, value)
    if "total_amount" in changes:
        # stored full-receipt shares follow the new total
        splits = receipt_splits(session, receipt_id)
        shares = allocate(receipt.total_amount, domain.Weighted([(s.member_id, s.percentage) for s in splits]))
        for s, (_, amount) in zip(splits, shares):
            s.amount = amount
            session.add(s)
    session.add(receipt)
    trip = session.get(Trip, receipt.trip_id)
    trip.settled = False
    session.add(trip)
    session.commit()
    session.refresh(receipt)
    logger.info("Updated receipt %s: %s", receipt_id, sorted(changes))
    return receipt_out(receipt)

@app.delete("/receipts/{receipt_id}")
def delete_receipt(receipt_id: int, session: Session = Depends(get_session)):
    receipt = get_receipt_or_404(session, receipt_id)
    trip = session.get(Trip, receipt.trip_id)
    delete_receipt_rows(session, receipt)
    trip.settled = False
    session.add(trip)
    session.commit()
    logger.info("Deleted receipt %s from trip %s", receipt_id, trip.id)
    return {"success": True}

# ========== Split endpoints ==========
@app.get("/receipts/{receipt_id}/split")
def suggest_even_split(receipt_id: int, session: Session = Depends(get_session)):
    receipt = get_receipt_or_404(session, receipt_id)
    members = trip_members(session, receipt.trip_id)
    if not members:
        raise HTTPException(status_code=400, detail="No members in trip to split with")
    percentages = even_percentages(len(members))
    return {"splits": [{"member_id": m.id, "percentage": float(p)} for m, p in zip(members, percentages)]}

@app.post("/receipts/{receipt_id}/split")
def save_split(receipt_id: int, payload: SplitIn, session: Session = Depends(get_session)):
    receipt = get_receipt_or_404(session, receipt_id)
    member_ids = {m.id for m in trip_members(session, receipt.trip_id)}

    if payload.split_type is SplitMode.FULL:
        if payload.splits is None:
            raise HTTPException(status_code=400, detail="Splits array is required for full receipt split")
        validate_shares(payload.splits, member_ids, "Receipt split")
        for old in receipt_splits(session, receipt_id):
            session.delete(old)
        shares = allocate(receipt.total_amount, domain.Weighted([(s.member_id, s.percentage) for s in payload.splits]))
        for s, (_, amount) in zip(payload.splits, shares):
            session.add(ReceiptSplit(receipt_id=receipt_id, member_id=s.member_id, percentage=s.percentage, amount=amount))
    else:
        if payload.line_splits is None:
            raise HTTPException(status_code=400, detail="Line splits array is required for line item split")
        items = {li.id: li for li in receipt_line_items(session, receipt_id)}
        for ls in payload.line_splits:
            item = items.get(ls.line_item_id)
            if item is None:
                raise HTTPException(status_code=404, detail=f"Line item {ls.line_item_id} not found on this receipt")
            validate_shares(ls.splits, member_ids, f"Line item {item.id}")
        for ls in payload.line_splits:
            item = items[ls.line_item_id]
            for old in line_item_splits(session, item.id):
                session.delete(old)
            effective = to_dec(item.amount) * item.quantity
            shares = allocate(effective, domain.Weighted([(s.member_id, s.percentage) for s in ls.splits]))
            for s, (_, amount) in zip(ls.splits, shares):
                session.add(LineItemSplit(line_item_id=item.id, member_id=s.member_id, percentage=s.percentage, amount=amount))

    if receipt.split_type != payload.split_type.value:
        receipt.split_type = payload.split_type.value
        session.add(receipt)
    session.commit()
    logger.info("Saved %s split for receipt %s", payload.split_type.value, receipt_id)

    if payload.split_type is SplitMode.FULL:
        return [split_out(s) for s in receipt_splits(session, receipt_id)]
    return [
        {"line_item_id": li_id, **split_out(s)}
        for li_id in [ls.line_item_id for ls in payload.line_splits]
        for s in line_item_splits(session, li_id)
    ]

# ========== Settlement endpoints ==========
@app.post("/trips/{trip_id}/settlements")
def record_settlement(trip_id: int, payload: SettlementIn, session: Session = Depends(get_session)):
    trip = get_trip_or_404(session, trip_id)
    if payload.amount <= 0:
        raise HTTPException(status_code=400, detail="Please enter a valid amount.")
    if payload.payer_id == payload.receiver_id:
        raise HTTPException(status_code=400, detail="Payer and receiver must be different members")
    member_ids = {m.id for m in trip_members(session, trip_id)}
    if payload.payer_id not in member_ids or payload.receiver_id not in member_ids:
        raise HTTPException(status_code=400, detail="Payer and receiver must be members of this trip")

    settlement = Settlement(trip_id=trip_id, **payload.model_dump())
    session.add(settlement)
    # balances include the pending settlement; nothing is committed if they cannot be computed
    try:
        _, (_, transactions) = compute_trip_balances(session, trip_id)
    except HTTPException:
        session.rollback()
        raise
    trip.settled = not transactions
    session.add(trip)
    session.commit()
    session.refresh(settlement)
    logger.info("Recorded settlement %s: %s -> %s (%s)", settlement.id, payload.payer_id, payload.receiver_id, payload.amount)
    if trip.settled:
        logger.info("Trip %s is fully settled", trip_id)
    return {
        "id": settlement.id,
        "payer_id": settlement.payer_id,
        "receiver_id": settlement.receiver_id,
        "amount": money(settlement.amount),
        "trip_settled": trip.settled,
    }

@app.get("/trips/{trip_id}/settlements")
def list_settlements(trip_id: int, session: Session = Depends(get_session)):
    get_trip_or_404(session, trip_id)
    rows = session.exec(select(Settlement).where(Settlement.trip_id == trip_id).order_by(Settlement.id)).all()
    return [
        {
            "id": s.id,
            "payer_id": s.payer_id,
            "receiver_id": s.receiver_id,
            "amount": money(s.amount),
            "event_date": s.event_date.isoformat() if s.event_date else None,
        }
        for s in rows
    ]

# ========== Balances endpoint ==========
@app.get("/trips/{trip_id}/balances")
def trip_balances(trip_id: int, session: Session = Depends(get_session)):
    get_trip_or_404(session, trip_id)
    members, (balances, transactions) = compute_trip_balances(session, trip_id)
    names: Dict[str, str] = {member_key(m.id): m.name for m in members}
    # Friendly format
    return {
        "balances": {k: b.as_dict() for k, b in balances.items()},
        "transactions": [t.as_dict() for t in transactions],
        "names": names,
    }
