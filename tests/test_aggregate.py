from decimal import Decimal

import pytest

from compute import UnknownMemberError, aggregate
from domain import Balance, Receipt, Settlement, SplitMode


def test_even_dinner_scenario(roster, dinner):
    balances = aggregate(roster, [dinner], [])

    assert balances["alice"] == Balance(paid=Decimal("90.00"), owed=Decimal("30.01"), net=Decimal("59.99"))
    assert balances["bob"] == Balance(paid=Decimal("0.00"), owed=Decimal("30.00"), net=Decimal("-30.00"))
    assert balances["carol"] == Balance(paid=Decimal("0.00"), owed=Decimal("30.00"), net=Decimal("-30.00"))


def test_roster_order_and_zero_entries(roster):
    balances = aggregate(roster, [], [])
    assert list(balances) == roster
    assert all(b == Balance(Decimal("0.00"), Decimal("0.00"), Decimal("0.00")) for b in balances.values())


def test_conservation(roster, dinner, groceries):
    odd = Receipt(
        id="r3",
        payer="carol",
        total_amount=Decimal("87.45"),
        split_mode=SplitMode.FULL,
        splits=[("alice", Decimal("33.34")), ("bob", Decimal("33.33")), ("carol", Decimal("33.33"))],
    )
    balances = aggregate(roster, [dinner, groceries, odd], [])

    assert sum(b.paid for b in balances.values()) == Decimal("237.45")
    assert abs(sum(b.net for b in balances.values())) <= Decimal("0.01") * len(roster)
    for b in balances.values():
        assert abs(b.net - (b.paid - b.owed)) <= Decimal("0.01")


def test_settlement_cancels_debt(roster, dinner):
    before = aggregate(roster, [dinner], [])
    after = aggregate(roster, [dinner], [Settlement(payer="bob", receiver="alice", amount=Decimal("30.00"))])

    assert after["bob"].net == before["bob"].net + Decimal("30.00") == Decimal("0.00")
    assert after["alice"].net == before["alice"].net - Decimal("30.00") == Decimal("29.99")
    assert after["bob"].paid == Decimal("30.00")
    assert after["alice"].owed == Decimal("60.01")
    assert after["carol"] == before["carol"]


def test_rounds_half_up_to_cents():
    receipt = Receipt(id=1, payer="a", total_amount=Decimal("0.25"), split_mode=SplitMode.FULL, splits=[("b", 50)])
    balances = aggregate(["a", "b"], [receipt], [])

    assert balances["b"].owed == Decimal("0.13")
    assert balances["b"].net == Decimal("-0.13")
    assert balances["a"].net == Decimal("0.25")


def test_off_roster_references_are_dropped(roster, groceries):
    stray = Receipt(id="x", payer="dave", total_amount=Decimal("40"), split_mode=SplitMode.FULL,
                    splits=[("dave", 50), ("alice", 50)])
    balances = aggregate(roster, [groceries, stray], [Settlement(payer="erin", receiver="bob", amount=Decimal("5"))])

    assert "dave" not in balances and "erin" not in balances
    assert balances["alice"].owed == Decimal("50.00")
    assert balances["bob"].owed == Decimal("20.00")


def test_strict_mode_rejects_off_roster_references(roster):
    with pytest.raises(UnknownMemberError) as exc:
        aggregate(roster, [], [Settlement(payer="alice", receiver="dave", amount=Decimal("5"))], strict=True)
    assert exc.value.member == "dave"
    assert "dave" in str(exc.value)


def test_missing_collections_are_empty(roster, dinner):
    assert aggregate(roster, None, None) == aggregate(roster, [], [])
    assert aggregate(roster, [dinner], None) == aggregate(roster, [dinner], [])
