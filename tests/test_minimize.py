from decimal import Decimal

import pytest

from compute import aggregate, minimize, settle_up
from domain import Balance, Settlement, Transaction


def apply(nets, transactions):
    nets = {m: Decimal(str(v)) for m, v in nets.items()}
    for t in transactions:
        nets[t.from_member] += t.amount
        nets[t.to_member] -= t.amount
    return nets


def test_even_dinner_scenario(roster, dinner):
    transactions = minimize(aggregate(roster, [dinner], []))

    assert sorted(transactions, key=lambda t: t.from_member) == [
        Transaction("bob", "alice", Decimal("30.00")),
        Transaction("carol", "alice", Decimal("29.99")),
    ]


def test_largest_debtor_meets_largest_creditor():
    nets = {"a": Decimal("70"), "b": Decimal("30"), "c": Decimal("-60"), "d": Decimal("-40")}

    assert minimize(nets) == [
        Transaction("c", "a", Decimal("60.00")),
        Transaction("d", "a", Decimal("10.00")),
        Transaction("d", "b", Decimal("30.00")),
    ]


@pytest.mark.parametrize("nets", [
    {"a": "100", "b": "-30", "c": "-50", "d": "-20"},
    {"a": "66.66", "b": "-33.33", "c": "-33.33"},
    {"a": "10.01", "b": "20.02", "c": "-15.015", "d": "-15.015"},
    {"a": "0", "b": "0"},
    {"a": "5.55", "b": "-1.11", "c": "-1.11", "d": "-1.11", "e": "-1.11", "f": "-1.11", "g": "0"},
])
def test_transactions_zero_every_balance(nets):
    transactions = minimize({m: Decimal(v) for m, v in nets.items()})

    for t in transactions:
        assert t.amount > 0
        assert t.from_member != t.to_member
    assert all(abs(v) <= Decimal("0.01") for v in apply(nets, transactions).values())
    credit = sum(Decimal(v) for v in nets.values() if Decimal(v) > 0)
    assert abs(sum(t.amount for t in transactions) - credit) < Decimal("0.01") * len(nets)


def test_settled_members_never_appear():
    transactions = minimize({
        "a": Balance(net=Decimal("25.00")),
        "b": Balance(net=Decimal("0.00")),
        "c": Balance(net=Decimal("-25.00")),
    })
    assert transactions == [Transaction("c", "a", Decimal("25.00"))]


def test_sub_cent_balances_produce_nothing():
    assert minimize({"a": Decimal("0.004"), "b": Decimal("-0.004")}) == []
    assert minimize({}) == []


def test_equal_amounts_keep_input_order():
    transactions = minimize({"a": Decimal("20"), "b": Decimal("-10"), "c": Decimal("-10")})
    assert [t.from_member for t in transactions] == ["b", "c"]


def test_settle_up_after_partial_settlement(roster, dinner, groceries):
    settlements = [Settlement(payer="carol", receiver="alice", amount=Decimal("10.00"))]
    balances, transactions = settle_up(roster, [dinner, groceries], settlements)

    # alice: paid 90, owed 60.006 + 10 received
    # bob: paid 60, owed 44.997
    # carol: paid 10, owed 44.997
    assert [balances[m].net for m in roster] == [Decimal("19.99"), Decimal("15.00"), Decimal("-35.00")]
    assert transactions == [
        Transaction("carol", "alice", Decimal("19.99")),
        Transaction("carol", "bob", Decimal("15.00")),
    ]


def test_transaction_serialization():
    assert Transaction("b", "a", Decimal("30.00")).as_dict() == {"from": "b", "to": "a", "amount": "30.00"}
