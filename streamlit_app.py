import streamlit as st
import requests
import pandas as pd

from compute import SplitValidationError, check_percentages, even_percentages
from config import config

BASE_URL = config.API_URL

def balances_frame(data: dict) -> pd.DataFrame:
    """One row per member from a /balances payload; money columns as floats."""
    names = data.get("names", {})
    rows = [
        {
            "member": names.get(key, key),
            "paid": float(b["paid"]),
            "owed": float(b["owed"]),
            "net": float(b["net"]),
        }
        for key, b in data.get("balances", {}).items()
    ]
    return pd.DataFrame(rows, columns=["member", "paid", "owed", "net"])

def transactions_frame(data: dict) -> pd.DataFrame:
    names = data.get("names", {})
    rows = [
        {"from": names.get(t["from"], t["from"]), "to": names.get(t["to"], t["to"]), "amount": float(t["amount"])}
        for t in data.get("transactions", [])
    ]
    return pd.DataFrame(rows, columns=["from", "to", "amount"])

def even_shares(members: list) -> list:
    return [{"member_id": m["id"], "percentage": float(p)} for m, p in zip(members, even_percentages(len(members)))]

def line_splits_body(created_items: list, item_members: list) -> dict:
    """Even split per created line item among the members picked for it, in entry order."""
    return {
        "split_type": "line_item",
        "line_splits": [
            {"line_item_id": li["id"], "splits": even_shares(sharing)}
            for li, sharing in zip(created_items, item_members)
        ],
    }

def submit_receipt(trip_url: str, receipt: dict, split_for):
    """
    Create a receipt, then its split. A receipt whose split is rejected is
    deleted again so its payer is not credited for an expense nobody owes.
    Returns the failed response, or None.
    """
    r = requests.post(f"{trip_url}/receipts", json=receipt)
    if r.status_code != 200:
        return r
    created = r.json()
    s = requests.post(f"{BASE_URL}/receipts/{created['id']}/split", json=split_for(created))
    if s.status_code != 200:
        requests.delete(f"{BASE_URL}/receipts/{created['id']}")
        return s
    return None

def main():
    st.title("Trip Ledger")

    # Trips
    st.header("Trips")
    trip_name = st.text_input("New trip name")
    start_date = st.date_input("Start date")
    if st.button("Create Trip"):
        r = requests.post(f"{BASE_URL}/trips", json={"name": trip_name, "start_date": start_date.isoformat()})
        st.success(f"Created: {r.json()['name']}" if r.status_code == 200 else f"Error: {r.text}")

    trips = requests.get(f"{BASE_URL}/trips").json()
    if not trips:
        st.info("Create a trip to get started.")
        return
    trip = st.selectbox("Trip", options=trips, format_func=lambda t: t["name"] + (" (settled)" if t["settled"] else ""))
    trip_url = f"{BASE_URL}/trips/{trip['id']}"

    # Members
    st.header("Members")
    member_name = st.text_input("New member name")
    if st.button("Add Member"):
        r = requests.post(f"{trip_url}/members", json={"name": member_name})
        st.success(f"Added: {r.json()['name']}" if r.status_code == 200 else f"Error: {r.text}")

    members = requests.get(f"{trip_url}/members").json()
    st.dataframe(pd.DataFrame(members, columns=["id", "name"]))

    # Receipts
    st.header("Add Receipt")
    if members:
        title = st.text_input("Title")
        event_date = st.date_input("Date")
        payer = st.selectbox("Paid by", options=members, format_func=lambda m: m["name"])
        itemized = st.checkbox("Itemized receipt")
        receipt = {"title": title, "event_date": event_date.isoformat(), "payer_id": payer["id"]}

        if itemized:
            count = st.number_input("Line items", min_value=1, max_value=20, value=1, step=1)
            items, item_members = [], []
            for i in range(int(count)):
                cols = st.columns([3, 2, 1])
                description = cols[0].text_input("Description", key=f"li_desc_{i}")
                amount = cols[1].number_input("Amount", min_value=0.0, format="%.2f", key=f"li_amount_{i}")
                quantity = cols[2].number_input("Qty", min_value=1, value=1, step=1, key=f"li_qty_{i}")
                items.append({"description": description, "amount": amount, "quantity": int(quantity)})
                item_members.append(st.multiselect("Shared by", options=members, default=members,
                                                   format_func=lambda m: m["name"], key=f"li_members_{i}"))
            st.write(f"Total: ${sum(li['amount'] * li['quantity'] for li in items):.2f}")
            receipt.update(split_type="line_item", line_items=items)
            split_for = lambda created: line_splits_body(created["line_items"], item_members)
            problem = "Every line item needs at least one member." if not all(item_members) else None
        else:
            receipt.update(split_type="full", total_amount=st.number_input("Total Amount", min_value=0.0, format="%.2f"))
            sharing = st.multiselect("Split between", options=members, default=members, format_func=lambda m: m["name"])
            shares = even_shares(sharing)
            if st.checkbox("Custom percentages"):
                for s, m in zip(shares, sharing):
                    s["percentage"] = st.number_input(f"{m['name']} %", min_value=0.0, max_value=100.0,
                                                      value=s["percentage"], key=f"pct_{m['id']}")
            split_for = lambda created: {"split_type": "full", "splits": shares}
            problem = None
            try:
                check_percentages([s["percentage"] for s in shares], config.SPLIT_TOLERANCE)
            except SplitValidationError as e:
                problem = str(e)

        if st.button("Submit Receipt"):
            if problem:
                st.error(problem)
            else:
                failed = submit_receipt(trip_url, receipt, split_for)
                if failed is None:
                    st.success("Receipt submitted")
                else:
                    st.error(f"Error: {failed.text}")

    receipts = requests.get(f"{trip_url}/receipts").json()
    st.dataframe(pd.DataFrame(receipts, columns=["id", "title", "event_date", "total_amount", "split_type"]))
    if receipts:
        doomed = st.selectbox("Receipt", options=receipts, format_func=lambda r: f"{r['title']} ({r['total_amount']})")
        if st.button("Delete Receipt"):
            r = requests.delete(f"{BASE_URL}/receipts/{doomed['id']}")
            st.success("Receipt deleted" if r.status_code == 200 else f"Error: {r.text}")

    # Balances
    st.header("Balances")
    data = requests.get(f"{trip_url}/balances").json()
    st.dataframe(balances_frame(data))
    st.subheader("Suggested payments")
    tx = transactions_frame(data)
    if tx.empty:
        st.success("All balances are settled!")
    else:
        st.dataframe(tx)

    # Settlements
    st.header("Record Settlement")
    if len(members) >= 2:
        payer = st.selectbox("From", options=members, format_func=lambda m: m["name"], key="settle_from")
        receiver = st.selectbox("To", options=members, format_func=lambda m: m["name"], key="settle_to")
        amount = st.number_input("Amount", min_value=0.0, format="%.2f", key="settle_amount")
        if st.button("Record Settlement"):
            r = requests.post(f"{trip_url}/settlements", json={
                "payer_id": payer["id"],
                "receiver_id": receiver["id"],
                "amount": amount,
            })
            if r.status_code == 200:
                st.success("Trip settled!" if r.json()["trip_settled"] else "Settlement recorded")
            else:
                st.error(f"Error: {r.text}")

if __name__ == "__main__":
    main()
