"""Per-member balances for a group.

There is exactly one definition of a balance::

    paid for expenses - owed through splits
        + paid settlements sent - paid settlements received

Positive means the member is owed money, negative means they owe.
Only settlements in the ``paid`` state move balances.
"""
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .money import ZERO, quantize, to_decimal

PAID = "paid"


def compute_balances(
    members: Iterable[Dict[str, Any]],
    expenses: Iterable[Dict[str, Any]],
    splits: Iterable[Dict[str, Any]],
    settlements: Iterable[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    members = list(members)
    totals: Dict[int, Decimal] = {member["user_id"]: ZERO for member in members}

    def _add(user_id: Optional[int], amount: Decimal) -> None:
        if user_id in totals:
            totals[user_id] += amount

    expense_ids = set()
    for expense in expenses:
        expense_ids.add(expense["id"])
        _add(expense["paid_by"], to_decimal(expense["amount"]))

    for split in splits:
        if split["expense_id"] not in expense_ids:
            continue
        _add(split["user_id"], -to_decimal(split["amount"]))

    for settlement in settlements:
        if settlement.get("status") != PAID:
            continue
        amount = to_decimal(settlement["amount"])
        _add(settlement["from_user"], amount)
        _add(settlement["to_user"], -amount)

    return [
        {
            "user_id": member["user_id"],
            "email": member.get("email"),
            "username": member.get("username"),
            "upi_qr_code_url": member.get("upi_qr_code_url"),
            "balance": quantize(totals[member["user_id"]]),
        }
        for member in members
    ]


def balance_for(user_id: int, balances: Iterable[Dict[str, Any]]) -> Decimal:
    for balance in balances:
        if balance["user_id"] == user_id:
            return balance["balance"]
    return ZERO


def simplify_debts(balances: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Greedy pairing of debtors and creditors, in member order."""
    debtors = []
    creditors = []

    for balance in balances:
        amount = quantize(balance["balance"])
        entry = {"user_id": balance["user_id"], "email": balance.get("email")}
        if amount > 0:
            creditors.append(dict(entry, amount=amount))
        elif amount < 0:
            debtors.append(dict(entry, amount=-amount))

    transfers: List[Dict[str, Any]] = []

    debtor_idx = 0
    creditor_idx = 0

    while debtor_idx < len(debtors) and creditor_idx < len(creditors):
        debtor = debtors[debtor_idx]
        creditor = creditors[creditor_idx]

        settled_amount = min(debtor["amount"], creditor["amount"])
        if settled_amount > ZERO:
            transfers.append(
                {
                    "from_user_id": debtor["user_id"],
                    "from_email": debtor["email"],
                    "to_user_id": creditor["user_id"],
                    "to_email": creditor["email"],
                    "amount": quantize(settled_amount),
                }
            )

        debtor["amount"] -= settled_amount
        creditor["amount"] -= settled_amount

        if debtor["amount"] <= ZERO:
            debtor_idx += 1
        if creditor["amount"] <= ZERO:
            creditor_idx += 1

    return transfers


def group_summary(expenses: Iterable[Dict[str, Any]], member_count: int) -> Dict[str, Any]:
    expenses = list(expenses)
    total = sum((to_decimal(expense["amount"]) for expense in expenses), ZERO)
    average = quantize(total / member_count) if member_count > 0 else ZERO
    return {
        "total_expenses": quantize(total),
        "average_per_person": average,
        "expense_count": len(expenses),
    }
