"""Settlement lifecycle.

A settlement is created ``pending`` by the debtor, moved to
``pending_confirmation`` when the debtor marks the money as sent, and to
``paid`` when the creditor confirms receipt. Nothing else is allowed.
"""
from __future__ import annotations

from datetime import datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, Optional

from .balances import balance_for
from .money import ZERO, quantize, to_decimal


class SettlementStatus(str, Enum):
    PENDING = "pending"
    PENDING_CONFIRMATION = "pending_confirmation"
    PAID = "paid"


class PaymentMethod(str, Enum):
    MANUAL = "manual"
    UPI_QR = "upi_qr"


TRANSITIONS = {
    SettlementStatus.PENDING: SettlementStatus.PENDING_CONFIRMATION,
    SettlementStatus.PENDING_CONFIRMATION: SettlementStatus.PAID,
}


class SettlementError(ValueError):
    def __init__(self, code: str, status: int = 400) -> None:
        super().__init__(code)
        self.code = code
        self.status = status


def _status_of(settlement: Dict[str, Any]) -> Optional[SettlementStatus]:
    try:
        return SettlementStatus(settlement["status"])
    except ValueError:
        return None


def _require_transition(settlement: Dict[str, Any], target: SettlementStatus) -> SettlementStatus:
    current = _status_of(settlement)
    if current is None or TRANSITIONS.get(current) is not target:
        raise SettlementError("invalid_transition", 409)
    return current


def is_open(settlement: Dict[str, Any]) -> bool:
    return _status_of(settlement) in (SettlementStatus.PENDING, SettlementStatus.PENDING_CONFIRMATION)


def validate_new_settlement(
    debtor_id: int,
    creditor_id: int,
    amount: Any,
    balances: Iterable[Dict[str, Any]],
    settlements: Iterable[Dict[str, Any]] = (),
) -> Decimal:
    """Check a debtor-initiated settlement and return the amount to record.

    Open settlements already reserve part of the debtor's debt and of the
    creditor's credit, so the same money cannot be claimed twice.
    """
    balances = list(balances)
    if debtor_id == creditor_id:
        raise SettlementError("cannot_settle_with_self")

    debtor_balance = balance_for(debtor_id, balances)
    creditor_balance = balance_for(creditor_id, balances)
    if debtor_balance >= ZERO:
        raise SettlementError("nothing_owed")
    if creditor_balance <= ZERO:
        raise SettlementError("creditor_not_owed")

    sending = ZERO
    receiving = ZERO
    for settlement in settlements:
        if not is_open(settlement):
            continue
        if settlement["from_user"] == debtor_id:
            sending += to_decimal(settlement["amount"])
        if settlement["to_user"] == creditor_id:
            receiving += to_decimal(settlement["amount"])

    outstanding = -debtor_balance - sending
    creditable = creditor_balance - receiving
    if outstanding <= ZERO or creditable <= ZERO:
        raise SettlementError("settlement_in_progress", 409)

    if amount is None:
        return quantize(min(outstanding, creditable))

    try:
        amount_decimal = to_decimal(amount)
    except (TypeError, ValueError, InvalidOperation):
        raise SettlementError("invalid_amount") from None
    if amount_decimal <= ZERO:
        raise SettlementError("invalid_amount")
    if amount_decimal > outstanding:
        raise SettlementError("amount_exceeds_debt")
    if amount_decimal > creditable:
        raise SettlementError("amount_exceeds_credit")
    return amount_decimal


def mark_sent(settlement: Dict[str, Any], user_id: int, payment_method: Any = PaymentMethod.MANUAL.value) -> Dict[str, Any]:
    if settlement["from_user"] != user_id:
        raise SettlementError("only_debtor_can_mark_sent", 403)
    try:
        method = PaymentMethod(payment_method or PaymentMethod.MANUAL.value)
    except ValueError:
        raise SettlementError("invalid_payment_method") from None
    _require_transition(settlement, SettlementStatus.PENDING_CONFIRMATION)
    return {
        "status": SettlementStatus.PENDING_CONFIRMATION.value,
        "payment_method": method.value,
    }


def confirm_received(settlement: Dict[str, Any], user_id: int, now: Optional[datetime] = None) -> Dict[str, Any]:
    if settlement["to_user"] != user_id:
        raise SettlementError("only_creditor_can_confirm", 403)
    _require_transition(settlement, SettlementStatus.PAID)
    return {
        "status": SettlementStatus.PAID.value,
        "settled_at": now,
    }


def visible_to(settlement: Dict[str, Any], user_id: int) -> bool:
    return user_id in (settlement["from_user"], settlement["to_user"])


def describe(settlement: Dict[str, Any], user_id: int) -> Dict[str, Optional[str]]:
    """What the caller should see and may do with a settlement."""
    if settlement["from_user"] == user_id:
        role = "debtor"
    elif settlement["to_user"] == user_id:
        role = "creditor"
    else:
        return {"role": None, "action": "none"}

    status = _status_of(settlement)
    if status is SettlementStatus.PENDING:
        action = "mark_sent" if role == "debtor" else "await_payment"
    elif status is SettlementStatus.PENDING_CONFIRMATION:
        action = "await_confirmation" if role == "debtor" else "confirm_received"
    else:
        action = "none"
    return {"role": role, "action": action}
