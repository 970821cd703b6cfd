from __future__ import annotations

from datetime import date, datetime
from decimal import InvalidOperation
from functools import wraps
from typing import Any, Dict, List, Mapping, Optional
from urllib.parse import urlparse

from flask import (
    Flask,
    current_app,
    jsonify,
    request,
    session,
)
from flask_cors import CORS
from werkzeug.exceptions import BadRequest
from werkzeug.security import check_password_hash, generate_password_hash

from .balances import balance_for, compute_balances, group_summary, simplify_debts
from .config import config
from .db import DatabaseError
from .money import ZERO, as_float, to_decimal
from .repository import Repository, repository
from .settlements import (
    SettlementError,
    confirm_received,
    describe,
    mark_sent,
    validate_new_settlement,
    visible_to,
)
from .splits import build_splits


class InvalidJSON(BadRequest):
    description = "Request body is not a JSON object."


def create_app(overrides: Optional[Mapping[str, Any]] = None, repo: Optional[Repository] = None) -> Flask:
    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.SECRET_KEY
    app.config["SESSION_COOKIE_NAME"] = config.SESSION_COOKIE_NAME
    app.config["SESSION_COOKIE_HTTPONLY"] = config.SESSION_COOKIE_HTTPONLY
    app.config["SESSION_COOKIE_SAMESITE"] = config.SESSION_COOKIE_SAMESITE
    if overrides:
        app.config.update(overrides)

    app.logger.setLevel(config.LOG_LEVEL)
    app.extensions["repository"] = repo or repository

    CORS(
        app,
        supports_credentials=True,
        resources={r"/api/*": {"origins": config.CORS_ORIGINS}},
    )

    register_error_handlers(app)
    register_routes(app)
    return app


def require_login(func):
    @wraps(func)
    def wrapper(*args, **kwargs):
        if "user_id" not in session:
            return jsonify({"error": "authentication_required"}), 401
        return func(*args, **kwargs)

    return wrapper


def register_error_handlers(app: Flask) -> None:
    @app.errorhandler(DatabaseError)
    def handle_database_error(exc):
        app.logger.exception("Database call failed: %s", exc)
        return jsonify({"error": "database_error"}), 500

    @app.errorhandler(InvalidJSON)
    def handle_invalid_json(exc):
        app.logger.warning("Rejected malformed JSON body on %s", request.path)
        return jsonify({"error": "invalid_json"}), 400

    @app.errorhandler(404)
    def handle_not_found(exc):
        return jsonify({"error": "not_found"}), 404

    @app.errorhandler(405)
    def handle_method_not_allowed(exc):
        return jsonify({"error": "method_not_allowed"}), 405


def register_routes(app: Flask) -> None:
    @app.post("/api/register")
    def register():
        payload = _payload()
        email = (payload.get("email") or "").strip().lower()
        password = payload.get("password") or ""
        username = (payload.get("username") or "").strip() or email.split("@")[0]

        if not email or not password:
            return jsonify({"error": "missing_fields"}), 400

        if _repo().find_profile_by_email(email):
            return jsonify({"error": "email_in_use"}), 409

        user_id = _repo().create_profile(email, username, generate_password_hash(password))

        session["user_id"] = user_id
        session["email"] = email
        app.logger.info("Registered user %s", user_id)

        return jsonify({"id": user_id, "email": email, "username": username}), 201

    @app.post("/api/login")
    def login():
        payload = _payload()
        email = (payload.get("email") or "").strip().lower()
        password = payload.get("password") or ""

        if not email or not password:
            return jsonify({"error": "missing_fields"}), 400

        profile = _repo().find_profile_by_email(email)
        if not profile or not check_password_hash(profile["password"], password):
            return jsonify({"error": "invalid_credentials"}), 401

        session["user_id"] = profile["id"]
        session["email"] = profile["email"]

        return jsonify({"id": profile["id"], "email": profile["email"], "username": profile.get("username")})

    @app.post("/api/logout")
    @require_login
    def logout():
        session.clear()
        return jsonify({"status": "ok"})

    @app.get("/api/session")
    def get_session():
        if "user_id" in session:
            return jsonify(
                {
                    "authenticated": True,
                    "user": {"id": session["user_id"], "email": session.get("email")},
                }
            )
        return jsonify({"authenticated": False})

    @app.get("/api/profile")
    @require_login
    def get_profile():
        profile = _repo().get_profile(session["user_id"])
        if not profile:
            return jsonify({"error": "profile_not_found"}), 404
        return jsonify(_serialize_profile(profile))

    @app.patch("/api/profile")
    @require_login
    def update_profile():
        payload = _payload()
        updates: Dict[str, Any] = {}

        if "username" in payload:
            username = (payload.get("username") or "").strip()
            if not username:
                return jsonify({"error": "invalid_username"}), 400
            updates["username"] = username

        if "upi_qr_code_url" in payload:
            url = payload.get("upi_qr_code_url")
            if url is not None and not _is_http_url(url):
                return jsonify({"error": "invalid_qr_code_url"}), 400
            updates["upi_qr_code_url"] = url

        if not updates:
            return jsonify({"error": "missing_fields"}), 400

        _repo().update_profile(session["user_id"], updates)
        return jsonify(_serialize_profile(_repo().get_profile(session["user_id"])))

    @app.get("/api/users/search")
    @require_login
    def search_users():
        fragment = (request.args.get("email") or "").strip()
        if not fragment:
            return jsonify([])
        return jsonify(
            [
                {"id": row["id"], "email": row["email"], "username": row.get("username")}
                for row in _repo().search_profiles(fragment)
            ]
        )

    @app.get("/api/groups")
    @require_login
    def list_groups():
        user_id = session["user_id"]
        groups = []
        rows = _repo().list_groups_for_user(user_id)
        ledgers = _repo().load_ledgers([group["id"] for group in rows])
        for group in rows:
            ledger = ledgers[group["id"]]
            balances = _ledger_balances(ledger)
            summary = group_summary(ledger["expenses"], len(ledger["members"]))
            item = _serialize_group(group)
            item["member_count"] = len(ledger["members"])
            item["total_expenses"] = as_float(summary["total_expenses"])
            item["your_balance"] = as_float(balance_for(user_id, balances))
            groups.append(item)
        return jsonify(groups)

    @app.post("/api/groups")
    @require_login
    def create_group():
        payload = _payload()
        name = (payload.get("name") or "").strip()
        description = (payload.get("description") or "").strip()

        if not name:
            return jsonify({"error": "missing_group_name"}), 400

        user_id = session["user_id"]
        group_id = _repo().create_group(name, description, user_id)
        app.logger.info("User %s created group %s", user_id, group_id)

        return jsonify({"id": group_id, "name": name, "description": description, "created_by": user_id}), 201

    @app.get("/api/groups/<int:group_id>")
    @require_login
    def get_group(group_id: int):
        user_id = session["user_id"]
        if not _user_in_group(user_id, group_id):
            return jsonify({"error": "not_authorized"}), 403

        group = _repo().get_group(group_id)
        if not group:
            return jsonify({"error": "group_not_found"}), 404

        ledger = _repo().load_group_ledger(group_id)
        balances = _ledger_balances(ledger)
        summary = group_summary(ledger["expenses"], len(ledger["members"]))

        result = _serialize_group(group)
        result["is_creator"] = group["created_by"] == user_id
        result["members"] = [_serialize_member(member) for member in ledger["members"]]
        result["expenses"] = [_serialize_expense(expense) for expense in _repo().list_expenses(group_id)]
        result["summary"] = {
            "total_expenses": as_float(summary["total_expenses"]),
            "average_per_person": as_float(summary["average_per_person"]),
            "expense_count": summary["expense_count"],
        }
        result["balances"] = [_serialize_balance(balance) for balance in balances]
        result["settlements"] = _visible_settlements(group_id, user_id)
        return jsonify(result)

    @app.delete("/api/groups/<int:group_id>")
    @require_login
    def delete_group(group_id: int):
        group = _repo().get_group(group_id)
        if not group:
            return jsonify({"error": "group_not_found"}), 404

        if group["created_by"] != session["user_id"]:
            return jsonify({"error": "forbidden_only_creator"}), 403

        _repo().delete_group(group_id)
        app.logger.info("User %s deleted group %s", session["user_id"], group_id)
        return jsonify({"status": "deleted"})

    @app.get("/api/groups/<int:group_id>/members")
    @require_login
    def get_group_members(group_id: int):
        if not _user_in_group(session["user_id"], group_id):
            return jsonify({"error": "not_authorized"}), 403

        return jsonify([_serialize_member(member) for member in _repo().list_members(group_id)])

    @app.post("/api/groups/<int:group_id>/members")
    @require_login
    def add_member(group_id: int):
        group = _repo().get_group(group_id)
        if not group:
            return jsonify({"error": "group_not_found"}), 404
        if group["created_by"] != session["user_id"]:
            return jsonify({"error": "forbidden_only_creator"}), 403

        new_user_id = _as_int(_payload().get("user_id"))
        if new_user_id is None:
            return jsonify({"error": "missing_fields"}), 400

        if not _repo().get_profile(new_user_id):
            return jsonify({"error": "user_not_found"}), 404

        if _user_in_group(new_user_id, group_id):
            return jsonify({"error": "already_member"}), 409

        _repo().add_member(group_id, new_user_id)
        app.logger.info("User %s added to group %s", new_user_id, group_id)
        return jsonify({"status": "added", "user_id": new_user_id}), 201

    @app.delete("/api/groups/<int:group_id>/members/<int:member_id>")
    @require_login
    def remove_member(group_id: int, member_id: int):
        group = _repo().get_group(group_id)
        if not group:
            return jsonify({"error": "group_not_found"}), 404
        if group["created_by"] != session["user_id"]:
            return jsonify({"error": "forbidden_only_creator"}), 403
        if member_id == group["created_by"]:
            return jsonify({"error": "cannot_remove_creator"}), 400
        if not _user_in_group(member_id, group_id):
            return jsonify({"error": "member_not_found"}), 404

        _repo().remove_member(group_id, member_id)
        app.logger.info("User %s removed from group %s", member_id, group_id)
        return jsonify({"status": "removed"})

    @app.get("/api/groups/<int:group_id>/expenses")
    @require_login
    def get_group_expenses(group_id: int):
        if not _user_in_group(session["user_id"], group_id):
            return jsonify({"error": "not_authorized"}), 403

        return jsonify([_serialize_expense(expense) for expense in _repo().list_expenses(group_id)])

    @app.post("/api/groups/<int:group_id>/expenses")
    @require_login
    def add_expense(group_id: int):
        payload = _payload()
        description = (payload.get("description") or "").strip()
        amount = payload.get("amount")

        if not description or amount is None:
            return jsonify({"error": "missing_fields"}), 400

        try:
            amount_decimal = to_decimal(amount)
        except (TypeError, ValueError, InvalidOperation):
            return jsonify({"error": "invalid_amount"}), 400
        if amount_decimal <= ZERO:
            return jsonify({"error": "invalid_amount"}), 400

        if not _user_in_group(session["user_id"], group_id):
            return jsonify({"error": "not_authorized"}), 403

        member_ids = [member["user_id"] for member in _repo().list_members(group_id)]

        paid_by = payload.get("paid_by")
        paid_by = session["user_id"] if paid_by is None else _as_int(paid_by)
        if paid_by not in member_ids:
            return jsonify({"error": "payer_not_in_group"}), 400

        raw_members = payload.get("members")
        if raw_members is None:
            split_members = member_ids
        elif not isinstance(raw_members, list):
            return jsonify({"error": "invalid_split_members"}), 400
        else:
            split_members = [_as_int(value) for value in raw_members]
            if not all(user_id in member_ids for user_id in split_members):
                return jsonify({"error": "invalid_split_members"}), 400

        custom_splits = payload.get("custom_splits") or {}
        if not isinstance(custom_splits, dict):
            return jsonify({"error": "invalid_split_value"}), 400

        try:
            splits = build_splits(
                amount_decimal,
                payload.get("split_type") or "equal",
                split_members,
                split_method=payload.get("split_method"),
                custom=custom_splits,
            )
        except ValueError as exc:
            return jsonify({"error": str(exc)}), 400

        expense_id = _repo().create_expense(group_id, description, amount_decimal, paid_by, splits)
        app.logger.info("Expense %s (%s) added to group %s", expense_id, amount_decimal, group_id)

        return (
            jsonify(
                {
                    "id": expense_id,
                    "description": description,
                    "amount": as_float(amount_decimal),
                    "paid_by": paid_by,
                    "splits": [{"user_id": user_id, "amount": as_float(share)} for user_id, share in splits],
                }
            ),
            201,
        )

    @app.delete("/api/groups/<int:group_id>/expenses/<int:expense_id>")
    @require_login
    def delete_expense(group_id: int, expense_id: int):
        if not _user_in_group(session["user_id"], group_id):
            return jsonify({"error": "not_authorized"}), 403

        expense = _repo().get_expense(group_id, expense_id)
        if not expense:
            return jsonify({"error": "expense_not_found"}), 404

        # Only the user who paid the expense may delete it
        if expense["paid_by"] != session["user_id"]:
            return jsonify({"error": "forbidden_only_payer_can_delete"}), 403

        _repo().delete_expense(expense_id)
        app.logger.info("Expense %s deleted from group %s", expense_id, group_id)
        return jsonify({"status": "deleted"})

    @app.get("/api/groups/<int:group_id>/balances")
    @require_login
    def get_group_balances(group_id: int):
        if not _user_in_group(session["user_id"], group_id):
            return jsonify({"error": "not_authorized"}), 403

        balances = _ledger_balances(_repo().load_group_ledger(group_id))
        transfers = simplify_debts(balances)
        return jsonify(
            {
                "balances": [_serialize_balance(balance) for balance in balances],
                "settlements": [dict(transfer, amount=as_float(transfer["amount"])) for transfer in transfers],
            }
        )

    @app.get("/api/groups/<int:group_id>/settlements")
    @require_login
    def get_group_settlements(group_id: int):
        if not _user_in_group(session["user_id"], group_id):
            return jsonify({"error": "not_authorized"}), 403

        return jsonify(_visible_settlements(group_id, session["user_id"]))

    @app.post("/api/groups/<int:group_id>/settlements")
    @require_login
    def create_settlement(group_id: int):
        debtor_id = session["user_id"]
        if not _user_in_group(debtor_id, group_id):
            return jsonify({"error": "not_authorized"}), 403

        payload = _payload()
        creditor_id = _as_int(payload.get("to_user"))
        if creditor_id is None:
            return jsonify({"error": "missing_fields"}), 400
        if not _user_in_group(creditor_id, group_id):
            return jsonify({"error": "user_not_in_group"}), 400

        def choose_amount(ledger):
            return validate_new_settlement(
                debtor_id,
                creditor_id,
                payload.get("amount"),
                _ledger_balances(ledger),
                ledger["settlements"],
            )

        try:
            settlement_id, amount = _repo().create_settlement(group_id, debtor_id, creditor_id, choose_amount)
        except SettlementError as exc:
            return jsonify({"error": exc.code}), exc.status

        app.logger.info(
            "Settlement %s opened in group %s: %s -> %s (%s)",
            settlement_id,
            group_id,
            debtor_id,
            creditor_id,
            amount,
        )
        return jsonify(_serialize_settlement(_repo().get_settlement(settlement_id), debtor_id)), 201

    @app.post("/api/settlements/<int:settlement_id>/mark-sent")
    @require_login
    def mark_settlement_sent(settlement_id: int):
        payment_method = _payload().get("payment_method")
        return _transition_settlement(
            settlement_id,
            lambda settlement, user_id: mark_sent(settlement, user_id, payment_method),
        )

    @app.post("/api/settlements/<int:settlement_id>/confirm")
    @require_login
    def confirm_settlement(settlement_id: int):
        return _transition_settlement(settlement_id, confirm_received)


def _repo() -> Repository:
    return current_app.extensions["repository"]


def _payload() -> Dict[str, Any]:
    if not request.get_data().strip():
        return {}
    payload = request.get_json(force=True, silent=True)
    if not isinstance(payload, dict):
        raise InvalidJSON()
    return payload


def _as_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def _is_http_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _user_in_group(user_id: Optional[int], group_id: int) -> bool:
    if user_id is None:
        return False
    return _repo().is_member(group_id, user_id)


def _ledger_balances(ledger: Dict[str, List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    return compute_balances(ledger["members"], ledger["expenses"], ledger["splits"], ledger["settlements"])


def _visible_settlements(group_id: int, user_id: int) -> List[Dict[str, Any]]:
    return [
        _serialize_settlement(settlement, user_id)
        for settlement in _repo().list_settlements(group_id)
        if visible_to(settlement, user_id)
    ]


def _transition_settlement(settlement_id: int, transition):
    user_id = session["user_id"]
    settlement = _repo().get_settlement(settlement_id)
    if not settlement or not _user_in_group(user_id, settlement["group_id"]):
        return jsonify({"error": "settlement_not_found"}), 404

    try:
        updates = transition(settlement, user_id)
    except SettlementError as exc:
        current_app.logger.warning(
            "Rejected settlement %s change by user %s: %s", settlement_id, user_id, exc.code
        )
        return jsonify({"error": exc.code}), exc.status

    if not _repo().update_settlement(settlement_id, updates, expected_status=settlement["status"]):
        return jsonify({"error": "settlement_changed"}), 409

    current_app.logger.info(
        "Settlement %s moved %s -> %s by user %s", settlement_id, settlement["status"], updates["status"], user_id
    )
    return jsonify(_serialize_settlement(_repo().get_settlement(settlement_id), user_id))


def _iso(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _serialize_profile(profile: Dict[str, Any]) -> Dict[str, Any]:
    email = profile.get("email") or ""
    return {
        "id": profile["id"],
        "email": email,
        "username": profile.get("username") or email.split("@")[0],
        "upi_qr_code_url": profile.get("upi_qr_code_url"),
        "created_at": _iso(profile.get("created_at")),
    }


def _serialize_group(group: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": group["id"],
        "name": group["name"],
        "description": group.get("description") or "",
        "created_by": group["created_by"],
        "created_at": _iso(group.get("created_at")),
    }


def _serialize_member(member: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": member.get("id"),
        "user_id": member["user_id"],
        "email": member.get("email"),
        "username": member.get("username"),
        "upi_qr_code_url": member.get("upi_qr_code_url"),
        "joined_at": _iso(member.get("joined_at")),
    }


def _serialize_expense(expense: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": expense["id"],
        "description": expense["description"],
        "amount": as_float(to_decimal(expense["amount"])),
        "paid_by": expense["paid_by"],
        "paid_by_email": expense.get("paid_by_email"),
        "created_at": _iso(expense.get("created_at")),
        "splits": [
            {
                "user_id": split["user_id"],
                "email": split.get("email"),
                "amount": as_float(to_decimal(split["amount"])),
            }
            for split in expense.get("splits", [])
        ],
    }


def _serialize_balance(balance: Dict[str, Any]) -> Dict[str, Any]:
    return dict(balance, balance=as_float(balance["balance"]))


def _serialize_settlement(settlement: Dict[str, Any], user_id: int) -> Dict[str, Any]:
    result = {
        "id": settlement["id"],
        "group_id": settlement["group_id"],
        "from_user": settlement["from_user"],
        "to_user": settlement["to_user"],
        "amount": as_float(to_decimal(settlement["amount"])),
        "status": settlement["status"],
        "payment_method": settlement.get("payment_method"),
        "created_at": _iso(settlement.get("created_at")),
        "settled_at": _iso(settlement.get("settled_at")),
    }
    for key in ("from_user_email", "to_user_email", "to_user_qr_code"):
        if key in settlement:
            result[key] = settlement[key]
    result.update(describe(settlement, user_id))
    return result


app = create_app()


if __name__ == "__main__":
    app.run(debug=True)
