import itertools
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from werkzeug.security import generate_password_hash

from groupsplit.app import create_app
from groupsplit.repository import UNKNOWN_EMAIL


class FakeRepository:
    """In-memory stand-in for ``Repository`` with the same return shapes."""

    def __init__(self):
        self._ids = itertools.count(1)
        self._clock = datetime(2024, 1, 1, 12, 0, 0)
        self.profiles = {}
        self.groups = {}
        self.members = []
        self.expenses = {}
        self.splits = []
        self.settlements = {}
        self.ledger_loads = 0

    def _next_id(self):
        return next(self._ids)

    def _now(self):
        self._clock += timedelta(minutes=1)
        return self._clock

    # Profiles

    def get_profile(self, user_id):
        profile = self.profiles.get(user_id)
        if not profile:
            return None
        return {key: value for key, value in profile.items() if key != "password"}

    def find_profile_by_email(self, email):
        for profile in self.profiles.values():
            if profile["email"] == email:
                return dict(profile)
        return None

    def create_profile(self, email, username, password_hash):
        user_id = self._next_id()
        self.profiles[user_id] = {
            "id": user_id,
            "email": email,
            "username": username,
            "password": password_hash,
            "upi_qr_code_url": None,
            "created_at": self._now(),
        }
        return user_id

    def update_profile(self, user_id, updates):
        self.profiles[user_id].update(updates)

    def search_profiles(self, fragment, limit=10):
        fragment = fragment.lower()
        rows = [
            {"id": p["id"], "email": p["email"], "username": p["username"]}
            for p in self.profiles.values()
            if fragment in p["email"].lower()
        ]
        return sorted(rows, key=lambda row: row["email"])[:limit]

    # Groups

    def list_groups_for_user(self, user_id):
        group_ids = {m["group_id"] for m in self.members if m["user_id"] == user_id}
        groups = [dict(self.groups[gid]) for gid in group_ids]
        return sorted(groups, key=lambda g: (g["created_at"], g["id"]), reverse=True)

    def get_group(self, group_id):
        group = self.groups.get(group_id)
        return dict(group) if group else None

    def create_group(self, name, description, created_by):
        group_id = self._next_id()
        self.groups[group_id] = {
            "id": group_id,
            "name": name,
            "description": description,
            "created_by": created_by,
            "created_at": self._now(),
        }
        self.add_member(group_id, created_by)
        return group_id

    def delete_group(self, group_id):
        expense_ids = {e["id"] for e in self.expenses.values() if e["group_id"] == group_id}
        self.splits = [s for s in self.splits if s["expense_id"] not in expense_ids]
        for expense_id in expense_ids:
            del self.expenses[expense_id]
        self.settlements = {k: s for k, s in self.settlements.items() if s["group_id"] != group_id}
        self.members = [m for m in self.members if m["group_id"] != group_id]
        del self.groups[group_id]

    # Members

    def list_members(self, group_id):
        members = []
        for member in self.members:
            if member["group_id"] != group_id:
                continue
            profile = self.profiles.get(member["user_id"]) or {}
            members.append(
                {
                    "id": member["id"],
                    "user_id": member["user_id"],
                    "joined_at": member["joined_at"],
                    "email": profile.get("email") or UNKNOWN_EMAIL,
                    "username": profile.get("username"),
                    "upi_qr_code_url": profile.get("upi_qr_code_url"),
                }
            )
        return members

    def is_member(self, group_id, user_id):
        return any(m["group_id"] == group_id and m["user_id"] == user_id for m in self.members)

    def add_member(self, group_id, user_id):
        member_id = self._next_id()
        self.members.append(
            {"id": member_id, "group_id": group_id, "user_id": user_id, "joined_at": self._now()}
        )
        return member_id

    def remove_member(self, group_id, user_id):
        self.members = [
            m for m in self.members if not (m["group_id"] == group_id and m["user_id"] == user_id)
        ]

    # Expenses

    def list_splits(self, expense_ids):
        return [dict(s) for s in self.splits if s["expense_id"] in set(expense_ids)]

    def _expense_rows(self, group_id):
        rows = [dict(e) for e in self.expenses.values() if e["group_id"] == group_id]
        return sorted(rows, key=lambda e: (e["created_at"], e["id"]), reverse=True)

    def list_expenses(self, group_id):
        expenses = self._expense_rows(group_id)
        for expense in expenses:
            payer = self.profiles.get(expense["paid_by"]) or {}
            expense["paid_by_email"] = payer.get("email") or UNKNOWN_EMAIL
            expense["splits"] = [
                dict(s, email=(self.profiles.get(s["user_id"]) or {}).get("email") or UNKNOWN_EMAIL)
                for s in self.splits
                if s["expense_id"] == expense["id"]
            ]
        return expenses

    def get_expense(self, group_id, expense_id):
        expense = self.expenses.get(expense_id)
        if not expense or expense["group_id"] != group_id:
            return None
        return dict(expense)

    def create_expense(self, group_id, description, amount, paid_by, splits):
        expense_id = self._next_id()
        self.expenses[expense_id] = {
            "id": expense_id,
            "group_id": group_id,
            "description": description,
            "amount": Decimal(amount),
            "paid_by": paid_by,
            "created_at": self._now(),
        }
        for user_id, share in splits:
            self.splits.append(
                {"id": self._next_id(), "expense_id": expense_id, "user_id": user_id, "amount": Decimal(share)}
            )
        return expense_id

    def delete_expense(self, expense_id):
        self.splits = [s for s in self.splits if s["expense_id"] != expense_id]
        del self.expenses[expense_id]

    # Settlements

    def _settlement_rows(self, group_id):
        rows = [dict(s) for s in self.settlements.values() if s["group_id"] == group_id]
        return sorted(rows, key=lambda s: (s["created_at"], s["id"]), reverse=True)

    def list_settlements(self, group_id):
        settlements = self._settlement_rows(group_id)
        for settlement in settlements:
            debtor = self.profiles.get(settlement["from_user"]) or {}
            creditor = self.profiles.get(settlement["to_user"]) or {}
            settlement["from_user_email"] = debtor.get("email") or UNKNOWN_EMAIL
            settlement["to_user_email"] = creditor.get("email") or UNKNOWN_EMAIL
            settlement["to_user_qr_code"] = creditor.get("upi_qr_code_url")
        return settlements

    def get_settlement(self, settlement_id):
        settlement = self.settlements.get(settlement_id)
        return dict(settlement) if settlement else None

    def create_settlement(self, group_id, from_user, to_user, choose_amount):
        amount = choose_amount(self.load_group_ledger(group_id))
        settlement_id = self._next_id()
        self.settlements[settlement_id] = {
            "id": settlement_id,
            "group_id": group_id,
            "from_user": from_user,
            "to_user": to_user,
            "amount": Decimal(amount),
            "status": "pending",
            "payment_method": None,
            "created_at": self._now(),
            "settled_at": None,
        }
        return settlement_id, amount

    def update_settlement(self, settlement_id, updates, expected_status):
        settlement = self.settlements.get(settlement_id)
        if not settlement or settlement["status"] != expected_status:
            return False
        settlement.update(updates)
        if "settled_at" in updates and updates["settled_at"] is None:
            settlement["settled_at"] = self._now()
        return True

    # Ledger

    def load_ledgers(self, group_ids):
        self.ledger_loads += 1
        ledgers = {}
        for group_id in group_ids:
            expenses = self._expense_rows(group_id)
            ledgers[group_id] = {
                "members": self.list_members(group_id),
                "expenses": expenses,
                "splits": self.list_splits([e["id"] for e in expenses]),
                "settlements": self._settlement_rows(group_id),
            }
        return ledgers

    def load_group_ledger(self, group_id):
        return self.load_ledgers([group_id])[group_id]


@pytest.fixture
def repo():
    return FakeRepository()


@pytest.fixture
def app(repo):
    return create_app({"TESTING": True}, repo=repo)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def make_user(repo):
    def _make_user(email, password="secret"):
        return repo.create_profile(email, email.split("@")[0], generate_password_hash(password))

    return _make_user


@pytest.fixture
def login_as(client):
    def _login_as(user_id):
        with client.session_transaction() as sess:
            sess["user_id"] = user_id

    return _login_as


@pytest.fixture
def trip(repo, make_user):
    """A group of three: alice (creator), bob, carol."""
    alice = make_user("alice@example.com")
    bob = make_user("bob@example.com")
    carol = make_user("carol@example.com")
    group_id = repo.create_group("Trip", "Beach weekend", alice)
    repo.add_member(group_id, bob)
    repo.add_member(group_id, carol)
    return {"group_id": group_id, "alice": alice, "bob": bob, "carol": carol}
