from __future__ import annotations

from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .db import Database, db as default_db

UNKNOWN_EMAIL = "Unknown"

Ledger = Dict[str, List[Dict[str, Any]]]

PROFILE_COLUMNS = "id, email, username, upi_qr_code_url, created_at"


def _placeholders(values: Sequence[Any]) -> str:
    return ", ".join(["%s"] * len(values))


class Repository:
    """SQL access for groups, expenses, splits, and settlements."""

    def __init__(self, database: Optional[Database] = None) -> None:
        self.db = database or default_db

    def _rows(self, query: str, params: Sequence[Any], cursor=None) -> List[Dict[str, Any]]:
        # An open transaction cursor keeps reads inside that transaction.
        if cursor is None:
            return list(self.db.fetch_all(query, params))
        cursor.execute(query, params)
        return list(cursor.fetchall())

    # Profiles

    def get_profile(self, user_id: int) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one(f"SELECT {PROFILE_COLUMNS} FROM profiles WHERE id=%s", (user_id,))

    def find_profile_by_email(self, email: str) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one(
            f"SELECT {PROFILE_COLUMNS}, password FROM profiles WHERE email=%s",
            (email,),
        )

    def create_profile(self, email: str, username: str, password_hash: str) -> int:
        return self.db.execute(
            "INSERT INTO profiles (email, username, password) VALUES (%s, %s, %s)",
            (email, username, password_hash),
        )

    def update_profile(self, user_id: int, updates: Dict[str, Any]) -> None:
        allowed = [key for key in ("username", "upi_qr_code_url") if key in updates]
        if not allowed:
            return
        assignments = ", ".join(f"{key}=%s" for key in allowed)
        self.db.execute(
            f"UPDATE profiles SET {assignments} WHERE id=%s",
            [updates[key] for key in allowed] + [user_id],
        )

    def search_profiles(self, fragment: str, limit: int = 10) -> List[Dict[str, Any]]:
        # MySQL's default collation makes LIKE case-insensitive.
        escaped = fragment.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
        return list(
            self.db.fetch_all(
                "SELECT id, email, username FROM profiles WHERE email LIKE %s ORDER BY email LIMIT %s",
                (f"%{escaped}%", limit),
            )
        )

    def profiles_by_id(self, user_ids: Iterable[int]) -> Dict[int, Dict[str, Any]]:
        user_ids = sorted(set(user_ids))
        if not user_ids:
            return {}
        rows = self.db.fetch_all(
            f"SELECT id, email, username, upi_qr_code_url FROM profiles WHERE id IN ({_placeholders(user_ids)})",
            user_ids,
        )
        return {row["id"]: row for row in rows}

    # Groups

    def list_groups_for_user(self, user_id: int) -> List[Dict[str, Any]]:
        return list(
            self.db.fetch_all(
                """
                SELECT g.id, g.name, g.description, g.created_by, g.created_at
                FROM `groups` g
                JOIN group_members gm ON gm.group_id = g.id
                WHERE gm.user_id = %s
                ORDER BY g.created_at DESC, g.id DESC
                """,
                (user_id,),
            )
        )

    def get_group(self, group_id: int) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one(
            "SELECT id, name, description, created_by, created_at FROM `groups` WHERE id=%s",
            (group_id,),
        )

    def create_group(self, name: str, description: str, created_by: int) -> int:
        with self.db.transaction() as cursor:
            cursor.execute(
                "INSERT INTO `groups` (name, description, created_by) VALUES (%s, %s, %s)",
                (name, description, created_by),
            )
            group_id = cursor.lastrowid
            cursor.execute(
                "INSERT INTO group_members (group_id, user_id) VALUES (%s, %s)",
                (group_id, created_by),
            )
        return group_id

    def delete_group(self, group_id: int) -> None:
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                DELETE es FROM expense_splits es
                JOIN expenses e ON es.expense_id = e.id
                WHERE e.group_id=%s
                """,
                (group_id,),
            )
            cursor.execute("DELETE FROM expenses WHERE group_id=%s", (group_id,))
            cursor.execute("DELETE FROM settlements WHERE group_id=%s", (group_id,))
            cursor.execute("DELETE FROM group_members WHERE group_id=%s", (group_id,))
            cursor.execute("DELETE FROM `groups` WHERE id=%s", (group_id,))

    # Members

    def _member_rows(self, group_ids: Sequence[int], cursor=None) -> List[Dict[str, Any]]:
        rows = self._rows(
            f"""
            SELECT gm.id, gm.group_id, gm.user_id, gm.joined_at, p.email, p.username, p.upi_qr_code_url
            FROM group_members gm
            LEFT JOIN profiles p ON gm.user_id = p.id
            WHERE gm.group_id IN ({_placeholders(group_ids)})
            ORDER BY gm.joined_at, gm.id
            """,
            list(group_ids),
            cursor,
        )
        for member in rows:
            member["email"] = member.get("email") or UNKNOWN_EMAIL
        return rows

    def list_members(self, group_id: int) -> List[Dict[str, Any]]:
        return self._member_rows([group_id])

    def is_member(self, group_id: int, user_id: int) -> bool:
        record = self.db.fetch_one(
            "SELECT id FROM group_members WHERE group_id=%s AND user_id=%s",
            (group_id, user_id),
        )
        return record is not None

    def add_member(self, group_id: int, user_id: int) -> int:
        return self.db.execute(
            "INSERT INTO group_members (group_id, user_id) VALUES (%s, %s)",
            (group_id, user_id),
        )

    def remove_member(self, group_id: int, user_id: int) -> None:
        self.db.execute(
            "DELETE FROM group_members WHERE group_id=%s AND user_id=%s",
            (group_id, user_id),
        )

    # Expenses

    def list_splits(self, expense_ids: Sequence[int], cursor=None) -> List[Dict[str, Any]]:
        if not expense_ids:
            return []
        return self._rows(
            f"""
            SELECT id, expense_id, user_id, amount
            FROM expense_splits
            WHERE expense_id IN ({_placeholders(expense_ids)})
            """,
            list(expense_ids),
            cursor,
        )

    def _expense_rows(self, group_ids: Sequence[int], cursor=None) -> List[Dict[str, Any]]:
        return self._rows(
            f"""
            SELECT id, group_id, description, amount, paid_by, created_at
            FROM expenses
            WHERE group_id IN ({_placeholders(group_ids)})
            ORDER BY created_at DESC, id DESC
            """,
            list(group_ids),
            cursor,
        )

    def list_expenses(self, group_id: int) -> List[Dict[str, Any]]:
        expenses = self._expense_rows([group_id])
        splits = self.list_splits([expense["id"] for expense in expenses])

        profiles = self.profiles_by_id(
            [expense["paid_by"] for expense in expenses] + [split["user_id"] for split in splits]
        )

        splits_map: Dict[int, List[Dict[str, Any]]] = {}
        for split in splits:
            profile = profiles.get(split["user_id"]) or {}
            splits_map.setdefault(split["expense_id"], []).append(
                dict(split, email=profile.get("email") or UNKNOWN_EMAIL)
            )

        for expense in expenses:
            payer = profiles.get(expense["paid_by"]) or {}
            expense["paid_by_email"] = payer.get("email") or UNKNOWN_EMAIL
            expense["splits"] = splits_map.get(expense["id"], [])
        return expenses

    def get_expense(self, group_id: int, expense_id: int) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one(
            "SELECT id, group_id, description, amount, paid_by, created_at FROM expenses WHERE id=%s AND group_id=%s",
            (expense_id, group_id),
        )

    def create_expense(
        self,
        group_id: int,
        description: str,
        amount: Decimal,
        paid_by: int,
        splits: Sequence[Tuple[int, Decimal]],
    ) -> int:
        with self.db.transaction() as cursor:
            cursor.execute(
                """
                INSERT INTO expenses (group_id, description, amount, paid_by)
                VALUES (%s, %s, %s, %s)
                """,
                (group_id, description, str(amount), paid_by),
            )
            expense_id = cursor.lastrowid
            for user_id, share_amount in splits:
                cursor.execute(
                    """
                    INSERT INTO expense_splits (expense_id, user_id, amount)
                    VALUES (%s, %s, %s)
                    """,
                    (expense_id, user_id, str(share_amount)),
                )
        return expense_id

    def delete_expense(self, expense_id: int) -> None:
        with self.db.transaction() as cursor:
            cursor.execute("DELETE FROM expense_splits WHERE expense_id=%s", (expense_id,))
            cursor.execute("DELETE FROM expenses WHERE id=%s", (expense_id,))

    # Settlements

    def _settlement_rows(self, group_ids: Sequence[int], cursor=None) -> List[Dict[str, Any]]:
        return self._rows(
            f"""
            SELECT id, group_id, from_user, to_user, amount, status, payment_method,
                   created_at, settled_at
            FROM settlements
            WHERE group_id IN ({_placeholders(group_ids)})
            ORDER BY created_at DESC, id DESC
            """,
            list(group_ids),
            cursor,
        )

    def list_settlements(self, group_id: int) -> List[Dict[str, Any]]:
        settlements = self._settlement_rows([group_id])
        profiles = self.profiles_by_id(
            [s["from_user"] for s in settlements] + [s["to_user"] for s in settlements]
        )
        for settlement in settlements:
            debtor = profiles.get(settlement["from_user"]) or {}
            creditor = profiles.get(settlement["to_user"]) or {}
            settlement["from_user_email"] = debtor.get("email") or UNKNOWN_EMAIL
            settlement["to_user_email"] = creditor.get("email") or UNKNOWN_EMAIL
            settlement["to_user_qr_code"] = creditor.get("upi_qr_code_url")
        return settlements

    def get_settlement(self, settlement_id: int) -> Optional[Dict[str, Any]]:
        return self.db.fetch_one(
            """
            SELECT id, group_id, from_user, to_user, amount, status, payment_method,
                   created_at, settled_at
            FROM settlements WHERE id=%s
            """,
            (settlement_id,),
        )

    def create_settlement(
        self,
        group_id: int,
        from_user: int,
        to_user: int,
        choose_amount: Callable[[Ledger], Decimal],
    ) -> Tuple[int, Decimal]:
        """Insert a pending settlement for the amount ``choose_amount`` picks.

        The group row is locked before the ledger is read, so two requests for
        the same group see each other's open settlements. Anything raised by
        ``choose_amount`` rolls the transaction back.
        """
        with self.db.transaction() as cursor:
            cursor.execute("SELECT id FROM `groups` WHERE id=%s FOR UPDATE", (group_id,))
            cursor.fetchall()
            amount = choose_amount(self.load_ledgers([group_id], cursor=cursor)[group_id])
            cursor.execute(
                """
                INSERT INTO settlements (group_id, from_user, to_user, amount, status)
                VALUES (%s, %s, %s, %s, 'pending')
                """,
                (group_id, from_user, to_user, str(amount)),
            )
            settlement_id = cursor.lastrowid
        return settlement_id, amount

    def update_settlement(self, settlement_id: int, updates: Dict[str, Any], expected_status: str) -> bool:
        """Apply ``updates`` only if the row is still in ``expected_status``.

        A ``settled_at`` of ``None`` is stamped by MySQL so it shares the
        session time zone with the other timestamp columns.
        """
        assignments = []
        params: List[Any] = []
        for key in ("status", "payment_method", "settled_at"):
            if key not in updates:
                continue
            if key == "settled_at" and updates[key] is None:
                assignments.append("settled_at=CURRENT_TIMESTAMP")
            else:
                assignments.append(f"{key}=%s")
                params.append(updates[key])
        assignment_sql = ", ".join(assignments)
        changed = self.db.execute_rowcount(
            f"UPDATE settlements SET {assignment_sql} WHERE id=%s AND status=%s",
            params + [settlement_id, expected_status],
        )
        return changed > 0

    # Ledger

    def load_ledgers(self, group_ids: Iterable[int], cursor=None) -> Dict[int, Ledger]:
        """Members, expenses, splits and settlements for several groups.

        Runs the same four queries however many groups are asked for.
        """
        group_ids = list(dict.fromkeys(group_ids))
        ledgers: Dict[int, Ledger] = {
            group_id: {"members": [], "expenses": [], "splits": [], "settlements": []} for group_id in group_ids
        }
        if not group_ids:
            return ledgers

        for member in self._member_rows(group_ids, cursor):
            ledgers[member["group_id"]]["members"].append(member)

        expenses = self._expense_rows(group_ids, cursor)
        expense_groups = {}
        for expense in expenses:
            ledgers[expense["group_id"]]["expenses"].append(expense)
            expense_groups[expense["id"]] = expense["group_id"]

        for split in self.list_splits(list(expense_groups), cursor):
            ledgers[expense_groups[split["expense_id"]]]["splits"].append(split)

        for settlement in self._settlement_rows(group_ids, cursor):
            ledgers[settlement["group_id"]]["settlements"].append(settlement)
        return ledgers

    def load_group_ledger(self, group_id: int) -> Ledger:
        return self.load_ledgers([group_id])[group_id]


repository = Repository()
