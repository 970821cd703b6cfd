from contextlib import contextmanager
from typing import Any, Dict, Iterable, Optional

import mysql.connector
from mysql.connector import pooling

from .config import config


class Database:
    def __init__(self) -> None:
        self._pool: Optional[pooling.MySQLConnectionPool] = None

    @property
    def pool(self) -> pooling.MySQLConnectionPool:
        # Created on first use so importing the app never touches MySQL.
        if self._pool is None:
            self._pool = pooling.MySQLConnectionPool(
                pool_name="groupsplit_pool",
                pool_size=config.DB_POOL_SIZE,
                host=config.DB_HOST,
                port=config.DB_PORT,
                user=config.DB_USER,
                password=config.DB_PASSWORD,
                database=config.DB_NAME,
                auth_plugin="mysql_native_password",
            )
        return self._pool

    @contextmanager
    def connection(self):
        conn = self.pool.get_connection()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def cursor(self, dictionary: bool = True):
        with self.connection() as conn:
            cursor = conn.cursor(dictionary=dictionary)
            try:
                yield cursor
                conn.commit()
            except Exception:
                conn.rollback()
                raise
            finally:
                cursor.close()

    @contextmanager
    def transaction(self):
        """Run several statements on one cursor, committed together."""
        with self.cursor() as cursor:
            yield cursor

    def fetch_one(self, query: str, params: Optional[Iterable[Any]] = None) -> Optional[Dict[str, Any]]:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.fetchone()

    def fetch_all(self, query: str, params: Optional[Iterable[Any]] = None) -> Iterable[Dict[str, Any]]:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.fetchall()

    def execute(self, query: str, params: Optional[Iterable[Any]] = None) -> int:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.lastrowid

    def execute_rowcount(self, query: str, params: Optional[Iterable[Any]] = None) -> int:
        with self.cursor() as cursor:
            cursor.execute(query, params or ())
            return cursor.rowcount


DatabaseError = mysql.connector.Error

db = Database()
