from __future__ import annotations
import os
from contextlib import contextmanager
from typing import Optional

import psycopg
from psycopg.rows import dict_row


def dsn_from_env() -> Optional[str]:
    return os.getenv("GKRUN_DATABASE_URL") or os.getenv("PGDSN")


def connect(dsn: Optional[str] = None):
    dsn = dsn or dsn_from_env()
    if dsn:
        return psycopg.connect(dsn)
    # libpq defaults: PGHOST/PGPORT/PGDATABASE/PGUSER/PGPASSWORD
    return psycopg.connect()


@contextmanager
def cx(dsn: Optional[str] = None):
    conn = connect(dsn)
    try:
        yield conn
    finally:
        conn.close()


def fetchall_dict(conn, sql: str, params=None):
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(sql, params or ())
        return cur.fetchall()


def fetchone_dict(conn, sql: str, params=None):
    with conn.cursor(row_factory=dict_row) as cur:
        cur.execute(sql, params or ())
        return cur.fetchone()


def execute(conn, sql: str, params=None):
    with conn.cursor() as cur:
        cur.execute(sql, params or ())
    conn.commit()
