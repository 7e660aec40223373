"""
Repository pattern for data access.

Persists ledger state and the relayer's anchor audit trail in SQLite.
"""

import json
import logging
import sqlite3
from datetime import datetime
from typing import Dict, List, Mapping, Optional, TypeVar

from edgecharge.core.codec import hash_from_hex, to_hex
from edgecharge.core.errors import StaleStateError
from edgecharge.ledger.state import Invoice, LedgerEvent, LedgerState, UsageAnchor
from edgecharge.ledger.store import LedgerStore

from .db import DEFAULT_DB_PATH, get_connection
from .models import AnchorRecord

logger = logging.getLogger(__name__)

K = TypeVar("K")
V = TypeVar("V")


def initialize_schema(db_path: str = DEFAULT_DB_PATH) -> None:
    """Create ledger and audit tables if they don't exist.

    Amounts and time windows are stored as TEXT because they may exceed
    SQLite's signed 64-bit integers. Events and audit rows are append-only.

    Args:
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS ledger_meta (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                owner TEXT NOT NULL,
                paused INTEGER NOT NULL DEFAULT 0,
                next_invoice_id INTEGER NOT NULL DEFAULT 1,
                revision INTEGER NOT NULL DEFAULT 0
            );
            CREATE TABLE IF NOT EXISTS relayers (
                address TEXT PRIMARY KEY
            );
            CREATE TABLE IF NOT EXISTS usage_anchors (
                anchor_id TEXT PRIMARY KEY,
                provider TEXT NOT NULL,
                window_start TEXT NOT NULL,
                window_end TEXT NOT NULL,
                merkle_root TEXT NOT NULL,
                total_usage TEXT NOT NULL,
                disputed INTEGER NOT NULL DEFAULT 0
            );
            CREATE TABLE IF NOT EXISTS invoices (
                invoice_id INTEGER PRIMARY KEY,
                enterprise TEXT NOT NULL,
                provider TEXT NOT NULL,
                amount TEXT NOT NULL,
                invoice_hash TEXT NOT NULL,
                paid INTEGER NOT NULL DEFAULT 0
            );
            CREATE TABLE IF NOT EXISTS escrow_accounts (
                enterprise TEXT PRIMARY KEY,
                balance TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS provider_balances (
                provider TEXT PRIMARY KEY,
                balance TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS ledger_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                name TEXT NOT NULL,
                data TEXT NOT NULL
            );
            CREATE TABLE IF NOT EXISTS anchor_audit (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                submitted_at TEXT NOT NULL,
                anchor_id TEXT,
                provider TEXT NOT NULL,
                window_start TEXT NOT NULL,
                window_end TEXT NOT NULL,
                merkle_root TEXT NOT NULL,
                total_usage TEXT NOT NULL,
                leaf_count INTEGER NOT NULL,
                status TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 1,
                error TEXT
            );
        """)
    finally:
        conn.close()


class SqliteLedgerStore(LedgerStore):
    """Durable ledger store.

    A commit opens an immediate transaction, checks that the stored revision
    still matches the revision the new state was built on, and writes only
    the rows that changed together with the events. Two stores on one file
    therefore cannot overwrite each other's updates, and a crash mid-commit
    leaves the previous state intact.
    """

    def __init__(self, db_path: str = DEFAULT_DB_PATH, owner: Optional[str] = None):
        """Open (and if needed create) a ledger database.

        Args:
            db_path: Path to SQLite database file
            owner: Owner address for a new ledger; ignored if one exists

        Raises:
            ValueError: If the database is new and no owner is given
        """
        self.db_path = db_path
        initialize_schema(db_path)

        conn = get_connection(db_path)
        try:
            row = conn.execute("SELECT owner FROM ledger_meta WHERE id = 1").fetchone()
            if row is None:
                if owner is None:
                    raise ValueError("owner is required to create a new ledger")
                genesis = LedgerState.genesis(owner)
                conn.execute(
                    "INSERT INTO ledger_meta (id, owner, paused, next_invoice_id, revision) VALUES (1, ?, 0, 1, 0)",
                    (genesis.owner,),
                )
            elif owner is not None and row[0] != owner.lower():
                logger.warning("Ignoring owner %s; ledger at %s is owned by %s", owner, db_path, row[0])
        finally:
            conn.close()

    def load(self) -> LedgerState:
        conn = get_connection(self.db_path)
        try:
            return _read_state(conn)
        finally:
            conn.close()

    def commit(self, state: LedgerState, events: List[LedgerEvent]) -> None:
        """Write the changed rows and the events atomically.

        Raises:
            StaleStateError: If another writer committed since state was loaded
        """
        conn = get_connection(self.db_path)
        try:
            conn.execute("BEGIN IMMEDIATE")
            current = _read_state(conn)
            if current.revision != state.revision:
                raise StaleStateError(
                    f"Commit based on revision {state.revision}, ledger is at {current.revision}"
                )

            conn.execute(
                "UPDATE ledger_meta SET owner = ?, paused = ?, next_invoice_id = ?, revision = ? WHERE id = 1",
                (state.owner, int(state.paused), state.next_invoice_id, state.revision + 1),
            )
            conn.executemany(
                "INSERT INTO relayers (address) VALUES (?)",
                [(r,) for r in sorted(state.relayers - current.relayers)],
            )
            conn.executemany(
                "DELETE FROM relayers WHERE address = ?",
                [(r,) for r in sorted(current.relayers - state.relayers)],
            )
            conn.executemany("""
                INSERT OR REPLACE INTO usage_anchors
                (anchor_id, provider, window_start, window_end, merkle_root, total_usage, disputed)
                VALUES (?, ?, ?, ?, ?, ?, ?)
            """, [
                (
                    to_hex(a.anchor_id),
                    a.provider,
                    str(a.window_start),
                    str(a.window_end),
                    to_hex(a.merkle_root),
                    str(a.total_usage),
                    int(a.disputed),
                )
                for a in _changed(current.anchors, state.anchors)
            ])
            conn.executemany("""
                INSERT OR REPLACE INTO invoices
                (invoice_id, enterprise, provider, amount, invoice_hash, paid)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [
                (i.invoice_id, i.enterprise, i.provider, str(i.amount), to_hex(i.invoice_hash), int(i.paid))
                for i in _changed(current.invoices, state.invoices)
            ])
            conn.executemany(
                "INSERT OR REPLACE INTO escrow_accounts (enterprise, balance) VALUES (?, ?)",
                [(k, str(v)) for k, v in state.escrow.items() if current.escrow.get(k) != v],
            )
            conn.executemany(
                "INSERT OR REPLACE INTO provider_balances (provider, balance) VALUES (?, ?)",
                [(k, str(v)) for k, v in state.balances.items() if current.balances.get(k) != v],
            )
            conn.executemany(
                "INSERT INTO ledger_events (name, data) VALUES (?, ?)",
                [(e.name, json.dumps(dict(e.data), sort_keys=True)) for e in events],
            )
            conn.execute("COMMIT")
        except Exception:
            conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

    def events(self) -> List[LedgerEvent]:
        conn = get_connection(self.db_path)
        try:
            return [
                LedgerEvent(name=row[0], data=json.loads(row[1]))
                for row in conn.execute("SELECT name, data FROM ledger_events ORDER BY id")
            ]
        finally:
            conn.close()


def _changed(before: Mapping[K, V], after: Mapping[K, V]) -> List[V]:
    """Values in after that are new or differ from before."""
    return [value for key, value in after.items() if before.get(key) != value]


def _read_state(conn: sqlite3.Connection) -> LedgerState:
    owner, paused, next_invoice_id, revision = conn.execute(
        "SELECT owner, paused, next_invoice_id, revision FROM ledger_meta WHERE id = 1"
    ).fetchone()
    relayers = frozenset(r[0] for r in conn.execute("SELECT address FROM relayers"))

    anchors: Dict[bytes, UsageAnchor] = {}
    for row in conn.execute("""
        SELECT anchor_id, provider, window_start, window_end,
               merkle_root, total_usage, disputed
        FROM usage_anchors
    """):
        anchor = UsageAnchor(
            anchor_id=hash_from_hex(row[0]),
            provider=row[1],
            window_start=int(row[2]),
            window_end=int(row[3]),
            merkle_root=hash_from_hex(row[4]),
            total_usage=int(row[5]),
            disputed=bool(row[6]),
        )
        anchors[anchor.anchor_id] = anchor

    invoices: Dict[int, Invoice] = {}
    for row in conn.execute("""
        SELECT invoice_id, enterprise, provider, amount, invoice_hash, paid
        FROM invoices
    """):
        invoices[row[0]] = Invoice(
            invoice_id=row[0],
            enterprise=row[1],
            provider=row[2],
            amount=int(row[3]),
            invoice_hash=hash_from_hex(row[4]),
            paid=bool(row[5]),
        )

    escrow = {r[0]: int(r[1]) for r in conn.execute("SELECT enterprise, balance FROM escrow_accounts")}
    balances = {r[0]: int(r[1]) for r in conn.execute("SELECT provider, balance FROM provider_balances")}

    return LedgerState(
        owner=owner,
        paused=bool(paused),
        relayers=relayers,
        anchors=anchors,
        invoices=invoices,
        next_invoice_id=next_invoice_id,
        escrow=escrow,
        balances=balances,
        revision=revision,
    )


def insert_anchor_record(record: AnchorRecord, db_path: str = DEFAULT_DB_PATH) -> None:
    """Append one anchor submission to the audit trail.

    Args:
        record: The submission to record
        db_path: Path to SQLite database file
    """
    conn = get_connection(db_path)
    try:
        conn.execute("""
            INSERT INTO anchor_audit
            (submitted_at, anchor_id, provider, window_start, window_end,
             merkle_root, total_usage, leaf_count, status, attempts, error)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """, (
            record.submitted_at.isoformat(),
            record.anchor_id,
            record.provider,
            str(record.window_start),
            str(record.window_end),
            record.merkle_root,
            str(record.total_usage),
            record.leaf_count,
            record.status,
            record.attempts,
            record.error,
        ))
    finally:
        conn.close()


def fetch_recent_anchor_records(
    provider: Optional[str] = None,
    limit: int = 100,
    db_path: str = DEFAULT_DB_PATH,
) -> List[AnchorRecord]:
    """Fetch recent anchor submissions, newest first.

    Args:
        provider: Optional filter for one provider
        limit: Maximum number of records to return
        db_path: Path to SQLite database file

    Returns:
        List of AnchorRecord ordered newest first
    """
    conn = get_connection(db_path)
    try:
        query = """
            SELECT submitted_at, provider, window_start, window_end, merkle_root,
                   total_usage, leaf_count, status, anchor_id, attempts, error
            FROM anchor_audit
        """
        params: list = []
        if provider:
            query += " WHERE provider = ?"
            params.append(provider.lower())
        query += " ORDER BY id DESC LIMIT ?"
        params.append(limit)

        return [
            AnchorRecord(
                submitted_at=datetime.fromisoformat(row[0]),
                provider=row[1],
                window_start=int(row[2]),
                window_end=int(row[3]),
                merkle_root=row[4],
                total_usage=int(row[5]),
                leaf_count=row[6],
                status=row[7],
                anchor_id=row[8],
                attempts=row[9],
                error=row[10],
            )
            for row in conn.execute(query, params).fetchall()
        ]
    finally:
        conn.close()
