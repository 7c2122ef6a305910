"""
dispatch_store.py
─────────────────
CSV-backed tables for the dispatch core.

Each table is one CSV file under `db_path`. All reads and writes go through
`DispatchStore.transaction()`, which:

  1. takes the per-directory lock (serializes every writer in the process),
  2. loads tables lazily into a working copy,
  3. writes back the tables that changed only if the block exits cleanly:
     all of them are staged to temp files first, then replaced together.

An exception inside the block discards the working copy, so a half-applied
change is never written.
"""

import csv
import json
import logging
import os
import tempfile
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

TABLES: Dict[str, List[str]] = {
    "users": [
        "id", "first_name", "last_name", "email", "phone_number", "role",
        "latitude", "longitude", "last_location_update",
    ],
    "farms": ["id", "name", "address", "latitude", "longitude"],
    "orders": ["id", "order_number", "consumer_id", "total_amount", "created_at"],
    "order_items": ["id", "order_id", "farm_id", "product_name", "quantity"],
    "deliveries": [
        "id", "order_id", "driver_id", "batch_id", "status",
        "pickup_location", "pickup_latitude", "pickup_longitude",
        "delivery_address", "delivery_city", "delivery_state", "delivery_zip_code",
        "delivery_latitude", "delivery_longitude", "delivery_instructions",
        "scheduled_pickup_time", "actual_pickup_time",
        "scheduled_delivery_time", "actual_delivery_time",
        "estimated_distance", "actual_distance", "delivery_fee",
        "customer_rating", "driver_rating", "customer_feedback", "driver_feedback",
        "driver_notes", "created_at", "updated_at",
    ],
    "delivery_batches": [
        "id", "driver_id", "status", "route_data", "delivery_count",
        "started_at", "completed_at", "total_distance", "estimated_duration",
        "actual_duration", "optimization_strategy", "route_efficiency_score",
        "created_at", "updated_at",
    ],
    "route_optimization_history": [
        "id", "batch_id", "driver_id", "previous_route", "optimized_route",
        "optimization_strategy", "optimizer", "optimization_time_ms",
        "distance_saved", "time_saved", "created_at",
    ],
    "delivery_tracking": [
        "id", "delivery_id", "driver_id", "latitude", "longitude", "timestamp",
    ],
}

_JSON_COLUMNS = {"route_data", "previous_route", "optimized_route"}

_FLOAT_COLUMNS = {
    "latitude", "longitude", "pickup_latitude", "pickup_longitude",
    "delivery_latitude", "delivery_longitude", "total_amount",
    "estimated_distance", "actual_distance", "delivery_fee",
    "total_distance", "route_efficiency_score", "distance_saved",
}

_INT_COLUMNS = {
    "quantity", "delivery_count", "estimated_duration", "actual_duration",
    "customer_rating", "driver_rating", "optimization_time_ms", "time_saved",
}

# One lock per data directory, shared by every store instance in the process.
_LOCKS: Dict[str, threading.RLock] = {}
_LOCKS_GUARD = threading.Lock()


def _lock_for(db_path: str) -> threading.RLock:
    key = os.path.abspath(db_path)
    with _LOCKS_GUARD:
        if key not in _LOCKS:
            _LOCKS[key] = threading.RLock()
        return _LOCKS[key]


def now_iso() -> str:
    return datetime.now().isoformat(timespec="seconds")


def _decode(column: str, raw: str) -> Any:
    if raw is None or raw == "":
        return None
    if column in _JSON_COLUMNS:
        return json.loads(raw)
    if column in _FLOAT_COLUMNS:
        return float(raw)
    if column in _INT_COLUMNS:
        return int(float(raw))
    return raw


def _encode(column: str, value: Any) -> str:
    if value is None:
        return ""
    if column in _JSON_COLUMNS:
        return json.dumps(value)
    return str(value)


class Transaction:
    """
    Working copy of the tables touched inside one `store.transaction()` block.
    """

    def __init__(self, store: "DispatchStore"):
        self._store = store
        self._tables: Dict[str, List[dict]] = {}
        self._dirty = set()

    def rows(self, table: str) -> List[dict]:
        if table not in self._tables:
            self._tables[table] = self._store._read(table)
        return self._tables[table]

    def find(self, table: str, **criteria) -> List[dict]:
        """
        Rows whose columns equal every criterion. A list/tuple/set value
        matches any of its members.
        """
        def _match(row):
            for col, want in criteria.items():
                if isinstance(want, (list, tuple, set, frozenset)):
                    if row.get(col) not in want:
                        return False
                elif row.get(col) != want:
                    return False
            return True
        return [r for r in self.rows(table) if _match(r)]

    def get(self, table: str, row_id: str) -> Optional[dict]:
        for row in self.rows(table):
            if row["id"] == row_id:
                return row
        return None

    def insert(self, table: str, row: dict) -> dict:
        record = {col: row.get(col) for col in TABLES[table]}
        if not record["id"]:
            record["id"] = str(uuid.uuid4())
        self.rows(table).append(record)
        self._dirty.add(table)
        return record

    def update(self, table: str, row_id: str, **changes) -> dict:
        row = self.get(table, row_id)
        if row is None:
            raise KeyError(f"{table}:{row_id}")
        unknown = set(changes) - set(TABLES[table])
        if unknown:
            raise KeyError(f"Unknown columns for {table}: {sorted(unknown)}")
        row.update(changes)
        self._dirty.add(table)
        return row

    def commit(self):
        """
        Stage every changed table to a temp file, then swap them all in.
        A staging failure removes the temp files and leaves every table as it was.
        """
        tables = sorted(self._dirty)
        staged = []
        try:
            for table in tables:
                staged.append((table, self._store._write(table, self._tables[table])))
        except Exception:
            for _, tmp_path in staged:
                self._store._discard(tmp_path)
            logger.error(f"[DispatchStore] Commit aborted while staging tables={tables}")
            raise

        for table, tmp_path in staged:
            os.replace(tmp_path, self._store._path(table))
        if tables:
            logger.debug(f"[DispatchStore] Committed tables={tables}")
        self._dirty.clear()


class DispatchStore:

    def __init__(self, db_path: str = "data_base"):
        self.db_path = db_path
        os.makedirs(db_path, exist_ok=True)
        self._lock = _lock_for(db_path)
        self._local = threading.local()
        for table in TABLES:
            self._ensure_headers(table)

    # --------------------------------------------------
    # File IO
    # --------------------------------------------------

    def _path(self, table: str) -> str:
        return os.path.join(self.db_path, f"{table}.csv")

    def _ensure_headers(self, table: str):
        path = self._path(table)
        if not os.path.exists(path):
            with open(path, "w", newline="", encoding="utf-8") as f:
                csv.writer(f).writerow(TABLES[table])
            logger.info(f"[DispatchStore] Created table file: {path}")

    def _read(self, table: str) -> List[dict]:
        self._ensure_headers(table)
        with open(self._path(table), newline="", encoding="utf-8") as f:
            return [
                {col: _decode(col, row.get(col)) for col in TABLES[table]}
                for row in csv.DictReader(f)
            ]

    def _write(self, table: str, rows: List[dict]) -> str:
        """Write rows to a temp file beside the table and return its path."""
        fd, tmp_path = tempfile.mkstemp(dir=self.db_path, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", newline="", encoding="utf-8") as f:
                w = csv.DictWriter(f, fieldnames=TABLES[table])
                w.writeheader()
                for row in rows:
                    w.writerow({col: _encode(col, row.get(col)) for col in TABLES[table]})
        except Exception:
            self._discard(tmp_path)
            raise
        return tmp_path

    def _discard(self, tmp_path: str):
        if os.path.exists(tmp_path):
            os.remove(tmp_path)

    # --------------------------------------------------
    # Transactions
    # --------------------------------------------------

    @contextmanager
    def transaction(self):
        """
        Serialized read-modify-write block. Nested calls on the same thread
        join the outer transaction.
        """
        current = getattr(self._local, "txn", None)
        if current is not None:
            yield current
            return

        with self._lock:
            txn = Transaction(self)
            self._local.txn = txn
            try:
                yield txn
                txn.commit()
            except Exception:
                logger.debug("[DispatchStore] Transaction rolled back")
                raise
            finally:
                self._local.txn = None

    def read(self, table: str) -> List[dict]:
        """Consistent snapshot of one table."""
        with self.transaction() as txn:
            return [dict(r) for r in txn.rows(table)]
