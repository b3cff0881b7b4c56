"""SQLite-backed order, partner and assignment-ledger store."""
from __future__ import annotations

import hashlib
import json
import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock, RLock
from typing import Any, Dict, Iterator, List, Optional

from courier_dispatch.core.config import get_settings
from courier_dispatch.core.errors import InvalidState, NotFound
from courier_dispatch.core.logging import logger
from courier_dispatch.models.dispatch import (
    AssignmentLedgerEntry,
    LedgerEntryId,
    LedgerFilters,
    OrderCreateRequest,
    OrderFilters,
    OrderId,
    OrderRecord,
    OrderStatus,
    PartnerCreateRequest,
    PartnerFilters,
    PartnerId,
    PartnerMetrics,
    PartnerRecord,
    PartnerUpdateRequest,
    ensure_utc,
    items_total,
)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


def _utc_now_iso() -> str:
    return _utc_now().isoformat()


def _json_dumps(value: Any) -> str:
    return json.dumps(value, ensure_ascii=True)


def _hash_credential(secret: str) -> str:
    salt = os.urandom(16)
    digest = hashlib.pbkdf2_hmac("sha256", secret.encode("utf-8"), salt, 120_000)
    return f"{salt.hex()}${digest.hex()}"


class DispatchStateStore:
    """Durable state for orders, partners, the assignment ledger and order timelines.

    Writes outside ``transaction()`` commit immediately; writes inside it commit
    together when the outermost block exits, or roll back on error.
    """

    _lock_registry: dict[str, RLock] = {}
    _lock_registry_guard = Lock()

    def __init__(self, db_path: str | Path | None = None) -> None:
        settings = get_settings()
        self._settings = settings
        self._db_path = Path(db_path or settings.dispatch_db_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = self._get_shared_lock(str(self._db_path.resolve()))
        self._tx_depth = 0
        self._conn = sqlite3.connect(
            str(self._db_path),
            check_same_thread=False,
            timeout=30.0,
        )
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode = WAL")
        self._conn.execute("PRAGMA synchronous = NORMAL")
        self._conn.execute("PRAGMA busy_timeout = 30000")
        self._initialize_schema()

    @classmethod
    def _get_shared_lock(cls, key: str) -> RLock:
        with cls._lock_registry_guard:
            lock = cls._lock_registry.get(key)
            if lock is None:
                lock = RLock()
                cls._lock_registry[key] = lock
            return lock

    def _initialize_schema(self) -> None:
        with self._lock:
            self._conn.executescript(
                """
                CREATE TABLE IF NOT EXISTS sequences (
                    key_name TEXT PRIMARY KEY,
                    next_value INTEGER NOT NULL
                );

                CREATE TABLE IF NOT EXISTS orders (
                    order_id TEXT PRIMARY KEY,
                    status TEXT NOT NULL,
                    area TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_orders_status ON orders (status);
                CREATE INDEX IF NOT EXISTS idx_orders_area ON orders (area);

                CREATE TABLE IF NOT EXISTS partners (
                    partner_id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    credential_hash TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE UNIQUE INDEX IF NOT EXISTS idx_partners_email ON partners (email);

                CREATE TABLE IF NOT EXISTS assignment_ledger (
                    entry_id TEXT PRIMARY KEY,
                    order_id TEXT NOT NULL,
                    partner_id TEXT,
                    status TEXT NOT NULL,
                    created_at TEXT NOT NULL,
                    data_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_ledger_order ON assignment_ledger (order_id);
                CREATE INDEX IF NOT EXISTS idx_ledger_partner ON assignment_ledger (partner_id);
                CREATE INDEX IF NOT EXISTS idx_ledger_status ON assignment_ledger (status);

                CREATE TABLE IF NOT EXISTS timeline (
                    event_id TEXT PRIMARY KEY,
                    order_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    actor TEXT NOT NULL,
                    timestamp TEXT NOT NULL,
                    details_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_timeline_order ON timeline (order_id);
                CREATE INDEX IF NOT EXISTS idx_timeline_ts ON timeline (timestamp DESC);

                CREATE TABLE IF NOT EXISTS idempotency (
                    key_name TEXT PRIMARY KEY,
                    stored_at TEXT NOT NULL,
                    response_json TEXT NOT NULL
                );

                CREATE INDEX IF NOT EXISTS idx_idempotency_time ON idempotency (stored_at);
                """
            )
            self._conn.commit()

    # -------------------- transactions --------------------

    def _commit(self) -> None:
        if self._tx_depth == 0:
            self._conn.commit()

    @contextmanager
    def transaction(self) -> Iterator[None]:
        with self._lock:
            self._tx_depth += 1
            try:
                yield
            except BaseException:
                self._tx_depth -= 1
                if self._tx_depth == 0:
                    self._conn.rollback()
                raise
            self._tx_depth -= 1
            if self._tx_depth == 0:
                self._conn.commit()

    @contextmanager
    def snapshot(self) -> Iterator[None]:
        with self._lock:
            yield

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    # -------------------- sequences / idempotency --------------------

    def next_sequence(self, key: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT next_value FROM sequences WHERE key_name = ?",
                (key,),
            ).fetchone()
            if row is None:
                current = 1
                self._conn.execute(
                    "INSERT INTO sequences (key_name, next_value) VALUES (?, ?)",
                    (key, current + 1),
                )
            else:
                current = int(row["next_value"])
                self._conn.execute(
                    "UPDATE sequences SET next_value = ? WHERE key_name = ?",
                    (current + 1, key),
                )
            self._commit()
            return current

    def get_idempotent(self, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._conn.execute(
                "SELECT response_json FROM idempotency WHERE key_name = ?",
                (key,),
            ).fetchone()
        if not row:
            return None
        return json.loads(row["response_json"])

    def set_idempotent(self, key: str, response: Dict[str, Any]) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO idempotency (key_name, stored_at, response_json)
                VALUES (?, ?, ?)
                ON CONFLICT(key_name)
                DO UPDATE SET stored_at = excluded.stored_at, response_json = excluded.response_json
                """,
                (key, _utc_now_iso(), _json_dumps(response)),
            )
            self._conn.execute(
                """
                DELETE FROM idempotency
                WHERE key_name NOT IN (
                    SELECT key_name FROM idempotency
                    ORDER BY stored_at DESC
                    LIMIT ?
                )
                """,
                (self._settings.idempotency_retention,),
            )
            self._commit()

    def reset(self) -> None:
        """Clear all operational data so a demo seed starts from a clean scenario."""
        with self._lock:
            for table in ("orders", "partners", "assignment_ledger", "timeline", "idempotency", "sequences"):
                self._conn.execute(f"DELETE FROM {table}")
            self._commit()

    # -------------------- orders --------------------

    def create_order(self, request: OrderCreateRequest) -> OrderRecord:
        now = _utc_now()
        with self._lock:
            seq = self.next_sequence("order")
            order = OrderRecord(
                order_id=OrderId(f"ORD-{seq:06d}"),
                order_number=f"ON-{now:%Y%m%d}-{seq:04d}",
                customer=request.customer,
                area=request.area,
                items=request.items,
                total_amount=items_total(request.items),
                scheduled_for=request.scheduled_for,
                status=OrderStatus.PENDING,
                assigned_to=None,
                created_at=now,
                updated_at=now,
            )
            self._conn.execute(
                """
                INSERT INTO orders (order_id, status, area, created_at, updated_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    order.order_id,
                    order.status.value,
                    order.area,
                    order.created_at.isoformat(),
                    order.updated_at.isoformat(),
                    _json_dumps(order.model_dump(mode="json")),
                ),
            )
            self._commit()
        return order

    def get_order(self, order_id: OrderId) -> OrderRecord:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM orders WHERE order_id = ?",
                (order_id,),
            ).fetchone()
        if not row:
            raise NotFound("Order", order_id)
        return OrderRecord.model_validate_json(row["data_json"])

    def list_orders(self, filters: Optional[OrderFilters] = None) -> List[OrderRecord]:
        filters = filters or OrderFilters()
        clauses: List[str] = []
        params: List[Any] = []
        if filters.status:
            clauses.append("status = ?")
            params.append(filters.status.value)
        if filters.area:
            clauses.append("area = ?")
            params.append(filters.area)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT data_json FROM orders {where} ORDER BY created_at ASC, order_id ASC",
                params,
            ).fetchall()
        orders = [OrderRecord.model_validate_json(row["data_json"]) for row in rows]
        if filters.created_on:
            orders = [order for order in orders if ensure_utc(order.created_at).date() == filters.created_on]
        return orders

    def save_order(self, order: OrderRecord) -> OrderRecord:
        saved = order.model_copy(update={"updated_at": _utc_now()})
        # Re-validate so the assigned_to/status invariant can never be persisted broken.
        saved = OrderRecord.model_validate(saved.model_dump())
        with self._lock:
            cursor = self._conn.execute(
                """
                UPDATE orders SET status = ?, area = ?, updated_at = ?, data_json = ?
                WHERE order_id = ?
                """,
                (
                    saved.status.value,
                    saved.area,
                    saved.updated_at.isoformat(),
                    _json_dumps(saved.model_dump(mode="json")),
                    saved.order_id,
                ),
            )
            if cursor.rowcount == 0:
                raise NotFound("Order", saved.order_id)
            self._commit()
        return saved

    # -------------------- partners --------------------

    def create_partner(self, request: PartnerCreateRequest) -> PartnerRecord:
        email = request.email.strip().lower()
        now = _utc_now()
        with self._lock:
            existing = self._conn.execute(
                "SELECT partner_id FROM partners WHERE email = ?",
                (email,),
            ).fetchone()
            if existing:
                raise InvalidState(
                    f"Partner with email '{email}' already exists as {existing['partner_id']}",
                    partner_id=existing["partner_id"],
                )
            seq = self.next_sequence("partner")
            partner = PartnerRecord(
                partner_id=PartnerId(f"PTR-{seq:06d}"),
                name=" ".join(request.name.split()),
                email=email,
                phone=request.phone,
                areas=request.areas,
                shift=request.shift,
                status=request.status,
                current_load=0,
                metrics=PartnerMetrics(rating=request.rating),
                created_at=now,
                updated_at=now,
            )
            self._conn.execute(
                """
                INSERT INTO partners (partner_id, email, status, created_at, credential_hash, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    partner.partner_id,
                    partner.email,
                    partner.status.value,
                    partner.created_at.isoformat(),
                    _hash_credential(request.password.get_secret_value()),
                    _json_dumps(partner.model_dump(mode="json")),
                ),
            )
            self._commit()
        return partner

    def get_partner(self, partner_id: PartnerId) -> PartnerRecord:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM partners WHERE partner_id = ?",
                (partner_id,),
            ).fetchone()
        if not row:
            raise NotFound("Partner", partner_id)
        return PartnerRecord.model_validate_json(row["data_json"])

    def list_partners(self, filters: Optional[PartnerFilters] = None) -> List[PartnerRecord]:
        filters = filters or PartnerFilters()
        with self._lock:
            if filters.status:
                rows = self._conn.execute(
                    "SELECT data_json FROM partners WHERE status = ? ORDER BY created_at ASC, partner_id ASC",
                    (filters.status.value,),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    "SELECT data_json FROM partners ORDER BY created_at ASC, partner_id ASC",
                ).fetchall()
        partners = [PartnerRecord.model_validate_json(row["data_json"]) for row in rows]
        if filters.area:
            partners = [partner for partner in partners if filters.area in partner.areas]
        return partners

    def _write_partner(self, partner: PartnerRecord) -> None:
        cursor = self._conn.execute(
            "UPDATE partners SET email = ?, status = ?, data_json = ? WHERE partner_id = ?",
            (
                partner.email,
                partner.status.value,
                _json_dumps(partner.model_dump(mode="json")),
                partner.partner_id,
            ),
        )
        if cursor.rowcount == 0:
            raise NotFound("Partner", partner.partner_id)

    def update_partner(self, partner_id: PartnerId, request: PartnerUpdateRequest) -> PartnerRecord:
        patch = request.model_dump(exclude_none=True)
        rating = patch.pop("rating", None)
        if "email" in patch:
            patch["email"] = patch["email"].strip().lower()
        with self._lock:
            current = self.get_partner(partner_id)
            if "email" in patch and patch["email"] != current.email:
                clash = self._conn.execute(
                    "SELECT partner_id FROM partners WHERE email = ?",
                    (patch["email"],),
                ).fetchone()
                if clash:
                    raise InvalidState(
                        f"Email '{patch['email']}' already belongs to {clash['partner_id']}",
                        partner_id=clash["partner_id"],
                    )
            data = current.model_dump()
            data.update(patch)
            if rating is not None:
                data["metrics"]["rating"] = rating
            data["updated_at"] = _utc_now()
            updated = PartnerRecord.model_validate(data)
            self._write_partner(updated)
            self._commit()
        return updated

    def save_partner(self, partner: PartnerRecord) -> PartnerRecord:
        saved = PartnerRecord.model_validate({**partner.model_dump(), "updated_at": _utc_now()})
        with self._lock:
            self._write_partner(saved)
            self._commit()
        return saved

    # -------------------- assignment ledger --------------------

    def next_entry_id(self) -> LedgerEntryId:
        return LedgerEntryId(f"ASN-{self.next_sequence('ledger'):06d}")

    def append_entry(self, entry: AssignmentLedgerEntry) -> None:
        with self._lock:
            self._conn.execute(
                """
                INSERT INTO assignment_ledger (entry_id, order_id, partner_id, status, created_at, data_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    entry.entry_id,
                    entry.order_id,
                    entry.partner_id,
                    entry.status.value,
                    entry.created_at.isoformat(),
                    _json_dumps(entry.model_dump(mode="json")),
                ),
            )
            self._commit()

    def get_entry(self, entry_id: LedgerEntryId) -> AssignmentLedgerEntry:
        with self._lock:
            row = self._conn.execute(
                "SELECT data_json FROM assignment_ledger WHERE entry_id = ?",
                (entry_id,),
            ).fetchone()
        if not row:
            raise NotFound("Assignment", entry_id)
        return AssignmentLedgerEntry.model_validate_json(row["data_json"])

    def query_entries(self, filters: Optional[LedgerFilters] = None) -> List[AssignmentLedgerEntry]:
        filters = filters or LedgerFilters()
        clauses: List[str] = []
        params: List[Any] = []
        if filters.order_id:
            clauses.append("order_id = ?")
            params.append(filters.order_id)
        if filters.partner_id:
            clauses.append("partner_id = ?")
            params.append(filters.partner_id)
        if filters.status:
            clauses.append("status = ?")
            params.append(filters.status.value)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._conn.execute(
                f"SELECT data_json FROM assignment_ledger {where} ORDER BY created_at ASC, entry_id ASC",
                params,
            ).fetchall()
        entries = [AssignmentLedgerEntry.model_validate_json(row["data_json"]) for row in rows]
        if filters.from_date:
            lower = ensure_utc(filters.from_date)
            entries = [entry for entry in entries if ensure_utc(entry.created_at) >= lower]
        if filters.to_date:
            upper = ensure_utc(filters.to_date)
            entries = [entry for entry in entries if ensure_utc(entry.created_at) <= upper]
        return entries

    # -------------------- timeline --------------------

    def record_timeline_event(
        self,
        order_id: OrderId,
        event_type: str,
        actor: str,
        details: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        with self._lock:
            event = {
                "event_id": f"EVT-{self.next_sequence('event'):06d}",
                "order_id": order_id,
                "event_type": event_type,
                "actor": actor,
                "timestamp": _utc_now_iso(),
                "details": details or {},
            }
            self._conn.execute(
                """
                INSERT INTO timeline (event_id, order_id, event_type, actor, timestamp, details_json)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    event["event_id"],
                    order_id,
                    event_type,
                    actor,
                    event["timestamp"],
                    _json_dumps(event["details"]),
                ),
            )
            self._conn.execute(
                """
                DELETE FROM timeline
                WHERE event_id NOT IN (
                    SELECT event_id FROM timeline
                    ORDER BY timestamp DESC
                    LIMIT ?
                )
                """,
                (self._settings.timeline_retention,),
            )
            self._commit()
        logger.debug("Timeline event recorded", order_id=order_id, event_type=event_type, actor=actor)
        return event

    def list_timeline(self, order_id: Optional[OrderId] = None, limit: int = 300) -> List[Dict[str, Any]]:
        with self._lock:
            if order_id:
                rows = self._conn.execute(
                    """
                    SELECT event_id, order_id, event_type, actor, timestamp, details_json
                    FROM timeline
                    WHERE order_id = ?
                    ORDER BY timestamp DESC, event_id DESC
                    LIMIT ?
                    """,
                    (order_id, limit),
                ).fetchall()
            else:
                rows = self._conn.execute(
                    """
                    SELECT event_id, order_id, event_type, actor, timestamp, details_json
                    FROM timeline
                    ORDER BY timestamp DESC, event_id DESC
                    LIMIT ?
                    """,
                    (limit,),
                ).fetchall()

        return [
            {
                "event_id": row["event_id"],
                "order_id": row["order_id"],
                "event_type": row["event_type"],
                "actor": row["actor"],
                "timestamp": row["timestamp"],
                "details": json.loads(row["details_json"]),
            }
            for row in rows
        ]
