from __future__ import annotations

import json
import sqlite3
from contextlib import contextmanager
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterator

from claimrecon.errors import ConflictError, DuplicateImportError, NotFoundError, PaymentLockedError
from claimrecon.models import (
    AdjustmentType,
    ClaimPayment,
    ClaimStatus,
    Payer,
    Payment,
    PaymentAdjustment,
    PaymentMethod,
    ReconciliationStatus,
    RemittanceDetail,
    RemittanceFileType,
    RemittanceInfo,
)

# Seconds a writer waits on a locked database before sqlite3 raises.
SQLITE_TIMEOUT = 30.0


def utc_now() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _connect(db_path: Path) -> sqlite3.Connection:
    db_path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(db_path, timeout=SQLITE_TIMEOUT)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


@contextmanager
def get_conn(db_path: Path) -> Iterator[sqlite3.Connection]:
    """One transaction per block: commit on success, roll back on any exception."""
    conn = _connect(db_path)
    try:
        with conn:
            yield conn
    finally:
        conn.close()


def init_db(db_path: Path) -> None:
    with get_conn(db_path) as conn:
        conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS payers (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL,
                payer_identifier TEXT
            );

            CREATE TABLE IF NOT EXISTS programs (
                id TEXT PRIMARY KEY,
                name TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS claims (
                id TEXT PRIMARY KEY,
                claim_number TEXT NOT NULL UNIQUE,
                payer_id TEXT NOT NULL,
                program_id TEXT,
                service_date TEXT NOT NULL,
                submission_date TEXT,
                total_amount TEXT NOT NULL,
                status TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );

            CREATE TABLE IF NOT EXISTS payments (
                id TEXT PRIMARY KEY,
                payer_id TEXT NOT NULL,
                payment_date TEXT NOT NULL,
                payment_amount TEXT NOT NULL,
                payment_method TEXT NOT NULL,
                reference_number TEXT,
                check_number TEXT,
                remittance_id TEXT,
                reconciliation_status TEXT NOT NULL,
                notes TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                version INTEGER NOT NULL DEFAULT 1
            );

            CREATE TABLE IF NOT EXISTS claim_payments (
                id TEXT PRIMARY KEY,
                payment_id TEXT NOT NULL,
                claim_id TEXT NOT NULL,
                paid_amount TEXT NOT NULL,
                previous_claim_status TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL,
                UNIQUE (payment_id, claim_id),
                FOREIGN KEY (payment_id) REFERENCES payments(id)
            );

            CREATE TABLE IF NOT EXISTS payment_adjustments (
                id TEXT PRIMARY KEY,
                claim_payment_id TEXT NOT NULL,
                adjustment_type TEXT NOT NULL,
                adjustment_code TEXT NOT NULL,
                adjustment_amount TEXT NOT NULL,
                description TEXT,
                FOREIGN KEY (claim_payment_id) REFERENCES claim_payments(id) ON DELETE CASCADE
            );

            CREATE TABLE IF NOT EXISTS remittance_info (
                id TEXT PRIMARY KEY,
                payment_id TEXT NOT NULL UNIQUE,
                payer_id TEXT NOT NULL,
                remittance_number TEXT NOT NULL,
                remittance_date TEXT NOT NULL,
                payer_identifier TEXT NOT NULL,
                payer_name TEXT,
                total_amount TEXT NOT NULL,
                claim_count INTEGER NOT NULL,
                file_type TEXT NOT NULL,
                original_filename TEXT,
                created_at TEXT NOT NULL,
                UNIQUE (payer_id, remittance_number),
                FOREIGN KEY (payment_id) REFERENCES payments(id)
            );

            CREATE TABLE IF NOT EXISTS remittance_details (
                id TEXT PRIMARY KEY,
                remittance_info_id TEXT NOT NULL,
                line INTEGER NOT NULL,
                claim_number TEXT NOT NULL,
                claim_id TEXT,
                service_date TEXT,
                billed_amount TEXT NOT NULL,
                paid_amount TEXT NOT NULL,
                adjustment_amount TEXT NOT NULL,
                adjustment_codes TEXT NOT NULL,
                FOREIGN KEY (remittance_info_id) REFERENCES remittance_info(id)
            );

            CREATE TABLE IF NOT EXISTS pending_notifications (
                payment_id TEXT NOT NULL,
                claim_id TEXT NOT NULL,
                target_status TEXT NOT NULL,
                error TEXT NOT NULL,
                attempts INTEGER NOT NULL DEFAULT 1,
                updated_at TEXT NOT NULL,
                PRIMARY KEY (payment_id, claim_id)
            );

            CREATE TABLE IF NOT EXISTS audit_events (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                event_type TEXT NOT NULL,
                action TEXT NOT NULL,
                entity_type TEXT NOT NULL,
                entity_id TEXT NOT NULL,
                actor TEXT NOT NULL,
                detail TEXT,
                old_value TEXT,
                new_value TEXT,
                created_at TEXT NOT NULL
            );

            CREATE INDEX IF NOT EXISTS idx_claim_payments_claim ON claim_payments(claim_id);
            CREATE INDEX IF NOT EXISTS idx_claims_payer ON claims(payer_id);
            CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_events(entity_type, entity_id);
            """
        )


def _opt_date(value: str | None) -> date | None:
    return date.fromisoformat(value) if value else None


# ---------------------------------------------------------------------------
# Row mapping
# ---------------------------------------------------------------------------

def _payment_from_row(row: sqlite3.Row) -> Payment:
    return Payment(
        id=row["id"],
        payer_id=row["payer_id"],
        payment_date=date.fromisoformat(row["payment_date"]),
        payment_amount=Decimal(row["payment_amount"]),
        payment_method=PaymentMethod(row["payment_method"]),
        reference_number=row["reference_number"],
        check_number=row["check_number"],
        remittance_id=row["remittance_id"],
        reconciliation_status=ReconciliationStatus(row["reconciliation_status"]),
        notes=row["notes"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        version=int(row["version"]),
    )


def _remittance_info_from_row(row: sqlite3.Row) -> RemittanceInfo:
    return RemittanceInfo(
        id=row["id"],
        payment_id=row["payment_id"],
        payer_id=row["payer_id"],
        remittance_number=row["remittance_number"],
        remittance_date=date.fromisoformat(row["remittance_date"]),
        payer_identifier=row["payer_identifier"],
        payer_name=row["payer_name"],
        total_amount=Decimal(row["total_amount"]),
        claim_count=int(row["claim_count"]),
        file_type=RemittanceFileType(row["file_type"]),
        original_filename=row["original_filename"],
    )


def _remittance_detail_from_row(row: sqlite3.Row) -> RemittanceDetail:
    return RemittanceDetail(
        id=row["id"],
        remittance_info_id=row["remittance_info_id"],
        line=int(row["line"]),
        claim_number=row["claim_number"],
        claim_id=row["claim_id"],
        service_date=_opt_date(row["service_date"]),
        billed_amount=Decimal(row["billed_amount"]),
        paid_amount=Decimal(row["paid_amount"]),
        adjustment_amount=Decimal(row["adjustment_amount"]),
        adjustment_codes=json.loads(row["adjustment_codes"]),
    )


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

def _insert_payment(conn: sqlite3.Connection, payment: Payment) -> None:
    conn.execute(
        """
        INSERT INTO payments(
            id, payer_id, payment_date, payment_amount, payment_method, reference_number,
            check_number, remittance_id, reconciliation_status, notes, created_at, updated_at, version
        ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            payment.id,
            payment.payer_id,
            payment.payment_date.isoformat(),
            str(payment.payment_amount),
            payment.payment_method.value,
            payment.reference_number,
            payment.check_number,
            payment.remittance_id,
            payment.reconciliation_status.value,
            payment.notes,
            payment.created_at,
            payment.updated_at,
            payment.version,
        ),
    )


def create_payment(db_path: Path, payment: Payment) -> Payment:
    with get_conn(db_path) as conn:
        _insert_payment(conn, payment)
    return payment


def get_payment(db_path: Path, payment_id: str) -> Payment | None:
    with get_conn(db_path) as conn:
        row = conn.execute("SELECT * FROM payments WHERE id = ?", (payment_id,)).fetchone()
        return None if row is None else _payment_from_row(row)


def list_payments(
    db_path: Path,
    payer_id: str | None = None,
    status: ReconciliationStatus | None = None,
    start: date | None = None,
    end: date | None = None,
    limit: int | None = 500,
) -> list[Payment]:
    clauses: list[str] = []
    params: list[Any] = []
    if payer_id:
        clauses.append("payer_id = ?")
        params.append(payer_id)
    if status:
        clauses.append("reconciliation_status = ?")
        params.append(status.value)
    if start:
        clauses.append("payment_date >= ?")
        params.append(start.isoformat())
    if end:
        clauses.append("payment_date <= ?")
        params.append(end.isoformat())
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with get_conn(db_path) as conn:
        rows = conn.execute(
            f"SELECT * FROM payments {where} ORDER BY payment_date DESC, id ASC LIMIT ?",
            (*params, -1 if limit is None else limit),
        ).fetchall()
        return [_payment_from_row(row) for row in rows]


def delete_payment(db_path: Path, payment_id: str) -> None:
    with get_conn(db_path) as conn:
        row = conn.execute("SELECT remittance_id FROM payments WHERE id = ?", (payment_id,)).fetchone()
        if row is None:
            raise NotFoundError("Payment", payment_id)
        allocations = conn.execute(
            "SELECT COUNT(*) AS n FROM claim_payments WHERE payment_id = ?", (payment_id,)
        ).fetchone()["n"]
        if allocations:
            raise PaymentLockedError(
                "payment has claim allocations and cannot be deleted",
                payment_id=payment_id,
                claim_payments=allocations,
            )
        if row["remittance_id"]:
            raise PaymentLockedError(
                "payment was created from a remittance advice and cannot be deleted",
                payment_id=payment_id,
                remittance_id=row["remittance_id"],
            )
        conn.execute("DELETE FROM pending_notifications WHERE payment_id = ?", (payment_id,))
        conn.execute("DELETE FROM payments WHERE id = ?", (payment_id,))


def _bump_payment(
    conn: sqlite3.Connection,
    payment_id: str,
    expected_version: int,
    status: ReconciliationStatus,
    notes: str | None,
) -> None:
    cur = conn.execute(
        """
        UPDATE payments
        SET reconciliation_status = ?,
            notes = ?,
            version = version + 1,
            updated_at = ?
        WHERE id = ? AND version = ?
        """,
        (status.value, notes, utc_now(), payment_id, expected_version),
    )
    if cur.rowcount == 0:
        raise ConflictError(
            "payment was modified by another request",
            payment_id=payment_id,
            expected_version=expected_version,
        )


def update_payment_status(
    db_path: Path,
    payment_id: str,
    expected_version: int,
    status: ReconciliationStatus,
    notes: str | None,
) -> None:
    with get_conn(db_path) as conn:
        _bump_payment(conn, payment_id, expected_version, status, notes)


# ---------------------------------------------------------------------------
# Claim payments and adjustments
# ---------------------------------------------------------------------------

def list_claim_payments(db_path: Path, payment_id: str) -> list[ClaimPayment]:
    with get_conn(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM claim_payments WHERE payment_id = ? ORDER BY claim_id ASC",
            (payment_id,),
        ).fetchall()
        adj_rows = conn.execute(
            """
            SELECT a.* FROM payment_adjustments a
            JOIN claim_payments cp ON cp.id = a.claim_payment_id
            WHERE cp.payment_id = ?
            ORDER BY a.id ASC
            """,
            (payment_id,),
        ).fetchall()

    adjustments: dict[str, list[PaymentAdjustment]] = {}
    for a in adj_rows:
        adjustments.setdefault(a["claim_payment_id"], []).append(
            PaymentAdjustment(
                id=a["id"],
                claim_payment_id=a["claim_payment_id"],
                adjustment_type=AdjustmentType(a["adjustment_type"]),
                adjustment_code=a["adjustment_code"],
                adjustment_amount=Decimal(a["adjustment_amount"]),
                description=a["description"],
            )
        )
    return [
        ClaimPayment(
            id=r["id"],
            payment_id=r["payment_id"],
            claim_id=r["claim_id"],
            paid_amount=Decimal(r["paid_amount"]),
            adjustments=adjustments.get(r["id"], []),
            previous_claim_status=ClaimStatus(r["previous_claim_status"]) if r["previous_claim_status"] else None,
            created_at=r["created_at"],
            updated_at=r["updated_at"],
        )
        for r in rows
    ]


def claim_applied_totals(db_path: Path, claim_ids: list[str] | None = None) -> dict[str, Decimal]:
    """Sum of paid + adjustment amounts per claim across every payment."""
    with get_conn(db_path) as conn:
        if claim_ids is None:
            paid_rows = conn.execute("SELECT claim_id, paid_amount FROM claim_payments").fetchall()
            adj_rows = conn.execute(
                """
                SELECT cp.claim_id, a.adjustment_amount
                FROM payment_adjustments a
                JOIN claim_payments cp ON cp.id = a.claim_payment_id
                """
            ).fetchall()
        else:
            marks = ",".join("?" for _ in claim_ids)
            paid_rows = conn.execute(
                f"SELECT claim_id, paid_amount FROM claim_payments WHERE claim_id IN ({marks})",
                claim_ids,
            ).fetchall()
            adj_rows = conn.execute(
                f"""
                SELECT cp.claim_id, a.adjustment_amount
                FROM payment_adjustments a
                JOIN claim_payments cp ON cp.id = a.claim_payment_id
                WHERE cp.claim_id IN ({marks})
                """,
                claim_ids,
            ).fetchall()

    totals: dict[str, Decimal] = {}
    for r in paid_rows:
        totals[r["claim_id"]] = totals.get(r["claim_id"], Decimal("0.00")) + Decimal(r["paid_amount"])
    for r in adj_rows:
        totals[r["claim_id"]] = totals.get(r["claim_id"], Decimal("0.00")) + Decimal(r["adjustment_amount"])
    return totals


def inherited_claim_status(db_path: Path, claim_id: str, exclude_payment_id: str) -> ClaimStatus | None:
    """Status the claim had before any other payment touched it, if one did."""
    with get_conn(db_path) as conn:
        row = conn.execute(
            """
            SELECT previous_claim_status FROM claim_payments
            WHERE claim_id = ? AND payment_id != ? AND previous_claim_status IS NOT NULL
            ORDER BY created_at ASC, id ASC
            LIMIT 1
            """,
            (claim_id, exclude_payment_id),
        ).fetchone()
        return None if row is None else ClaimStatus(row["previous_claim_status"])


def payment_allocated_totals(db_path: Path) -> dict[str, Decimal]:
    """Allocated amount (paid + adjustments) per payment id."""
    with get_conn(db_path) as conn:
        paid_rows = conn.execute("SELECT payment_id, paid_amount FROM claim_payments").fetchall()
        adj_rows = conn.execute(
            """
            SELECT cp.payment_id, a.adjustment_amount
            FROM payment_adjustments a
            JOIN claim_payments cp ON cp.id = a.claim_payment_id
            """
        ).fetchall()

    totals: dict[str, Decimal] = {}
    for r in paid_rows:
        totals[r["payment_id"]] = totals.get(r["payment_id"], Decimal("0.00")) + Decimal(r["paid_amount"])
    for r in adj_rows:
        totals[r["payment_id"]] = totals.get(r["payment_id"], Decimal("0.00")) + Decimal(r["adjustment_amount"])
    return totals


def list_adjustment_rows(
    db_path: Path,
    payer_id: str | None = None,
    start: date | None = None,
    end: date | None = None,
    claim_id: str | None = None,
    adjustment_type: AdjustmentType | None = None,
) -> list[dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if payer_id:
        clauses.append("p.payer_id = ?")
        params.append(payer_id)
    if start:
        clauses.append("p.payment_date >= ?")
        params.append(start.isoformat())
    if end:
        clauses.append("p.payment_date <= ?")
        params.append(end.isoformat())
    if claim_id:
        clauses.append("cp.claim_id = ?")
        params.append(claim_id)
    if adjustment_type:
        clauses.append("a.adjustment_type = ?")
        params.append(adjustment_type.value)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with get_conn(db_path) as conn:
        rows = conn.execute(
            f"""
            SELECT a.id, a.adjustment_type, a.adjustment_code, a.adjustment_amount, a.description,
                   cp.claim_id, cp.payment_id, p.payer_id, p.payment_date
            FROM payment_adjustments a
            JOIN claim_payments cp ON cp.id = a.claim_payment_id
            JOIN payments p ON p.id = cp.payment_id
            {where}
            ORDER BY p.payment_date ASC, cp.claim_id ASC, a.id ASC
            """,
            params,
        ).fetchall()
    out = []
    for r in rows:
        row = dict(r)
        row["adjustment_type"] = AdjustmentType(row["adjustment_type"])
        row["adjustment_amount"] = Decimal(row["adjustment_amount"])
        row["payment_date"] = date.fromisoformat(row["payment_date"])
        out.append(row)
    return out


def _insert_claim_payment(conn: sqlite3.Connection, cp: ClaimPayment) -> None:
    conn.execute(
        """
        INSERT INTO claim_payments(
            id, payment_id, claim_id, paid_amount, previous_claim_status, created_at, updated_at
        ) VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            cp.id,
            cp.payment_id,
            cp.claim_id,
            str(cp.paid_amount),
            cp.previous_claim_status.value if cp.previous_claim_status else None,
            cp.created_at,
            cp.updated_at,
        ),
    )
    for adj in cp.adjustments:
        conn.execute(
            """
            INSERT INTO payment_adjustments(
                id, claim_payment_id, adjustment_type, adjustment_code, adjustment_amount, description
            ) VALUES (?, ?, ?, ?, ?, ?)
            """,
            (
                adj.id,
                cp.id,
                adj.adjustment_type.value,
                adj.adjustment_code,
                str(adj.adjustment_amount),
                adj.description,
            ),
        )


def commit_allocation(
    db_path: Path,
    payment_id: str,
    expected_version: int,
    claim_payments: list[ClaimPayment],
    status: ReconciliationStatus,
    notes: str | None,
) -> None:
    """Replace the payment's claim payments for the given claims and bump the version atomically."""
    with get_conn(db_path) as conn:
        _bump_payment(conn, payment_id, expected_version, status, notes)
        for cp in claim_payments:
            conn.execute(
                "DELETE FROM claim_payments WHERE payment_id = ? AND claim_id = ?",
                (payment_id, cp.claim_id),
            )
            _insert_claim_payment(conn, cp)


def clear_allocations(
    db_path: Path,
    payment_id: str,
    expected_version: int,
    notes: str | None,
) -> None:
    with get_conn(db_path) as conn:
        _bump_payment(conn, payment_id, expected_version, ReconciliationStatus.UNRECONCILED, notes)
        conn.execute("DELETE FROM claim_payments WHERE payment_id = ?", (payment_id,))


# ---------------------------------------------------------------------------
# Remittance advice
# ---------------------------------------------------------------------------

def remittance_exists(db_path: Path, payer_id: str, remittance_number: str) -> bool:
    with get_conn(db_path) as conn:
        row = conn.execute(
            "SELECT id FROM remittance_info WHERE payer_id = ? AND remittance_number = ?",
            (payer_id, remittance_number),
        ).fetchone()
        return row is not None


def save_remittance_import(
    db_path: Path,
    payment: Payment,
    info: RemittanceInfo,
    details: list[RemittanceDetail],
) -> None:
    try:
        with get_conn(db_path) as conn:
            _insert_payment(conn, payment)
            conn.execute(
                """
                INSERT INTO remittance_info(
                    id, payment_id, payer_id, remittance_number, remittance_date, payer_identifier,
                    payer_name, total_amount, claim_count, file_type, original_filename, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    info.id,
                    info.payment_id,
                    info.payer_id,
                    info.remittance_number,
                    info.remittance_date.isoformat(),
                    info.payer_identifier,
                    info.payer_name,
                    str(info.total_amount),
                    info.claim_count,
                    info.file_type.value,
                    info.original_filename,
                    utc_now(),
                ),
            )
            conn.executemany(
                """
                INSERT INTO remittance_details(
                    id, remittance_info_id, line, claim_number, claim_id, service_date,
                    billed_amount, paid_amount, adjustment_amount, adjustment_codes
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        d.id,
                        d.remittance_info_id,
                        d.line,
                        d.claim_number,
                        d.claim_id,
                        d.service_date.isoformat() if d.service_date else None,
                        str(d.billed_amount),
                        str(d.paid_amount),
                        str(d.adjustment_amount),
                        json.dumps(d.adjustment_codes, sort_keys=True),
                    )
                    for d in details
                ],
            )
    except sqlite3.IntegrityError as exc:
        if "remittance_info" in str(exc):
            raise DuplicateImportError(
                f"remittance {info.remittance_number} already imported for payer {info.payer_id}",
                payer_id=info.payer_id,
                remittance_number=info.remittance_number,
            ) from exc
        raise


def get_remittance_info_for_payment(db_path: Path, payment_id: str) -> RemittanceInfo | None:
    with get_conn(db_path) as conn:
        row = conn.execute("SELECT * FROM remittance_info WHERE payment_id = ?", (payment_id,)).fetchone()
        return None if row is None else _remittance_info_from_row(row)


def list_remittance_details(db_path: Path, remittance_info_id: str) -> list[RemittanceDetail]:
    with get_conn(db_path) as conn:
        rows = conn.execute(
            "SELECT * FROM remittance_details WHERE remittance_info_id = ? ORDER BY line ASC",
            (remittance_info_id,),
        ).fetchall()
        return [_remittance_detail_from_row(row) for row in rows]


def resolved_claim_ids_for_payment(db_path: Path, payment_id: str) -> set[str]:
    with get_conn(db_path) as conn:
        rows = conn.execute(
            """
            SELECT DISTINCT d.claim_id
            FROM remittance_details d
            JOIN remittance_info i ON i.id = d.remittance_info_id
            WHERE i.payment_id = ? AND d.claim_id IS NOT NULL
            """,
            (payment_id,),
        ).fetchall()
        return {str(r["claim_id"]) for r in rows}


# ---------------------------------------------------------------------------
# Pending claim-status notifications
# ---------------------------------------------------------------------------

def record_pending_notification(
    db_path: Path, payment_id: str, claim_id: str, target_status: ClaimStatus, error: str
) -> None:
    with get_conn(db_path) as conn:
        conn.execute(
            """
            INSERT INTO pending_notifications(payment_id, claim_id, target_status, error, attempts, updated_at)
            VALUES (?, ?, ?, ?, 1, ?)
            ON CONFLICT(payment_id, claim_id) DO UPDATE SET
                target_status=excluded.target_status,
                error=excluded.error,
                attempts=pending_notifications.attempts + 1,
                updated_at=excluded.updated_at
            """,
            (payment_id, claim_id, target_status.value, error, utc_now()),
        )


def list_pending_notifications(db_path: Path, payment_id: str) -> list[dict[str, Any]]:
    with get_conn(db_path) as conn:
        rows = conn.execute(
            """
            SELECT payment_id, claim_id, target_status, error, attempts, updated_at
            FROM pending_notifications
            WHERE payment_id = ?
            ORDER BY claim_id ASC
            """,
            (payment_id,),
        ).fetchall()
        return [dict(row) for row in rows]


def clear_pending_notification(db_path: Path, payment_id: str, claim_id: str) -> None:
    with get_conn(db_path) as conn:
        conn.execute(
            "DELETE FROM pending_notifications WHERE payment_id = ? AND claim_id = ?",
            (payment_id, claim_id),
        )


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

def log_audit_event(
    db_path: Path,
    event_type: str,
    action: str,
    entity_type: str,
    entity_id: str,
    actor: str = "system",
    detail: str | None = None,
    old_value: str | None = None,
    new_value: str | None = None,
) -> None:
    with get_conn(db_path) as conn:
        conn.execute(
            """
            INSERT INTO audit_events(
                event_type, action, entity_type, entity_id, actor, detail, old_value, new_value, created_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (event_type, action, entity_type, entity_id, actor, detail, old_value, new_value, utc_now()),
        )


def list_audit_events(
    db_path: Path,
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = 200,
) -> list[dict[str, Any]]:
    clauses: list[str] = []
    params: list[Any] = []
    if entity_type:
        clauses.append("entity_type = ?")
        params.append(entity_type)
    if entity_id:
        clauses.append("entity_id = ?")
        params.append(entity_id)
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    with get_conn(db_path) as conn:
        rows = conn.execute(
            f"""
            SELECT id, event_type, action, entity_type, entity_id, actor, detail,
                   old_value, new_value, created_at
            FROM audit_events
            {where}
            ORDER BY id DESC
            LIMIT ?
            """,
            (*params, limit),
        ).fetchall()
        return [dict(row) for row in rows]


# ---------------------------------------------------------------------------
# Local payer / claim registry (backs the in-process collaborators)
# ---------------------------------------------------------------------------

def upsert_payer(db_path: Path, payer: Payer) -> None:
    with get_conn(db_path) as conn:
        conn.execute(
            """
            INSERT INTO payers(id, name, payer_identifier) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                name=excluded.name,
                payer_identifier=excluded.payer_identifier
            """,
            (payer.id, payer.name, payer.payer_identifier),
        )


def get_payer_row(db_path: Path, payer_id: str) -> dict[str, Any] | None:
    with get_conn(db_path) as conn:
        row = conn.execute("SELECT id, name, payer_identifier FROM payers WHERE id = ?", (payer_id,)).fetchone()
        return None if row is None else dict(row)


def upsert_program(db_path: Path, program_id: str, name: str) -> None:
    with get_conn(db_path) as conn:
        conn.execute(
            "INSERT INTO programs(id, name) VALUES (?, ?) ON CONFLICT(id) DO UPDATE SET name=excluded.name",
            (program_id, name),
        )


def upsert_claim_row(db_path: Path, row: dict[str, Any]) -> None:
    with get_conn(db_path) as conn:
        conn.execute(
            """
            INSERT INTO claims(
                id, claim_number, payer_id, program_id, service_date, submission_date,
                total_amount, status, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET
                claim_number=excluded.claim_number,
                payer_id=excluded.payer_id,
                program_id=excluded.program_id,
                service_date=excluded.service_date,
                submission_date=excluded.submission_date,
                total_amount=excluded.total_amount,
                status=excluded.status,
                updated_at=excluded.updated_at
            """,
            (
                row["id"],
                row["claim_number"],
                row["payer_id"],
                row.get("program_id"),
                row["service_date"],
                row.get("submission_date"),
                row["total_amount"],
                row["status"],
                utc_now(),
            ),
        )


_CLAIM_SELECT = """
    SELECT c.id, c.claim_number, c.payer_id, c.program_id, c.service_date, c.submission_date,
           c.total_amount, c.status, p.name AS program_name
    FROM claims c
    LEFT JOIN programs p ON p.id = c.program_id
"""


def get_claim_row(db_path: Path, claim_id: str) -> dict[str, Any] | None:
    with get_conn(db_path) as conn:
        row = conn.execute(f"{_CLAIM_SELECT} WHERE c.id = ?", (claim_id,)).fetchone()
        return None if row is None else dict(row)


def get_claim_row_by_number(db_path: Path, claim_number: str) -> dict[str, Any] | None:
    with get_conn(db_path) as conn:
        row = conn.execute(f"{_CLAIM_SELECT} WHERE c.claim_number = ?", (claim_number,)).fetchone()
        return None if row is None else dict(row)


def list_claim_rows(db_path: Path, payer_id: str | None = None) -> list[dict[str, Any]]:
    with get_conn(db_path) as conn:
        if payer_id:
            rows = conn.execute(f"{_CLAIM_SELECT} WHERE c.payer_id = ? ORDER BY c.id ASC", (payer_id,)).fetchall()
        else:
            rows = conn.execute(f"{_CLAIM_SELECT} ORDER BY c.id ASC").fetchall()
        return [dict(row) for row in rows]


def set_claim_status(db_path: Path, claim_id: str, status: ClaimStatus) -> None:
    with get_conn(db_path) as conn:
        cur = conn.execute(
            "UPDATE claims SET status = ?, updated_at = ? WHERE id = ?",
            (status.value, utc_now(), claim_id),
        )
        if cur.rowcount == 0:
            raise NotFoundError("Claim", claim_id)
