from __future__ import annotations

import tempfile
import unittest
from datetime import date
from decimal import Decimal
from pathlib import Path

from claimrecon import persistence
from claimrecon.config import Settings
from claimrecon.errors import DuplicateImportError, NotFoundError
from claimrecon.models import (
    ClaimStatus,
    Payer,
    Payment,
    PaymentMethod,
    ReconciliationStatus,
    RemittanceFileType,
    RemittanceInfo,
)
from claimrecon.persistence import (
    create_payment,
    delete_payment,
    init_db,
    list_audit_events,
    list_payments,
    list_pending_notifications,
    log_audit_event,
    record_pending_notification,
    save_remittance_import,
    set_claim_status,
    utc_now,
)
from claimrecon.service import PaymentService


def make_payment(payment_id: str, payer_id: str = "payer-x", day: int = 1) -> Payment:
    now = utc_now()
    return Payment(
        id=payment_id,
        payer_id=payer_id,
        payment_date=date(2024, 3, day),
        payment_amount=Decimal("100.00"),
        payment_method=PaymentMethod.EFT,
        created_at=now,
        updated_at=now,
    )


class PersistenceTests(unittest.TestCase):
    def test_payment_filters_and_delete(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            db = Path(tmp) / "recon.db"
            init_db(db)
            init_db(db)
            create_payment(db, make_payment("pay-1", day=1))
            create_payment(db, make_payment("pay-2", day=10))
            create_payment(db, make_payment("pay-3", payer_id="payer-y", day=20))

            self.assertEqual([p.id for p in list_payments(db)], ["pay-3", "pay-2", "pay-1"])
            self.assertEqual([p.id for p in list_payments(db, payer_id="payer-x")], ["pay-2", "pay-1"])
            self.assertEqual(
                [p.id for p in list_payments(db, start=date(2024, 3, 5), end=date(2024, 3, 15))], ["pay-2"]
            )
            self.assertEqual(
                len(list_payments(db, status=ReconciliationStatus.UNRECONCILED, limit=None)), 3
            )

            delete_payment(db, "pay-1")
            self.assertEqual(len(list_payments(db)), 2)
            with self.assertRaises(NotFoundError):
                delete_payment(db, "pay-1")

    def test_duplicate_remittance_number_rolls_back(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            db = Path(tmp) / "recon.db"
            init_db(db)

            def info(info_id: str, payment_id: str) -> RemittanceInfo:
                return RemittanceInfo(
                    id=info_id,
                    payment_id=payment_id,
                    payer_id="payer-x",
                    remittance_number="TRACE-1",
                    remittance_date=date(2024, 3, 1),
                    payer_identifier="PX",
                    total_amount=Decimal("100.00"),
                    claim_count=0,
                    file_type=RemittanceFileType.CSV,
                )

            save_remittance_import(db, make_payment("pay-1"), info("rem-1", "pay-1"), [])
            with self.assertRaises(DuplicateImportError):
                save_remittance_import(db, make_payment("pay-2"), info("rem-2", "pay-2"), [])
            self.assertEqual([p.id for p in list_payments(db)], ["pay-1"])

    def test_pending_notifications_count_attempts(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            db = Path(tmp) / "recon.db"
            init_db(db)
            record_pending_notification(db, "pay-1", "clm-a", ClaimStatus.PAID, "timeout")
            record_pending_notification(db, "pay-1", "clm-a", ClaimStatus.PAID, "refused")
            rows = list_pending_notifications(db, "pay-1")
            self.assertEqual(len(rows), 1)
            self.assertEqual(rows[0]["attempts"], 2)
            self.assertEqual(rows[0]["error"], "refused")

    def test_audit_events_filter_newest_first(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            db = Path(tmp) / "recon.db"
            init_db(db)
            log_audit_event(db, "payment", "created", "payment", "pay-1")
            log_audit_event(db, "reconciliation", "allocate", "payment", "pay-1", actor="ops", new_value="partial")
            log_audit_event(db, "payment", "created", "payment", "pay-2")

            rows = list_audit_events(db, entity_type="payment", entity_id="pay-1")
            self.assertEqual([r["action"] for r in rows], ["allocate", "created"])
            self.assertEqual(rows[0]["actor"], "ops")
            self.assertEqual(len(list_audit_events(db, limit=1)), 1)

    def test_services_do_not_share_store_state(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            base = Path(tmp)
            first = PaymentService(Settings(data_dir=base / "a", db_path=base / "a" / "recon.db"))
            second = PaymentService(Settings(data_dir=base / "b", db_path=base / "b" / "recon.db"))
            first.payers.register(Payer(id="payer-x", name="Payer X"))

            first.create_payment("payer-x", date(2024, 3, 1), "100.00")
            self.assertEqual(len(first.list_payments()), 1)
            self.assertEqual(second.list_payments(), [])
            self.assertEqual(persistence.SQLITE_TIMEOUT, 30.0)
            self.assertFalse(hasattr(persistence, "set_busy_timeout"))

    def test_set_status_of_unknown_claim(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            db = Path(tmp) / "recon.db"
            init_db(db)
            with self.assertRaises(NotFoundError):
                set_claim_status(db, "clm-missing", ClaimStatus.PAID)


if __name__ == "__main__":
    unittest.main()
