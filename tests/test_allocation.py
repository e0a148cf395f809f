from __future__ import annotations

import unittest
from decimal import Decimal

from claimrecon import persistence
from claimrecon.errors import (
    ConflictError,
    DownstreamNotificationError,
    DuplicateClaimAllocationError,
    InvalidClaimPayerError,
    NotFoundError,
    OverAllocationError,
    PaymentLockedError,
    ValidationError,
)
from claimrecon.models import (
    AdjustmentRequest,
    AdjustmentType,
    ClaimAllocation,
    ClaimStatus,
    ReconciliationStatus,
)
from recon_fixtures import ReconTestCase


class AllocateTests(ReconTestCase):
    def test_partial_then_full_allocation(self) -> None:
        self.add_claim("clm-a", "600.00")
        self.add_claim("clm-b", "400.00")
        payment = self.add_payment("1000.00")

        first = self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "600.00")])
        self.assertEqual(first.reconciliation_status, ReconciliationStatus.PARTIALLY_RECONCILED)
        self.assertEqual(first.matched_amount, Decimal("600.00"))
        self.assertEqual(first.unmatched_amount, Decimal("400.00"))

        second = self.service.reconcile_payment(payment.id, [self.alloc("clm-b", "400.00")])
        self.assertEqual(second.reconciliation_status, ReconciliationStatus.RECONCILED)
        self.assertEqual(second.unmatched_amount, Decimal("0.00"))
        self.assertEqual(second.payment.version, 3)
        self.assertEqual([cp.claim_id for cp in second.claim_payments], ["clm-a", "clm-b"])

    def test_over_allocation_rejected_and_nothing_committed(self) -> None:
        self.add_claim("clm-a", "1500.00")
        payment = self.add_payment("1000.00")

        with self.assertRaises(OverAllocationError):
            self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "1200.00")])

        after = self.service.get_payment(payment.id)
        self.assertEqual(after.reconciliation_status, ReconciliationStatus.UNRECONCILED)
        self.assertEqual(after.version, payment.version)
        self.assertEqual(persistence.list_claim_payments(self.db, payment.id), [])

    def test_adjustments_count_toward_allocated_total(self) -> None:
        self.add_claim("clm-a", "500.00")
        payment = self.add_payment("450.00")
        allocation = ClaimAllocation(
            claim_id="clm-a",
            amount=Decimal("400.00"),
            adjustments=[
                AdjustmentRequest(AdjustmentType.CONTRACTUAL, "CO-45", Decimal("50.00"), "fee schedule"),
            ],
        )
        result = self.service.reconcile_payment(payment.id, [allocation])
        self.assertEqual(result.matched_amount, Decimal("450.00"))
        self.assertEqual(result.reconciliation_status, ReconciliationStatus.RECONCILED)
        self.assertEqual(result.claim_payments[0].adjustments[0].adjustment_code, "CO-45")
        claim = self.claims.get_claim("clm-a")
        self.assertEqual(claim.outstanding_amount, Decimal("50.00"))
        self.assertEqual(claim.status, ClaimStatus.PARTIAL_PAID)

    def test_claim_status_follows_outstanding_balance(self) -> None:
        self.add_claim("clm-a", "300.00")
        self.add_claim("clm-b", "500.00")
        payment = self.add_payment("600.00")
        result = self.service.reconcile_payment(
            payment.id, [self.alloc("clm-a", "300.00"), self.alloc("clm-b", "300.00")]
        )
        changes = {c.claim_id: c for c in result.updated_claims}
        self.assertEqual(changes["clm-a"].previous_status, ClaimStatus.SUBMITTED)
        self.assertEqual(changes["clm-a"].new_status, ClaimStatus.PAID)
        self.assertEqual(changes["clm-b"].new_status, ClaimStatus.PARTIAL_PAID)
        self.assertEqual(result.notification_errors, [])

    def test_replaying_same_request_replaces_allocation(self) -> None:
        self.add_claim("clm-a", "600.00")
        payment = self.add_payment("1000.00")
        self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "600.00")])
        replay = self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "600.00")])
        self.assertEqual(replay.matched_amount, Decimal("600.00"))
        self.assertEqual(len(replay.claim_payments), 1)

        # Raising the same claim's allocation only counts the replacement.
        raised = self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "1000.00")])
        self.assertEqual(raised.reconciliation_status, ReconciliationStatus.RECONCILED)

    def test_request_validation(self) -> None:
        self.add_claim("clm-a", "600.00")
        self.add_claim("clm-y", "600.00", payer_id="payer-y")
        payment = self.add_payment("1000.00")

        with self.assertRaises(ValidationError):
            self.service.reconcile_payment(payment.id, [])
        with self.assertRaises(ValidationError):
            self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "-5.00")])
        with self.assertRaises(ValidationError):
            self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "0.00")])
        with self.assertRaises(DuplicateClaimAllocationError):
            self.service.reconcile_payment(
                payment.id, [self.alloc("clm-a", "100.00"), self.alloc("clm-a", "200.00")]
            )
        with self.assertRaises(NotFoundError):
            self.service.reconcile_payment(payment.id, [self.alloc("clm-missing", "100.00")])
        with self.assertRaises(InvalidClaimPayerError):
            self.service.reconcile_payment(payment.id, [self.alloc("clm-y", "100.00")])
        with self.assertRaises(NotFoundError):
            self.service.reconcile_payment("pay-missing", [self.alloc("clm-a", "100.00")])
        with self.assertRaises(ValidationError):
            self.service.reconcile_payment(payment.id, [ClaimAllocation("clm-a", 10.5)])

        self.assertEqual(self.service.get_payment(payment.id).version, payment.version)

    def test_stale_version_conflicts(self) -> None:
        self.add_claim("clm-a", "600.00")
        self.add_claim("clm-b", "400.00")
        payment = self.add_payment("1000.00")
        self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "100.00")], expected_version=1)

        with self.assertRaises(ConflictError) as ctx:
            self.service.reconcile_payment(payment.id, [self.alloc("clm-b", "100.00")], expected_version=1)
        self.assertTrue(ctx.exception.retryable)

    def test_lost_race_on_commit_conflicts(self) -> None:
        self.add_claim("clm-a", "600.00")
        payment = self.add_payment("1000.00")
        persistence.update_payment_status(
            self.db, payment.id, payment.version, ReconciliationStatus.UNRECONCILED, "touched"
        )
        with self.assertRaises(ConflictError):
            persistence.commit_allocation(
                self.db, payment.id, payment.version, [], ReconciliationStatus.UNRECONCILED, None
            )


class UndoTests(ReconTestCase):
    def test_undo_fully_reconciled_payment(self) -> None:
        self.add_claim("clm-a", "600.00")
        self.add_claim("clm-b", "400.00")
        payment = self.add_payment("1000.00")
        self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "600.00"), self.alloc("clm-b", "400.00")])

        undone = self.service.undo_reconciliation(payment.id)
        self.assertEqual(undone.payment.reconciliation_status, ReconciliationStatus.UNRECONCILED)
        self.assertEqual(persistence.list_claim_payments(self.db, payment.id), [])
        self.assertEqual(self.claims.get_claim("clm-a").status, ClaimStatus.SUBMITTED)
        self.assertEqual(self.claims.get_claim("clm-a").outstanding_amount, Decimal("600.00"))
        self.assertEqual({c.new_status for c in undone.updated_claims}, {ClaimStatus.SUBMITTED})

    def test_undo_is_noop_on_unreconciled_payment(self) -> None:
        payment = self.add_payment("1000.00")
        undone = self.service.undo_reconciliation(payment.id)
        self.assertEqual(undone.payment.version, payment.version)
        self.assertEqual(undone.updated_claims, [])

    def test_undo_then_redo_reproduces_result(self) -> None:
        self.add_claim("clm-a", "600.00")
        self.add_claim("clm-b", "400.00")
        payment = self.add_payment("1000.00")
        request = [self.alloc("clm-a", "600.00"), self.alloc("clm-b", "250.00")]

        original = self.service.reconcile_payment(payment.id, request)
        self.service.undo_reconciliation(payment.id)
        redone = self.service.reconcile_payment(payment.id, request)

        def shape(result):
            return (
                result.reconciliation_status,
                result.total_amount,
                result.matched_amount,
                result.unmatched_amount,
                [(cp.claim_id, cp.paid_amount) for cp in result.claim_payments],
                [(c.claim_id, c.previous_status, c.new_status) for c in result.updated_claims],
            )

        self.assertEqual(shape(original), shape(redone))

    def test_undo_keeps_other_payments_on_shared_claim(self) -> None:
        self.add_claim("clm-a", "600.00")
        first = self.add_payment("200.00")
        second = self.add_payment("400.00")
        self.service.reconcile_payment(first.id, [self.alloc("clm-a", "200.00")])
        self.service.reconcile_payment(second.id, [self.alloc("clm-a", "400.00")])
        self.assertEqual(self.claims.get_claim("clm-a").status, ClaimStatus.PAID)

        self.service.undo_reconciliation(second.id)
        claim = self.claims.get_claim("clm-a")
        self.assertEqual(claim.outstanding_amount, Decimal("400.00"))
        self.assertEqual(claim.status, ClaimStatus.PARTIAL_PAID)

    def test_undoing_every_payment_restores_original_claim_status(self) -> None:
        self.add_claim("clm-a", "600.00")
        first = self.add_payment("200.00")
        second = self.add_payment("400.00")
        self.service.reconcile_payment(first.id, [self.alloc("clm-a", "200.00")])
        self.service.reconcile_payment(second.id, [self.alloc("clm-a", "400.00")])
        self.assertEqual(
            persistence.list_claim_payments(self.db, second.id)[0].previous_claim_status, ClaimStatus.SUBMITTED
        )

        self.service.undo_reconciliation(first.id)
        self.assertEqual(self.claims.get_claim("clm-a").status, ClaimStatus.PARTIAL_PAID)
        self.service.undo_reconciliation(second.id)
        claim = self.claims.get_claim("clm-a")
        self.assertEqual(claim.outstanding_amount, Decimal("600.00"))
        self.assertEqual(claim.status, ClaimStatus.SUBMITTED)

    def test_failed_claim_lookup_aborts_undo_before_saving(self) -> None:
        self.add_claim("clm-a", "600.00")
        payment = self.add_payment("1000.00")
        self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "600.00")])
        self.claims.lookups_allowed = 0

        with self.assertRaises(ConnectionError):
            self.service.undo_reconciliation(payment.id)
        after = self.service.get_payment(payment.id)
        self.assertEqual(after.reconciliation_status, ReconciliationStatus.PARTIALLY_RECONCILED)
        self.assertEqual(len(persistence.list_claim_payments(self.db, payment.id)), 1)


class ExceptionFlowTests(ReconTestCase):
    def test_flagged_payment_rejects_allocation_until_cleared(self) -> None:
        self.add_claim("clm-a", "600.00")
        payment = self.add_payment("1000.00")
        self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "300.00")])

        flagged = self.service.flag_exception(payment.id, "payer disputes amount")
        self.assertEqual(flagged.reconciliation_status, ReconciliationStatus.EXCEPTION)
        self.assertIn("payer disputes amount", flagged.notes)
        with self.assertRaises(ValidationError):
            self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "100.00")])

        cleared = self.service.clear_exception(payment.id)
        self.assertEqual(cleared.reconciliation_status, ReconciliationStatus.PARTIALLY_RECONCILED)

    def test_undo_clears_exception(self) -> None:
        payment = self.add_payment("1000.00")
        self.service.flag_exception(payment.id, "manual review")
        undone = self.service.undo_reconciliation(payment.id)
        self.assertEqual(undone.payment.reconciliation_status, ReconciliationStatus.UNRECONCILED)

    def test_flag_requires_reason(self) -> None:
        payment = self.add_payment("1000.00")
        with self.assertRaises(ValidationError):
            self.service.flag_exception(payment.id, "  ")

    def test_verify_flags_missing_claim(self) -> None:
        self.add_claim("clm-a", "600.00")
        payment = self.add_payment("1000.00")
        self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "600.00")])
        self.assertEqual(self.service.verify_payment(payment.id), [])

        with persistence.get_conn(self.db) as conn:
            conn.execute("DELETE FROM claims WHERE id = ?", ("clm-a",))
        problems = self.service.verify_payment(payment.id)
        self.assertEqual(len(problems), 1)
        self.assertIn("clm-a", problems[0])
        self.assertEqual(
            self.service.get_payment(payment.id).reconciliation_status, ReconciliationStatus.EXCEPTION
        )


class NotificationTests(ReconTestCase):
    def test_failed_claim_sync_keeps_allocation_and_retries(self) -> None:
        self.add_claim("clm-a", "600.00")
        payment = self.add_payment("1000.00")
        self.claims.failing = True

        result = self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "600.00")])
        self.assertEqual(result.reconciliation_status, ReconciliationStatus.PARTIALLY_RECONCILED)
        self.assertEqual(result.updated_claims, [])
        self.assertEqual(len(result.notification_errors), 1)
        self.assertEqual(result.notification_errors[0]["error"], "downstream_notification_failed")
        self.assertEqual(len(self.service.get_pending_notifications(payment.id)), 1)

        with self.assertRaises(DownstreamNotificationError):
            self.service.retry_notifications(payment.id)

        self.claims.failing = False
        changes = self.service.retry_notifications(payment.id)
        self.assertEqual([(c.claim_id, c.new_status) for c in changes], [("clm-a", ClaimStatus.PAID)])
        self.assertEqual(self.service.get_pending_notifications(payment.id), [])

    def test_claim_lookups_after_save_are_not_needed(self) -> None:
        self.add_claim("clm-a", "600.00")
        self.add_claim("clm-b", "400.00")
        payment = self.add_payment("1000.00")
        # One lookup per claim for validation, none once the allocation is saved.
        self.claims.lookups_allowed = 2

        result = self.service.reconcile_payment(
            payment.id, [self.alloc("clm-a", "600.00"), self.alloc("clm-b", "100.00")]
        )
        self.assertEqual(result.reconciliation_status, ReconciliationStatus.PARTIALLY_RECONCILED)
        self.assertEqual(result.notification_errors, [])
        self.assertEqual(
            [(c.claim_id, c.new_status) for c in result.updated_claims],
            [("clm-a", ClaimStatus.PAID), ("clm-b", ClaimStatus.PARTIAL_PAID)],
        )
        self.assertEqual(self.service.get_pending_notifications(payment.id), [])

    def test_status_sync_failure_after_save_is_reported_not_raised(self) -> None:
        self.add_claim("clm-a", "600.00")
        payment = self.add_payment("1000.00")
        self.claims.lookups_allowed = 1
        self.claims.failing = True

        result = self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "200.00")])
        self.assertEqual(result.payment.version, 2)
        self.assertEqual(result.notification_errors[0]["error"], "downstream_notification_failed")
        pending = self.service.get_pending_notifications(payment.id)
        self.assertEqual([(p["claim_id"], p["target_status"]) for p in pending], [("clm-a", "partial_paid")])


class DeletePaymentTests(ReconTestCase):
    def test_payment_with_allocations_is_locked(self) -> None:
        self.add_claim("clm-a", "600.00")
        payment = self.add_payment("1000.00")
        self.service.reconcile_payment(payment.id, [self.alloc("clm-a", "100.00")])
        with self.assertRaises(PaymentLockedError):
            self.service.delete_payment(payment.id)

        self.service.undo_reconciliation(payment.id)
        self.service.delete_payment(payment.id)
        with self.assertRaises(NotFoundError):
            self.service.get_payment(payment.id)


if __name__ == "__main__":
    unittest.main()
