"""``PaymentService``: the single entry point the HTTP layer and scripts call.

Wires the store, the collaborators and the five engine components from
``Settings``; each method is one logical operation.
"""

from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any

import structlog

from claimrecon import persistence
from claimrecon.aging import AgingReport, AgingReporter
from claimrecon.allocation import Matcher, ReconciliationAllocator, UndoResult
from claimrecon.batch import BatchItem, BatchReconciler, BatchResult
from claimrecon.collaborators import (
    CallContext,
    ClaimsService,
    LocalClaimsService,
    LocalPayerRegistry,
    PayerRegistry,
)
from claimrecon.config import Settings, get_settings
from claimrecon.errors import NotFoundError, ValidationError
from claimrecon.matching import ClaimMatcher
from claimrecon.models import (
    ZERO,
    AdjustmentType,
    ClaimAllocation,
    ClaimStatusChange,
    Payment,
    PaymentMethod,
    ReconciliationResult,
    ReconciliationStatus,
    RemittanceProcessingResult,
    SuggestedMatch,
    sum_money,
    to_money,
)
from claimrecon.remittance import ProgressCallback, RemittanceIngestor
from claimrecon.reports import render_aging_pdf

logger = structlog.get_logger(__name__)


class PaymentService:
    def __init__(
        self,
        settings: Settings | None = None,
        db_path: Path | None = None,
        claims: ClaimsService | None = None,
        payers: PayerRegistry | None = None,
        matcher: Matcher | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.db_path = db_path or self.settings.db_path
        persistence.init_db(self.db_path)

        self.payers: PayerRegistry = payers or LocalPayerRegistry(self.db_path)
        self.claims: ClaimsService = claims or LocalClaimsService(self.db_path)
        self.matcher = ClaimMatcher(self.db_path, self.claims)
        self.allocator = ReconciliationAllocator(self.db_path, self.claims, matcher or self.matcher)
        self.ingestor = RemittanceIngestor(self.db_path, self.claims, self.payers)
        self.batch = BatchReconciler(self.allocator, self.settings.batch_concurrency)
        self.aging = AgingReporter(self.claims, self.payers)

    def _ctx(self) -> CallContext:
        return CallContext.with_timeout(self.settings.default_call_timeout)

    # -- payments --------------------------------------------------------------

    def create_payment(
        self,
        payer_id: str,
        payment_date: date,
        payment_amount: Any,
        payment_method: PaymentMethod | str = PaymentMethod.EFT,
        reference_number: str | None = None,
        check_number: str | None = None,
        notes: str | None = None,
        actor: str = "system",
    ) -> Payment:
        amount = to_money(payment_amount, "payment_amount")
        if amount <= ZERO:
            raise ValidationError("payment_amount must be positive", payment_amount=amount)
        try:
            method = PaymentMethod(payment_method)
        except ValueError:
            raise ValidationError(f"unknown payment method: {payment_method}") from None
        if method is PaymentMethod.CHECK and not check_number:
            raise ValidationError("check_number is required for check payments")
        if self.payers.get_payer(payer_id, self._ctx()) is None:
            raise NotFoundError("Payer", payer_id)

        now = persistence.utc_now()
        payment = Payment(
            id=f"pay-{uuid.uuid4().hex[:12]}",
            payer_id=payer_id,
            payment_date=payment_date,
            payment_amount=amount,
            payment_method=method,
            reference_number=reference_number,
            check_number=check_number,
            notes=notes,
            created_at=now,
            updated_at=now,
        )
        persistence.create_payment(self.db_path, payment)
        persistence.log_audit_event(
            self.db_path,
            event_type="payment",
            action="created",
            entity_type="payment",
            entity_id=payment.id,
            actor=actor,
            new_value=str(amount),
        )
        logger.info("payment_created", payment_id=payment.id, payer_id=payer_id, amount=str(amount))
        return payment

    def get_payment(self, payment_id: str) -> Payment:
        payment = persistence.get_payment(self.db_path, payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    def list_payments(
        self,
        payer_id: str | None = None,
        status: ReconciliationStatus | str | None = None,
        start: date | None = None,
        end: date | None = None,
        limit: int = 500,
    ) -> list[Payment]:
        if status is not None:
            try:
                status = ReconciliationStatus(status)
            except ValueError:
                raise ValidationError(f"unknown reconciliation status: {status}") from None
        return persistence.list_payments(self.db_path, payer_id, status, start, end, limit)

    def delete_payment(self, payment_id: str, actor: str = "system") -> None:
        persistence.delete_payment(self.db_path, payment_id)
        persistence.log_audit_event(
            self.db_path,
            event_type="payment",
            action="deleted",
            entity_type="payment",
            entity_id=payment_id,
            actor=actor,
        )
        logger.info("payment_deleted", payment_id=payment_id)

    def get_payment_metrics(
        self,
        payer_id: str | None = None,
        start: date | None = None,
        end: date | None = None,
    ) -> dict[str, Any]:
        payments = persistence.list_payments(self.db_path, payer_id, None, start, end, limit=None)
        allocated = persistence.payment_allocated_totals(self.db_path)

        def group(key: str) -> dict[str, dict[str, Any]]:
            out: dict[str, dict[str, Any]] = {}
            for p in payments:
                value = getattr(p, key)
                label = value.value if hasattr(value, "value") else str(value)
                row = out.setdefault(label, {"count": 0, "amount": ZERO})
                row["count"] += 1
                row["amount"] += p.payment_amount
            return {k: out[k] for k in sorted(out)}

        total = sum_money(p.payment_amount for p in payments)
        total_allocated = sum_money(allocated.get(p.id, ZERO) for p in payments)
        average = (total / len(payments)).quantize(Decimal("0.01")) if payments else ZERO
        return {
            "total_payments": len(payments),
            "total_amount": total,
            "allocated_amount": total_allocated,
            "unallocated_amount": sum_money([total - total_allocated]),
            "average_amount": average,
            "by_status": group("reconciliation_status"),
            "by_method": group("payment_method"),
            "by_payer": group("payer_id"),
        }

    def get_adjustment_summary(
        self,
        payer_id: str | None = None,
        start: date | None = None,
        end: date | None = None,
        claim_id: str | None = None,
        adjustment_type: AdjustmentType | str | None = None,
        top: int = 10,
    ) -> dict[str, Any]:
        """Adjustment analytics over committed allocations.

        Filters apply to the payment's payer and date. ``top_reasons`` groups
        by (code, type) and ranks by count, then amount.
        """
        if top < 1:
            raise ValidationError("top must be at least 1", top=top)
        if adjustment_type is not None:
            try:
                adjustment_type = AdjustmentType(adjustment_type)
            except ValueError:
                raise ValidationError(f"unknown adjustment type: {adjustment_type}") from None
        rows = persistence.list_adjustment_rows(self.db_path, payer_id, start, end, claim_id, adjustment_type)

        def bucket(out: dict[str, dict[str, Any]], key: str, amount: Decimal) -> dict[str, Any]:
            entry = out.setdefault(key, {"count": 0, "amount": ZERO})
            entry["count"] += 1
            entry["amount"] += amount
            return entry

        by_type: dict[str, dict[str, Any]] = {}
        by_month: dict[str, dict[str, Any]] = {}
        by_claim: dict[str, dict[str, Any]] = {}
        reasons: dict[tuple[str, str], dict[str, Any]] = {}
        for row in rows:
            amount = row["adjustment_amount"]
            kind = row["adjustment_type"].value
            bucket(by_type, kind, amount)
            bucket(by_month, row["payment_date"].strftime("%Y-%m"), amount)
            claim = bucket(by_claim, row["claim_id"], amount)
            claim.setdefault("adjustments", []).append(
                {
                    "payment_id": row["payment_id"],
                    "adjustment_type": kind,
                    "adjustment_code": row["adjustment_code"],
                    "adjustment_amount": amount,
                    "description": row["description"],
                }
            )
            reason = reasons.setdefault(
                (row["adjustment_code"], kind),
                {"adjustment_code": row["adjustment_code"], "adjustment_type": kind, "count": 0, "amount": ZERO},
            )
            reason["count"] += 1
            reason["amount"] += amount

        top_reasons = sorted(
            reasons.values(), key=lambda r: (-r["count"], -r["amount"], r["adjustment_code"], r["adjustment_type"])
        )[:top]
        return {
            "total_adjustments": len(rows),
            "total_amount": sum_money(row["adjustment_amount"] for row in rows),
            "by_type": {k: by_type[k] for k in sorted(by_type)},
            "by_month": {k: by_month[k] for k in sorted(by_month)},
            "top_reasons": top_reasons,
            "by_claim": [{"claim_id": k, **by_claim[k]} for k in sorted(by_claim)],
        }

    def list_audit_events(
        self, entity_type: str | None = None, entity_id: str | None = None, limit: int = 200
    ) -> list[dict[str, Any]]:
        return persistence.list_audit_events(self.db_path, entity_type, entity_id, limit)

    # -- ingestion -------------------------------------------------------------

    def import_remittance(
        self,
        payer_id: str,
        file_type: str,
        content: bytes | str,
        filename: str | None = None,
        mapping_config: dict[str, str] | None = None,
        progress: ProgressCallback | None = None,
    ) -> RemittanceProcessingResult:
        return self.ingestor.import_remittance(
            payer_id,
            file_type,
            content,
            original_filename=filename,
            mapping_config=mapping_config,
            progress=progress,
            ctx=self._ctx(),
        )

    # -- matching and allocation ----------------------------------------------

    def get_suggested_matches(self, payment_id: str, min_confidence: int | None = None) -> dict[str, Any]:
        payment = self.get_payment(payment_id)
        matches: list[SuggestedMatch] = self.matcher.suggest_for_payment(payment, min_confidence, self._ctx())
        return {"payment": payment, "suggested_matches": matches}

    def reconcile_payment(
        self,
        payment_id: str,
        claim_payments: list[ClaimAllocation],
        notes: str | None = None,
        expected_version: int | None = None,
        actor: str = "system",
    ) -> ReconciliationResult:
        return self.allocator.allocate(payment_id, claim_payments, notes, expected_version, self._ctx(), actor)

    def undo_reconciliation(
        self, payment_id: str, expected_version: int | None = None, actor: str = "system"
    ) -> UndoResult:
        return self.allocator.undo(payment_id, expected_version, self._ctx(), actor)

    def batch_reconcile_payments(
        self,
        items: list[BatchItem],
        concurrency: int | None = None,
        stop_on_error: bool = False,
        timeout: float | None = None,
        actor: str = "system",
    ) -> BatchResult:
        return self.batch.reconcile_many(
            items,
            concurrency=concurrency,
            stop_on_error=stop_on_error,
            timeout=timeout if timeout is not None else self.settings.default_call_timeout,
            actor=actor,
        )

    def auto_reconcile_payment(
        self, payment_id: str, match_threshold: int | None = None, actor: str = "system"
    ) -> ReconciliationResult:
        threshold = self.settings.auto_match_threshold if match_threshold is None else match_threshold
        return self.allocator.auto_reconcile(payment_id, threshold, self._ctx(), actor)

    def get_reconciliation_details(self, payment_id: str) -> ReconciliationResult:
        return self.allocator.details(payment_id)

    def get_pending_notifications(self, payment_id: str) -> list[dict[str, Any]]:
        self.get_payment(payment_id)
        return persistence.list_pending_notifications(self.db_path, payment_id)

    def flag_exception(self, payment_id: str, reason: str, actor: str = "system") -> Payment:
        return self.allocator.flag_exception(payment_id, reason, actor)

    def clear_exception(self, payment_id: str, actor: str = "system") -> Payment:
        return self.allocator.clear_exception(payment_id, actor)

    def verify_payment(self, payment_id: str) -> list[str]:
        return self.allocator.verify(payment_id, self._ctx())

    def retry_notifications(self, payment_id: str) -> list[ClaimStatusChange]:
        return self.allocator.retry_notifications(payment_id, self._ctx())

    # -- aging -----------------------------------------------------------------

    def get_aging_report(
        self,
        as_of_date: date | None = None,
        payer_id: str | None = None,
        program_id: str | None = None,
    ) -> AgingReport:
        return self.aging.build(as_of_date, payer_id, program_id, self._ctx())

    def render_aging_report(self, report: AgingReport, path: Path) -> Path:
        return render_aging_pdf(report, path)
