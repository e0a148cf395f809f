"""Reconciliation allocator: the payment state machine.

Unreconciled -> PartiallyReconciled -> Reconciled is derived from the allocated
amount; Exception is only entered by explicit flagging. Every mutation is
guarded by the payment's ``version`` so concurrent writers to the same payment
fail with ``ConflictError`` instead of double-counting.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Any, Protocol

import structlog

from claimrecon import persistence
from claimrecon.collaborators import NO_DEADLINE, CallContext, ClaimsService
from claimrecon.errors import (
    ConflictError,
    DownstreamNotificationError,
    DuplicateClaimAllocationError,
    InvalidClaimPayerError,
    NotFoundError,
    OverAllocationError,
    ValidationError,
)
from claimrecon.matching import ClaimMatcher
from claimrecon.models import (
    ZERO,
    AdjustmentRequest,
    Claim,
    ClaimAllocation,
    ClaimPayment,
    ClaimStatus,
    ClaimStatusChange,
    Payment,
    PaymentAdjustment,
    ReconciliationResult,
    ReconciliationStatus,
    SuggestedMatch,
    derive_status,
    sum_money,
    to_money,
)

logger = structlog.get_logger(__name__)

DEFAULT_MATCH_THRESHOLD = 80


class Matcher(Protocol):
    def suggest_for_payment(
        self, payment: Payment, min_confidence: int | None = None, ctx: CallContext = NO_DEADLINE
    ) -> list[SuggestedMatch]: ...


@dataclass
class UndoResult:
    payment: Payment
    updated_claims: list[ClaimStatusChange] = field(default_factory=list)
    notification_errors: list[dict[str, Any]] = field(default_factory=list)


def _merge_notes(existing: str | None, new: str | None) -> str | None:
    if not new:
        return existing
    return f"{existing}\n{new}" if existing else new


def _settled_status(total: Decimal, applied: Decimal) -> ClaimStatus:
    return ClaimStatus.PAID if total - applied <= ZERO else ClaimStatus.PARTIAL_PAID


class ReconciliationAllocator:
    def __init__(self, db_path: Path, claims: ClaimsService, matcher: Matcher | None = None) -> None:
        self.db_path = db_path
        self.claims = claims
        self.matcher: Matcher = matcher or ClaimMatcher(db_path, claims)

    # -- reads ---------------------------------------------------------------

    def _load(self, payment_id: str) -> Payment:
        payment = persistence.get_payment(self.db_path, payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return payment

    def details(
        self,
        payment_id: str,
        updated_claims: list[ClaimStatusChange] | None = None,
        notification_errors: list[dict[str, Any]] | None = None,
    ) -> ReconciliationResult:
        payment = self._load(payment_id)
        claim_payments = persistence.list_claim_payments(self.db_path, payment_id)
        matched = sum_money(cp.applied_amount for cp in claim_payments)
        return ReconciliationResult(
            payment=payment,
            claim_payments=claim_payments,
            total_amount=payment.payment_amount,
            matched_amount=matched,
            unmatched_amount=sum_money([payment.payment_amount - matched]),
            reconciliation_status=payment.reconciliation_status,
            updated_claims=updated_claims or [],
            notification_errors=notification_errors or [],
        )

    # -- allocate ------------------------------------------------------------

    @staticmethod
    def _normalise(allocations: list[ClaimAllocation]) -> list[ClaimAllocation]:
        if not allocations:
            raise ValidationError("at least one claim allocation is required")
        normalised: list[ClaimAllocation] = []
        seen: set[str] = set()
        for alloc in allocations:
            claim_id = (alloc.claim_id or "").strip()
            if not claim_id:
                raise ValidationError("claim_id is required for every allocation")
            if claim_id in seen:
                raise DuplicateClaimAllocationError(
                    f"claim {claim_id} appears more than once in the request", claim_id=claim_id
                )
            seen.add(claim_id)
            amount = to_money(alloc.amount, "amount")
            adjustments = [
                AdjustmentRequest(
                    adjustment_type=adj.adjustment_type,
                    adjustment_code=adj.adjustment_code,
                    adjustment_amount=to_money(adj.adjustment_amount, "adjustment_amount"),
                    description=adj.description,
                )
                for adj in alloc.adjustments
            ]
            if amount < ZERO or any(a.adjustment_amount < ZERO for a in adjustments):
                raise ValidationError(f"amounts for claim {claim_id} must not be negative", claim_id=claim_id)
            item = ClaimAllocation(claim_id=claim_id, amount=amount, adjustments=adjustments)
            if item.total == ZERO:
                raise ValidationError(f"allocation for claim {claim_id} is zero", claim_id=claim_id)
            normalised.append(item)
        return normalised

    def allocate(
        self,
        payment_id: str,
        allocations: list[ClaimAllocation],
        notes: str | None = None,
        expected_version: int | None = None,
        ctx: CallContext = NO_DEADLINE,
        actor: str = "system",
    ) -> ReconciliationResult:
        payment = self._load(payment_id)
        if expected_version is not None and expected_version != payment.version:
            raise ConflictError(
                "payment version does not match",
                payment_id=payment_id,
                expected_version=expected_version,
                current_version=payment.version,
            )
        if payment.reconciliation_status is ReconciliationStatus.EXCEPTION:
            raise ValidationError(
                "payment is flagged as an exception; clear or undo it before allocating",
                payment_id=payment_id,
            )
        requested = self._normalise(allocations)

        claims: dict[str, Claim] = {}
        for alloc in requested:
            ctx.check("allocate")
            claim = self.claims.get_claim(alloc.claim_id, ctx)
            if claim is None:
                raise NotFoundError("Claim", alloc.claim_id)
            if claim.payer_id != payment.payer_id:
                raise InvalidClaimPayerError(
                    f"claim {claim.id} belongs to payer {claim.payer_id}, not {payment.payer_id}",
                    claim_id=claim.id,
                    claim_payer_id=claim.payer_id,
                    payment_payer_id=payment.payer_id,
                )
            claims[claim.id] = claim

        existing = {cp.claim_id: cp for cp in persistence.list_claim_payments(self.db_path, payment_id)}
        kept = sum_money(cp.applied_amount for claim_id, cp in existing.items() if claim_id not in claims)
        new_allocated = sum_money([kept, *(a.total for a in requested)])
        if new_allocated > payment.payment_amount:
            raise OverAllocationError(
                f"allocating {new_allocated} exceeds payment amount {payment.payment_amount}",
                payment_id=payment_id,
                payment_amount=payment.payment_amount,
                already_allocated=kept,
                requested=sum_money(a.total for a in requested),
            )

        now = persistence.utc_now()
        rows: list[ClaimPayment] = []
        for alloc in requested:
            prior = existing.get(alloc.claim_id)
            if prior is not None:
                previous = prior.previous_claim_status
            else:
                # A claim shared with other payments reverts to what it was before the first of them.
                previous = persistence.inherited_claim_status(
                    self.db_path, alloc.claim_id, payment_id
                ) or claims[alloc.claim_id].status
            cp_id = f"cp-{uuid.uuid4().hex[:12]}"
            rows.append(
                ClaimPayment(
                    id=cp_id,
                    payment_id=payment_id,
                    claim_id=alloc.claim_id,
                    paid_amount=alloc.amount,
                    adjustments=[
                        PaymentAdjustment(
                            id=f"adj-{uuid.uuid4().hex[:12]}",
                            claim_payment_id=cp_id,
                            adjustment_type=adj.adjustment_type,
                            adjustment_code=adj.adjustment_code,
                            adjustment_amount=adj.adjustment_amount,
                            description=adj.description,
                        )
                        for adj in alloc.adjustments
                    ],
                    previous_claim_status=previous,
                    created_at=prior.created_at if prior else now,
                    updated_at=now,
                )
            )

        status = derive_status(new_allocated, payment.payment_amount)
        ctx.check("allocate")
        persistence.commit_allocation(
            self.db_path,
            payment_id,
            payment.version,
            rows,
            status,
            _merge_notes(payment.notes, notes),
        )
        persistence.log_audit_event(
            self.db_path,
            event_type="reconciliation",
            action="allocate",
            entity_type="payment",
            entity_id=payment_id,
            actor=actor,
            detail=", ".join(f"{r.claim_id}={r.applied_amount}" for r in rows),
            old_value=payment.reconciliation_status.value,
            new_value=status.value,
        )
        logger.info(
            "payment_allocated",
            payment_id=payment_id,
            claims=len(rows),
            allocated=str(new_allocated),
            status=status.value,
        )

        # No collaborator reads after the commit; targets come from the store.
        applied = persistence.claim_applied_totals(self.db_path, sorted(claims))
        targets = {
            claim_id: _settled_status(claim.total_amount, applied.get(claim_id, ZERO))
            for claim_id, claim in claims.items()
        }
        updated, errors = self._notify(payment_id, targets, ctx)
        return self.details(payment_id, updated, errors)

    # -- claim status sync ----------------------------------------------------

    def _notify(
        self, payment_id: str, targets: dict[str, ClaimStatus], ctx: CallContext
    ) -> tuple[list[ClaimStatusChange], list[dict[str, Any]]]:
        changes: list[ClaimStatusChange] = []
        errors: list[dict[str, Any]] = []
        for claim_id in sorted(targets):
            status = targets[claim_id]
            try:
                previous = self.claims.update_claim_payment_status(claim_id, status, ctx)
            except Exception as exc:  # any collaborator failure is queued for retry_notifications
                logger.warning(
                    "claim_status_sync_failed",
                    payment_id=payment_id,
                    claim_id=claim_id,
                    target_status=status.value,
                    error=str(exc),
                    exc_info=True,
                )
                persistence.record_pending_notification(self.db_path, payment_id, claim_id, status, str(exc))
                errors.append(
                    DownstreamNotificationError(
                        f"claim {claim_id} status sync failed: {exc}",
                        payment_id=payment_id,
                        claim_id=claim_id,
                        target_status=status.value,
                    ).to_dict()
                )
                continue
            persistence.clear_pending_notification(self.db_path, payment_id, claim_id)
            changes.append(ClaimStatusChange(claim_id=claim_id, previous_status=previous, new_status=status))
        return changes, errors

    def retry_notifications(self, payment_id: str, ctx: CallContext = NO_DEADLINE) -> list[ClaimStatusChange]:
        self._load(payment_id)
        pending = persistence.list_pending_notifications(self.db_path, payment_id)
        targets = {row["claim_id"]: ClaimStatus(row["target_status"]) for row in pending}
        changes, errors = self._notify(payment_id, targets, ctx)
        if errors:
            raise DownstreamNotificationError(
                f"{len(errors)} claim status notification(s) still failing",
                payment_id=payment_id,
                failures=errors,
            )
        logger.info("claim_notifications_retried", payment_id=payment_id, delivered=len(changes))
        return changes

    # -- undo ----------------------------------------------------------------

    def undo(
        self,
        payment_id: str,
        expected_version: int | None = None,
        ctx: CallContext = NO_DEADLINE,
        actor: str = "system",
    ) -> UndoResult:
        payment = self._load(payment_id)
        if expected_version is not None and expected_version != payment.version:
            raise ConflictError(
                "payment version does not match",
                payment_id=payment_id,
                expected_version=expected_version,
                current_version=payment.version,
            )
        existing = persistence.list_claim_payments(self.db_path, payment_id)
        if not existing and payment.reconciliation_status is ReconciliationStatus.UNRECONCILED:
            return UndoResult(payment=payment)

        totals: dict[str, Decimal] = {}
        for cp in existing:
            ctx.check("undo")
            claim = self.claims.get_claim(cp.claim_id, ctx)
            if claim is not None:
                totals[cp.claim_id] = claim.total_amount

        persistence.clear_allocations(self.db_path, payment_id, payment.version, payment.notes)
        persistence.log_audit_event(
            self.db_path,
            event_type="reconciliation",
            action="undo",
            entity_type="payment",
            entity_id=payment_id,
            actor=actor,
            detail=f"removed {len(existing)} claim payment(s)",
            old_value=payment.reconciliation_status.value,
            new_value=ReconciliationStatus.UNRECONCILED.value,
        )
        logger.info("reconciliation_undone", payment_id=payment_id, claim_payments=len(existing))

        applied = persistence.claim_applied_totals(self.db_path, sorted(totals)) if totals else {}
        targets: dict[str, ClaimStatus] = {}
        for cp in existing:
            if cp.claim_id not in totals:
                continue
            remaining = applied.get(cp.claim_id, ZERO)
            if remaining > ZERO:
                # Other payments still apply to this claim.
                targets[cp.claim_id] = _settled_status(totals[cp.claim_id], remaining)
            elif cp.previous_claim_status is not None:
                targets[cp.claim_id] = cp.previous_claim_status
        updated, errors = self._notify(payment_id, targets, ctx)
        return UndoResult(payment=self._load(payment_id), updated_claims=updated, notification_errors=errors)

    # -- auto ----------------------------------------------------------------

    def auto_reconcile(
        self,
        payment_id: str,
        match_threshold: int = DEFAULT_MATCH_THRESHOLD,
        ctx: CallContext = NO_DEADLINE,
        actor: str = "system",
    ) -> ReconciliationResult:
        if not 0 <= match_threshold <= 100:
            raise ValidationError("match_threshold must be between 0 and 100", match_threshold=match_threshold)
        payment = self._load(payment_id)
        if payment.reconciliation_status is ReconciliationStatus.EXCEPTION:
            raise ValidationError("payment is flagged as an exception", payment_id=payment_id)

        allocated = sum_money(cp.applied_amount for cp in persistence.list_claim_payments(self.db_path, payment_id))
        remaining = payment.payment_amount - allocated
        suggestions = sorted(
            self.matcher.suggest_for_payment(payment, None, ctx),
            key=lambda m: (-m.confidence, m.claim_id),
        )

        picks: list[ClaimAllocation] = []
        for match in suggestions:
            if remaining <= ZERO or match.confidence < match_threshold:
                break
            amount: Decimal = min(match.amount, remaining)
            if amount <= ZERO:
                continue
            picks.append(ClaimAllocation(claim_id=match.claim_id, amount=amount))
            remaining -= amount

        if not picks:
            logger.info("auto_reconcile_no_candidates", payment_id=payment_id, threshold=match_threshold)
            return self.details(payment_id)
        return self.allocate(
            payment_id,
            picks,
            notes=f"Auto-reconciled {len(picks)} claim(s) (threshold {match_threshold})",
            expected_version=payment.version,
            ctx=ctx,
            actor=actor,
        )

    # -- exception handling ---------------------------------------------------

    def flag_exception(self, payment_id: str, reason: str, actor: str = "system") -> Payment:
        if not reason or not reason.strip():
            raise ValidationError("an exception reason is required")
        payment = self._load(payment_id)
        persistence.update_payment_status(
            self.db_path,
            payment_id,
            payment.version,
            ReconciliationStatus.EXCEPTION,
            _merge_notes(payment.notes, f"Exception: {reason.strip()}"),
        )
        persistence.log_audit_event(
            self.db_path,
            event_type="reconciliation",
            action="flag_exception",
            entity_type="payment",
            entity_id=payment_id,
            actor=actor,
            detail=reason.strip(),
            old_value=payment.reconciliation_status.value,
            new_value=ReconciliationStatus.EXCEPTION.value,
        )
        logger.warning("payment_flagged_exception", payment_id=payment_id, reason=reason.strip())
        return self._load(payment_id)

    def clear_exception(self, payment_id: str, actor: str = "system") -> Payment:
        payment = self._load(payment_id)
        if payment.reconciliation_status is not ReconciliationStatus.EXCEPTION:
            return payment
        allocated = sum_money(cp.applied_amount for cp in persistence.list_claim_payments(self.db_path, payment_id))
        if allocated > payment.payment_amount:
            raise OverAllocationError(
                "allocations exceed the payment amount; undo the reconciliation instead",
                payment_id=payment_id,
                payment_amount=payment.payment_amount,
                allocated=allocated,
            )
        status = derive_status(allocated, payment.payment_amount)
        persistence.update_payment_status(self.db_path, payment_id, payment.version, status, payment.notes)
        persistence.log_audit_event(
            self.db_path,
            event_type="reconciliation",
            action="clear_exception",
            entity_type="payment",
            entity_id=payment_id,
            actor=actor,
            old_value=ReconciliationStatus.EXCEPTION.value,
            new_value=status.value,
        )
        return self._load(payment_id)

    def verify(self, payment_id: str, ctx: CallContext = NO_DEADLINE) -> list[str]:
        """Check the payment against its invariants and flag it as an exception on conflict."""
        payment = self._load(payment_id)
        claim_payments = persistence.list_claim_payments(self.db_path, payment_id)
        problems: list[str] = []
        allocated = sum_money(cp.applied_amount for cp in claim_payments)
        if allocated > payment.payment_amount:
            problems.append(f"allocated {allocated} exceeds payment amount {payment.payment_amount}")
        for cp in claim_payments:
            claim = self.claims.get_claim(cp.claim_id, ctx)
            if claim is None:
                problems.append(f"claim {cp.claim_id} no longer exists")
            elif claim.payer_id != payment.payer_id:
                problems.append(f"claim {cp.claim_id} now belongs to payer {claim.payer_id}")
        if problems and payment.reconciliation_status is not ReconciliationStatus.EXCEPTION:
            self.flag_exception(payment_id, "; ".join(problems))
        return problems
