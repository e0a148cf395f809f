from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal
from pathlib import Path
from typing import Iterable

import structlog

from claimrecon import persistence
from claimrecon.collaborators import NO_DEADLINE, CallContext, ClaimsService
from claimrecon.errors import NotFoundError
from claimrecon.models import ZERO, Claim, Payment, SuggestedMatch, sum_money

logger = structlog.get_logger(__name__)

PAYER_WEIGHT = 15
REMITTANCE_WEIGHT = 40
AMOUNT_WEIGHT = 30
DATE_WEIGHT = 15
DATE_WINDOW_DAYS = 90
AMOUNT_EPSILON = Decimal("0.01")


@dataclass
class MatchContext:
    payment_date: date
    unallocated: Decimal
    remittance_claim_ids: set[str]


def _score(claim: Claim, ctx: MatchContext) -> tuple[int, list[str]]:
    score = Decimal(PAYER_WEIGHT)
    reasons = ["same_payer"]

    if claim.id in ctx.remittance_claim_ids:
        score += REMITTANCE_WEIGHT
        reasons.append("remittance_detail")

    if abs(claim.outstanding_amount - ctx.unallocated) < AMOUNT_EPSILON:
        score += AMOUNT_WEIGHT
        reasons.append("exact_amount")

    day_gap = abs((ctx.payment_date - claim.service_date).days)
    if day_gap < DATE_WINDOW_DAYS:
        # Full weight on the payment date, decaying linearly to zero at the window edge.
        score += Decimal(DATE_WEIGHT) * Decimal(DATE_WINDOW_DAYS - day_gap) / Decimal(DATE_WINDOW_DAYS)
        reasons.append("near_date")

    confidence = int(score.quantize(Decimal(1), rounding=ROUND_HALF_UP))
    return max(0, min(100, confidence)), reasons


def rank_candidates(
    candidates: Iterable[Claim],
    ctx: MatchContext,
    payer_id: str,
    exclude: set[str] | None = None,
    min_confidence: int | None = None,
) -> list[SuggestedMatch]:
    """Score and order candidates: confidence descending, then claim id ascending."""
    exclude = exclude or set()
    matches: list[SuggestedMatch] = []
    for claim in candidates:
        if claim.payer_id != payer_id or claim.id in exclude or claim.outstanding_amount <= ZERO:
            continue
        confidence, reasons = _score(claim, ctx)
        if min_confidence is not None and confidence < min_confidence:
            continue
        matches.append(
            SuggestedMatch(
                claim_id=claim.id,
                claim_number=claim.claim_number,
                service_date=claim.service_date,
                confidence=confidence,
                amount=claim.outstanding_amount,
                reasons=reasons,
            )
        )
    matches.sort(key=lambda m: (-m.confidence, m.claim_id))
    return matches


class ClaimMatcher:
    """Proposes outstanding claims for a payment. Read-only."""

    def __init__(self, db_path: Path, claims: ClaimsService) -> None:
        self.db_path = db_path
        self.claims = claims

    def suggest_for_payment(
        self,
        payment: Payment,
        min_confidence: int | None = None,
        ctx: CallContext = NO_DEADLINE,
    ) -> list[SuggestedMatch]:
        claim_payments = persistence.list_claim_payments(self.db_path, payment.id)
        allocated = sum_money(cp.applied_amount for cp in claim_payments)
        match_ctx = MatchContext(
            payment_date=payment.payment_date,
            unallocated=payment.payment_amount - allocated,
            remittance_claim_ids=persistence.resolved_claim_ids_for_payment(self.db_path, payment.id),
        )
        candidates = self.claims.get_outstanding_claims(payment.payer_id, ctx)
        matches = rank_candidates(
            candidates,
            match_ctx,
            payer_id=payment.payer_id,
            exclude={cp.claim_id for cp in claim_payments},
            min_confidence=min_confidence,
        )
        logger.debug(
            "claim_matches_ranked",
            payment_id=payment.id,
            candidates=len(candidates),
            matches=len(matches),
        )
        return matches

    def suggest(
        self,
        payment_id: str,
        min_confidence: int | None = None,
        ctx: CallContext = NO_DEADLINE,
    ) -> list[SuggestedMatch]:
        payment = persistence.get_payment(self.db_path, payment_id)
        if payment is None:
            raise NotFoundError("Payment", payment_id)
        return self.suggest_for_payment(payment, min_confidence, ctx)
