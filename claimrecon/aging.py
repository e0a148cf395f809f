"""Accounts-receivable aging over outstanding claims, bucketed by days since service."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal

import structlog

from claimrecon.collaborators import NO_DEADLINE, CallContext, ClaimsService, PayerRegistry
from claimrecon.models import ZERO, Claim, sum_money

logger = structlog.get_logger(__name__)

BUCKET_LABELS = ("current", "1-30", "31-60", "61-90", "91+")


def bucket_for(age_days: int) -> str:
    if age_days <= 0:
        return "current"
    if age_days <= 30:
        return "1-30"
    if age_days <= 60:
        return "31-60"
    if age_days <= 90:
        return "61-90"
    return "91+"


@dataclass
class AgingBuckets:
    current: Decimal = ZERO
    days_1_30: Decimal = ZERO
    days_31_60: Decimal = ZERO
    days_61_90: Decimal = ZERO
    days_91_plus: Decimal = ZERO

    def add(self, label: str, amount: Decimal) -> None:
        attr = {
            "current": "current",
            "1-30": "days_1_30",
            "31-60": "days_31_60",
            "61-90": "days_61_90",
            "91+": "days_91_plus",
        }[label]
        setattr(self, attr, getattr(self, attr) + amount)

    @property
    def total(self) -> Decimal:
        return sum_money([self.current, self.days_1_30, self.days_31_60, self.days_61_90, self.days_91_plus])

    def as_rows(self) -> list[tuple[str, Decimal]]:
        return list(zip(BUCKET_LABELS, [self.current, self.days_1_30, self.days_31_60, self.days_61_90, self.days_91_plus]))


@dataclass
class AgingBreakdown:
    key: str
    name: str
    total_outstanding: Decimal = ZERO
    claim_count: int = 0
    buckets: AgingBuckets = field(default_factory=AgingBuckets)


@dataclass
class AgingReport:
    as_of_date: date
    total_outstanding: Decimal
    claim_count: int
    buckets: AgingBuckets
    by_payer: list[AgingBreakdown]
    by_program: list[AgingBreakdown]
    payer_id: str | None = None
    program_id: str | None = None


UNASSIGNED_PROGRAM = "unassigned"


class AgingReporter:
    """Pure read: nothing here mutates payments or claims."""

    def __init__(self, claims: ClaimsService, payers: PayerRegistry) -> None:
        self.claims = claims
        self.payers = payers

    def build(
        self,
        as_of_date: date | None = None,
        payer_id: str | None = None,
        program_id: str | None = None,
        ctx: CallContext = NO_DEADLINE,
    ) -> AgingReport:
        as_of = as_of_date or date.today()
        claims: list[Claim] = [
            c
            for c in self.claims.get_outstanding_claims(payer_id, ctx)
            if c.service_date <= as_of and (program_id is None or c.program_id == program_id)
        ]

        overall = AgingBuckets()
        by_payer: dict[str, AgingBreakdown] = {}
        by_program: dict[str, AgingBreakdown] = {}

        for claim in claims:
            label = bucket_for((as_of - claim.service_date).days)
            amount = claim.outstanding_amount
            overall.add(label, amount)

            payer_row = by_payer.get(claim.payer_id)
            if payer_row is None:
                payer = self.payers.get_payer(claim.payer_id, ctx)
                payer_row = by_payer[claim.payer_id] = AgingBreakdown(
                    key=claim.payer_id, name=payer.name if payer else claim.payer_id
                )
            program_key = claim.program_id or UNASSIGNED_PROGRAM
            program_row = by_program.setdefault(
                program_key,
                AgingBreakdown(key=program_key, name=claim.program_name or program_key),
            )
            for row in (payer_row, program_row):
                row.buckets.add(label, amount)
                row.total_outstanding += amount
                row.claim_count += 1

        report = AgingReport(
            as_of_date=as_of,
            total_outstanding=overall.total,
            claim_count=len(claims),
            buckets=overall,
            by_payer=[by_payer[k] for k in sorted(by_payer)],
            by_program=[by_program[k] for k in sorted(by_program)],
            payer_id=payer_id,
            program_id=program_id,
        )
        logger.info(
            "aging_report_built",
            as_of=as_of.isoformat(),
            claims=report.claim_count,
            total=str(report.total_outstanding),
        )
        return report
