"""Contracts for the Claims service and Payer registry, plus local SQLite-backed implementations.

The engine only talks to these through the ``ClaimsService`` and ``PayerRegistry``
protocols; every call carries an optional ``CallContext`` holding its deadline.
"""

from __future__ import annotations

import time
import uuid
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Any, Protocol

import structlog

from claimrecon import persistence
from claimrecon.errors import DeadlineExceededError, NotFoundError
from claimrecon.models import ZERO, Claim, ClaimStatus, Payer, to_money

logger = structlog.get_logger(__name__)

# Claims in these states carry no receivable: never billed, voided, or written off.
NON_RECEIVABLE_STATUSES = {ClaimStatus.DRAFT, ClaimStatus.VALIDATED, ClaimStatus.VOID, ClaimStatus.FINAL_DENIED}


@dataclass(frozen=True)
class CallContext:
    """Per-call deadline, expressed on the ``time.monotonic`` clock."""

    deadline: float | None = None

    @classmethod
    def with_timeout(cls, seconds: float | None) -> CallContext:
        return cls(None if seconds is None else time.monotonic() + seconds)

    def remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return max(0.0, self.deadline - time.monotonic())

    def check(self, operation: str) -> None:
        if self.deadline is not None and time.monotonic() >= self.deadline:
            raise DeadlineExceededError(f"{operation} exceeded its deadline", operation=operation)


NO_DEADLINE = CallContext()


class ClaimsService(Protocol):
    def get_outstanding_claims(self, payer_id: str | None, ctx: CallContext = NO_DEADLINE) -> list[Claim]: ...

    def get_claim(self, claim_id: str, ctx: CallContext = NO_DEADLINE) -> Claim | None: ...

    def get_claim_by_number(self, claim_number: str, ctx: CallContext = NO_DEADLINE) -> Claim | None: ...

    def update_claim_payment_status(
        self, claim_id: str, status: ClaimStatus, ctx: CallContext = NO_DEADLINE
    ) -> ClaimStatus:
        """Set the claim's status and return the status it had before."""
        ...


class PayerRegistry(Protocol):
    def get_payer(self, payer_id: str, ctx: CallContext = NO_DEADLINE) -> Payer | None: ...


class LocalPayerRegistry:
    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def register(self, payer: Payer) -> Payer:
        persistence.upsert_payer(self.db_path, payer)
        return payer

    def get_payer(self, payer_id: str, ctx: CallContext = NO_DEADLINE) -> Payer | None:
        ctx.check("get_payer")
        row = persistence.get_payer_row(self.db_path, payer_id)
        return None if row is None else Payer(**row)


class LocalClaimsService:
    """Claims view over the local ``claims`` table.

    Outstanding balances are derived from the claim total minus everything
    applied to the claim (paid amounts plus adjustments) across all payments.
    """

    def __init__(self, db_path: Path) -> None:
        self.db_path = db_path

    def register_claim(
        self,
        claim_number: str,
        payer_id: str,
        service_date: date,
        total_amount: Any,
        program_id: str | None = None,
        status: ClaimStatus = ClaimStatus.SUBMITTED,
        claim_id: str | None = None,
        submission_date: date | None = None,
    ) -> Claim:
        row = {
            "id": claim_id or f"clm-{uuid.uuid4().hex[:12]}",
            "claim_number": claim_number,
            "payer_id": payer_id,
            "program_id": program_id,
            "service_date": service_date.isoformat(),
            "submission_date": submission_date.isoformat() if submission_date else None,
            "total_amount": str(to_money(total_amount, "total_amount")),
            "status": status.value,
        }
        persistence.upsert_claim_row(self.db_path, row)
        claim = self.get_claim(row["id"])
        if claim is None:
            raise NotFoundError("Claim", row["id"])
        return claim

    def _to_claim(self, row: dict[str, Any], applied: Decimal) -> Claim:
        total = Decimal(row["total_amount"])
        return Claim(
            id=row["id"],
            claim_number=row["claim_number"],
            payer_id=row["payer_id"],
            program_id=row["program_id"],
            program_name=row.get("program_name"),
            service_date=date.fromisoformat(row["service_date"]),
            submission_date=date.fromisoformat(row["submission_date"]) if row["submission_date"] else None,
            total_amount=total,
            outstanding_amount=max(ZERO, total - applied).quantize(ZERO),
            status=ClaimStatus(row["status"]),
        )

    def get_claim(self, claim_id: str, ctx: CallContext = NO_DEADLINE) -> Claim | None:
        ctx.check("get_claim")
        row = persistence.get_claim_row(self.db_path, claim_id)
        if row is None:
            return None
        applied = persistence.claim_applied_totals(self.db_path, [claim_id]).get(claim_id, ZERO)
        return self._to_claim(row, applied)

    def get_claim_by_number(self, claim_number: str, ctx: CallContext = NO_DEADLINE) -> Claim | None:
        ctx.check("get_claim_by_number")
        row = persistence.get_claim_row_by_number(self.db_path, claim_number.strip())
        if row is None:
            return None
        applied = persistence.claim_applied_totals(self.db_path, [row["id"]]).get(row["id"], ZERO)
        return self._to_claim(row, applied)

    def get_outstanding_claims(self, payer_id: str | None, ctx: CallContext = NO_DEADLINE) -> list[Claim]:
        ctx.check("get_outstanding_claims")
        rows = persistence.list_claim_rows(self.db_path, payer_id)
        applied = persistence.claim_applied_totals(self.db_path)
        claims = [self._to_claim(row, applied.get(row["id"], ZERO)) for row in rows]
        return [
            c for c in claims
            if c.outstanding_amount > ZERO and c.status not in NON_RECEIVABLE_STATUSES
        ]

    def update_claim_payment_status(
        self, claim_id: str, status: ClaimStatus, ctx: CallContext = NO_DEADLINE
    ) -> ClaimStatus:
        ctx.check("update_claim_payment_status")
        row = persistence.get_claim_row(self.db_path, claim_id)
        if row is None:
            raise NotFoundError("Claim", claim_id)
        previous = ClaimStatus(row["status"])
        persistence.set_claim_status(self.db_path, claim_id, status)
        logger.debug("claim_status_updated", claim_id=claim_id, previous=previous.value, new=status.value)
        return previous
