"""Domain types shared by the ingestion, matching, allocation and reporting layers.

Money is always ``Decimal`` quantised to cents. Floats are rejected at the
boundary so allocation sums stay exact.
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields, is_dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Iterable

from claimrecon.errors import ValidationError

CENT = Decimal("0.01")
ZERO = Decimal("0.00")


class PaymentMethod(str, Enum):
    EFT = "eft"
    CHECK = "check"
    CREDIT_CARD = "credit_card"
    CASH = "cash"
    OTHER = "other"


class ReconciliationStatus(str, Enum):
    UNRECONCILED = "unreconciled"
    PARTIALLY_RECONCILED = "partial"
    RECONCILED = "reconciled"
    EXCEPTION = "exception"


class AdjustmentType(str, Enum):
    CONTRACTUAL = "contractual"
    DEDUCTIBLE = "deductible"
    COINSURANCE = "coinsurance"
    COPAY = "copay"
    NONCOVERED = "noncovered"
    TRANSFER = "transfer"
    OTHER = "other"


class RemittanceFileType(str, Enum):
    EDI_835 = "edi_835"
    CSV = "csv"
    EXCEL = "excel"
    PDF = "pdf"
    CUSTOM = "custom"


class ClaimStatus(str, Enum):
    DRAFT = "draft"
    VALIDATED = "validated"
    SUBMITTED = "submitted"
    ACKNOWLEDGED = "acknowledged"
    PENDING = "pending"
    PAID = "paid"
    PARTIAL_PAID = "partial_paid"
    DENIED = "denied"
    APPEALED = "appealed"
    VOID = "void"
    FINAL_DENIED = "final_denied"


def to_money(value: Any, field_name: str = "amount") -> Decimal:
    if isinstance(value, float):
        raise ValidationError(f"{field_name} must be a decimal string, not float", field=field_name)
    if isinstance(value, str):
        value = value.strip().replace(",", "").replace("$", "")
    try:
        amount = Decimal(value)
    except (InvalidOperation, TypeError, ValueError):
        raise ValidationError(f"{field_name} is not a valid amount: {value!r}", field=field_name) from None
    if not amount.is_finite():
        raise ValidationError(f"{field_name} is not a valid amount: {value!r}", field=field_name)
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def sum_money(values: Iterable[Decimal]) -> Decimal:
    return sum(values, ZERO).quantize(CENT)


def derive_status(allocated: Decimal, payment_amount: Decimal) -> ReconciliationStatus:
    if allocated == ZERO:
        return ReconciliationStatus.UNRECONCILED
    if allocated == payment_amount:
        return ReconciliationStatus.RECONCILED
    return ReconciliationStatus.PARTIALLY_RECONCILED


@dataclass
class Payer:
    id: str
    name: str
    payer_identifier: str | None = None


@dataclass
class Claim:
    id: str
    claim_number: str
    payer_id: str
    program_id: str | None
    service_date: date
    total_amount: Decimal
    outstanding_amount: Decimal
    status: ClaimStatus
    submission_date: date | None = None
    program_name: str | None = None


@dataclass
class PaymentAdjustment:
    id: str
    claim_payment_id: str
    adjustment_type: AdjustmentType
    adjustment_code: str
    adjustment_amount: Decimal
    description: str | None = None


@dataclass
class ClaimPayment:
    id: str
    payment_id: str
    claim_id: str
    paid_amount: Decimal
    adjustments: list[PaymentAdjustment] = field(default_factory=list)
    previous_claim_status: ClaimStatus | None = None
    created_at: str = ""
    updated_at: str = ""

    @property
    def applied_amount(self) -> Decimal:
        return sum_money([self.paid_amount, *(a.adjustment_amount for a in self.adjustments)])


@dataclass
class Payment:
    id: str
    payer_id: str
    payment_date: date
    payment_amount: Decimal
    payment_method: PaymentMethod
    reference_number: str | None = None
    check_number: str | None = None
    remittance_id: str | None = None
    reconciliation_status: ReconciliationStatus = ReconciliationStatus.UNRECONCILED
    notes: str | None = None
    created_at: str = ""
    updated_at: str = ""
    version: int = 1


@dataclass
class RemittanceInfo:
    id: str
    payment_id: str
    payer_id: str
    remittance_number: str
    remittance_date: date
    payer_identifier: str
    total_amount: Decimal
    claim_count: int
    file_type: RemittanceFileType
    original_filename: str | None = None
    payer_name: str | None = None


@dataclass
class RemittanceDetail:
    id: str
    remittance_info_id: str
    line: int
    claim_number: str
    claim_id: str | None
    service_date: date | None
    billed_amount: Decimal
    paid_amount: Decimal
    adjustment_amount: Decimal
    adjustment_codes: dict[str, str] = field(default_factory=dict)


@dataclass
class AdjustmentRequest:
    adjustment_type: AdjustmentType
    adjustment_code: str
    adjustment_amount: Decimal
    description: str | None = None


@dataclass
class ClaimAllocation:
    claim_id: str
    amount: Decimal
    adjustments: list[AdjustmentRequest] = field(default_factory=list)

    @property
    def total(self) -> Decimal:
        return sum_money([self.amount, *(a.adjustment_amount for a in self.adjustments)])


@dataclass
class ClaimStatusChange:
    claim_id: str
    previous_status: ClaimStatus
    new_status: ClaimStatus


@dataclass
class SuggestedMatch:
    claim_id: str
    claim_number: str
    service_date: date
    confidence: int
    amount: Decimal
    reasons: list[str] = field(default_factory=list)


@dataclass
class ReconciliationResult:
    payment: Payment
    claim_payments: list[ClaimPayment]
    total_amount: Decimal
    matched_amount: Decimal
    unmatched_amount: Decimal
    reconciliation_status: ReconciliationStatus
    updated_claims: list[ClaimStatusChange] = field(default_factory=list)
    notification_errors: list[dict[str, Any]] = field(default_factory=list)


@dataclass
class RemittanceProcessingResult:
    payment: Payment
    remittance_info: RemittanceInfo
    details: list[RemittanceDetail]
    details_processed: int
    claims_matched: int
    claims_unmatched: int
    total_amount: Decimal
    matched_amount: Decimal
    unmatched_amount: Decimal
    errors: list[dict[str, Any]] = field(default_factory=list)


def as_json(value: Any) -> Any:
    """Convert dataclasses, enums, decimals and dates into JSON-safe values."""
    if is_dataclass(value) and not isinstance(value, type):
        return {f.name: as_json(getattr(value, f.name)) for f in fields(value)}
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    if isinstance(value, dict):
        return {str(k): as_json(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [as_json(v) for v in value]
    return value
