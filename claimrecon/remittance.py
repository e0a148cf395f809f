"""Remittance advice ingestion.

A parser turns raw file text into a header plus claim-level lines; the
``RemittanceIngestor`` resolves each line's claim number through the Claims
service and commits one Payment, one RemittanceInfo and the detail rows in a
single transaction.
"""

from __future__ import annotations

import csv
import hashlib
import io
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Callable

import structlog

from claimrecon import persistence
from claimrecon.collaborators import NO_DEADLINE, CallContext, ClaimsService, PayerRegistry
from claimrecon.errors import (
    DuplicateImportError,
    NotFoundError,
    ParsingError,
    ReconciliationError,
    ValidationError,
)
from claimrecon.models import (
    ZERO,
    Payment,
    PaymentMethod,
    ReconciliationStatus,
    RemittanceDetail,
    RemittanceFileType,
    RemittanceInfo,
    RemittanceProcessingResult,
    sum_money,
    to_money,
)

logger = structlog.get_logger(__name__)


@dataclass
class RemittanceHeader:
    remittance_number: str
    remittance_date: date | None = None
    payer_identifier: str = ""
    payer_name: str | None = None
    payment_date: date | None = None
    payment_method: PaymentMethod = PaymentMethod.EFT
    check_number: str | None = None
    reference_number: str | None = None
    declared_total: Decimal | None = None


@dataclass
class ParsedLine:
    line: int
    claim_number: str
    service_date: date | None
    billed_amount: Decimal
    paid_amount: Decimal
    adjustment_amount: Decimal
    adjustment_codes: dict[str, str] = field(default_factory=dict)


@dataclass
class ParsedRemittance:
    header: RemittanceHeader | None
    lines: list[ParsedLine]
    errors: list[dict[str, Any]] = field(default_factory=list)


RemittanceParser = Callable[[str, dict[str, str] | None], ParsedRemittance]
ProgressCallback = Callable[[int], None]


def _parse_date(value: str) -> date:
    value = value.strip()
    for fmt in ("%Y%m%d", "%Y-%m-%d", "%m/%d/%Y"):
        try:
            return datetime.strptime(value, fmt).date()
        except ValueError:
            continue
    raise ValueError(f"unrecognised date {value!r}")


# ---------------------------------------------------------------------------
# EDI X12 835
# ---------------------------------------------------------------------------

# Common CARC reason codes; anything else gets a generic description.
CARC_DESCRIPTIONS = {
    "1": "Deductible amount",
    "2": "Coinsurance amount",
    "3": "Co-payment amount",
    "45": "Charge exceeds fee schedule/maximum allowable",
    "96": "Non-covered charge(s)",
    "97": "Benefit included in another service/procedure",
    "253": "Sequestration - reduction in federal payment",
}

BPR_METHODS = {
    "ACH": PaymentMethod.EFT,
    "FWT": PaymentMethod.EFT,
    "BOP": PaymentMethod.EFT,
    "CHK": PaymentMethod.CHECK,
}


def _element(elements: list[str], idx: int) -> str:
    return elements[idx].strip() if len(elements) > idx else ""


def parse_edi_835(text: str, mapping_config: dict[str, str] | None = None) -> ParsedRemittance:
    text = text.strip()
    element_sep = text[3] if text.startswith("ISA") and len(text) > 3 else "*"
    segments = [s.strip() for s in text.replace("\r", "").replace("\n", "").split("~")]

    errors: list[dict[str, Any]] = []
    lines: list[ParsedLine] = []
    bpr: list[str] | None = None
    trn: list[str] | None = None
    payer_name: str | None = None
    payer_identifier = ""
    production_date: date | None = None

    current: dict[str, Any] | None = None

    def close_claim() -> None:
        nonlocal current
        if current is None:
            return
        codes: dict[str, str] = current["codes"]
        adjustment = current["cas_total"] if codes else current["billed"] - current["paid"]
        lines.append(
            ParsedLine(
                line=current["line"],
                claim_number=current["claim_number"],
                service_date=current["service_date"],
                billed_amount=current["billed"],
                paid_amount=current["paid"],
                adjustment_amount=sum_money([adjustment]),
                adjustment_codes=codes,
            )
        )
        current = None

    for idx, segment in enumerate(segments, start=1):
        if not segment:
            continue
        elements = segment.split(element_sep)
        seg_id = elements[0].upper()
        try:
            if seg_id == "BPR":
                bpr = elements
            elif seg_id == "TRN":
                trn = elements
            elif seg_id == "N1" and _element(elements, 1) == "PR":
                payer_name = _element(elements, 2) or None
                payer_identifier = _element(elements, 4)
            elif seg_id == "DTM" and _element(elements, 1) == "405":
                production_date = _parse_date(_element(elements, 2))
            elif seg_id == "CLP":
                close_claim()
                claim_number = _element(elements, 1)
                if not claim_number:
                    raise ValueError("CLP segment has no claim number")
                current = {
                    "line": idx,
                    "claim_number": claim_number,
                    "billed": to_money(_element(elements, 3) or "0", "CLP03"),
                    "paid": to_money(_element(elements, 4) or "0", "CLP04"),
                    "service_date": None,
                    "svc_dated": False,
                    "codes": {},
                    "cas_total": ZERO,
                }
            elif seg_id == "CAS" and current is not None:
                group = _element(elements, 1)
                # Up to six reason/amount/quantity triplets follow the group code.
                for pos in range(2, len(elements), 3):
                    reason = _element(elements, pos)
                    if not reason:
                        continue
                    amount = to_money(_element(elements, pos + 1) or "0", "CAS amount")
                    code = f"{group}-{reason}"
                    description = CARC_DESCRIPTIONS.get(reason, f"Adjustment reason {reason}")
                    current["codes"][code] = f"{description} ({amount})"
                    current["cas_total"] += amount
            elif seg_id == "DTM" and current is not None and _element(elements, 1) in ("472", "232"):
                if current["service_date"] is None or current["svc_dated"]:
                    current["service_date"] = _parse_date(_element(elements, 2))
                    current["svc_dated"] = False
            elif seg_id == "SVC" and current is not None and current["service_date"] is None:
                # Some payers put the CCYYMMDD service date in SVC05; DTM*472 still wins.
                raw = _element(elements, 5)
                if len(raw) == 8 and raw.isdigit():
                    current["service_date"] = _parse_date(raw)
                    current["svc_dated"] = True
            elif seg_id == "SE":
                close_claim()
        except (ValueError, ReconciliationError) as exc:
            message = exc.message if isinstance(exc, ReconciliationError) else str(exc)
            errors.append({"line": idx, "message": f"{seg_id}: {message}"})
            if seg_id == "CLP":
                current = None
    close_claim()

    header: RemittanceHeader | None = None
    if bpr is None:
        errors.append({"line": 0, "message": "BPR segment not found"})
    if trn is None or not _element(trn, 2):
        errors.append({"line": 0, "message": "TRN segment with trace number not found"})
    if bpr is not None and trn is not None and _element(trn, 2):
        method = BPR_METHODS.get(_element(bpr, 4).upper(), PaymentMethod.OTHER)
        trace = _element(trn, 2)
        payment_date: date | None = None
        declared: Decimal | None = None
        try:
            if _element(bpr, 16):
                payment_date = _parse_date(_element(bpr, 16))
            declared = to_money(_element(bpr, 2) or "0", "BPR02")
        except (ValueError, ReconciliationError) as exc:
            errors.append({"line": 0, "message": f"BPR: {exc}"})
        header = RemittanceHeader(
            remittance_number=trace,
            remittance_date=production_date or payment_date,
            payer_identifier=payer_identifier or _element(trn, 3),
            payer_name=payer_name,
            payment_date=payment_date,
            payment_method=method,
            check_number=trace if method is PaymentMethod.CHECK else None,
            reference_number=trace,
            declared_total=declared,
        )
    return ParsedRemittance(header=header, lines=lines, errors=errors)


# ---------------------------------------------------------------------------
# Delimited files (CSV and custom-mapped CSV)
# ---------------------------------------------------------------------------

CSV_ALIASES = {
    "claim_number": {"claim_number", "claim_no", "claim", "claim_num", "patient_control_number"},
    "service_date": {"service_date", "date_of_service", "dos", "svc_date"},
    "billed_amount": {"billed_amount", "billed", "charge", "charged_amount", "total_charge"},
    "paid_amount": {"paid_amount", "paid", "payment", "payment_amount", "amount_paid"},
    "adjustment_amount": {"adjustment_amount", "adjustment", "adj_amount"},
    "adjustment_codes": {"adjustment_codes", "adj_codes", "reason_codes", "carc"},
    "remittance_number": {"remittance_number", "remittance_no", "eft_trace", "trace_number"},
    "remittance_date": {"remittance_date", "remit_date", "payment_date"},
    "payer_identifier": {"payer_identifier", "payer_id"},
    "payer_name": {"payer_name", "payer"},
    "check_number": {"check_number", "check_no"},
}

REQUIRED_COLUMNS = ("claim_number", "paid_amount")


def _normalise(name: str) -> str:
    return name.strip().lower().replace(" ", "_").replace("-", "_")


def _infer_columns(fieldnames: list[str]) -> dict[str, str]:
    columns: dict[str, str] = {}
    for source in fieldnames:
        key = _normalise(source)
        for canonical, aliases in CSV_ALIASES.items():
            if key in aliases and canonical not in columns:
                columns[canonical] = source
    return columns


def _parse_codes(raw: str) -> dict[str, str]:
    codes: dict[str, str] = {}
    for part in raw.replace(";", ",").split(","):
        part = part.strip()
        if not part:
            continue
        for sep in ("=", ":"):
            if sep in part:
                code, description = part.split(sep, 1)
                codes[code.strip()] = description.strip()
                break
        else:
            codes[part] = CARC_DESCRIPTIONS.get(part.split("-")[-1], f"Adjustment reason {part}")
    return codes


def _parse_delimited(text: str, columns: dict[str, str] | None, delimiter: str = ",") -> ParsedRemittance:
    reader = csv.DictReader(io.StringIO(text), delimiter=delimiter)
    fieldnames = list(reader.fieldnames or [])
    if not fieldnames:
        return ParsedRemittance(header=None, lines=[], errors=[{"line": 1, "message": "missing header row"}])

    columns = columns or _infer_columns(fieldnames)
    missing = [c for c in REQUIRED_COLUMNS if columns.get(c) not in fieldnames]
    if missing:
        return ParsedRemittance(
            header=None,
            lines=[],
            errors=[{"line": 1, "message": f"missing required column(s): {', '.join(missing)}"}],
        )

    def value(row: dict[str, Any], canonical: str) -> str:
        source = columns.get(canonical)
        return (row.get(source) or "").strip() if source else ""

    errors: list[dict[str, Any]] = []
    lines: list[ParsedLine] = []
    header_values: dict[str, str] = {}
    for line_no, row in enumerate(reader, start=2):
        if not any((v or "").strip() for v in row.values() if isinstance(v, str)):
            continue
        for key in ("remittance_number", "remittance_date", "payer_identifier", "payer_name", "check_number"):
            if key not in header_values and value(row, key):
                header_values[key] = value(row, key)
        try:
            claim_number = value(row, "claim_number")
            if not claim_number:
                raise ValueError("claim number is empty")
            paid = to_money(value(row, "paid_amount") or "0", "paid_amount")
            billed = to_money(value(row, "billed_amount"), "billed_amount") if value(row, "billed_amount") else paid
            adjustment = (
                to_money(value(row, "adjustment_amount"), "adjustment_amount")
                if value(row, "adjustment_amount")
                else billed - paid
            )
            service_date = _parse_date(value(row, "service_date")) if value(row, "service_date") else None
        except (ValueError, ReconciliationError) as exc:
            message = exc.message if isinstance(exc, ReconciliationError) else str(exc)
            errors.append({"line": line_no, "message": message})
            continue
        lines.append(
            ParsedLine(
                line=line_no,
                claim_number=claim_number,
                service_date=service_date,
                billed_amount=billed,
                paid_amount=paid,
                adjustment_amount=adjustment,
                adjustment_codes=_parse_codes(value(row, "adjustment_codes")),
            )
        )

    remittance_number = header_values.get("remittance_number") or (
        "CSV-" + hashlib.sha1(text.encode("utf-8")).hexdigest()[:12].upper()
    )
    remittance_date: date | None = None
    if header_values.get("remittance_date"):
        try:
            remittance_date = _parse_date(header_values["remittance_date"])
        except ValueError as exc:
            errors.append({"line": 0, "message": f"remittance date: {exc}"})
    check_number = header_values.get("check_number")
    header = RemittanceHeader(
        remittance_number=remittance_number,
        remittance_date=remittance_date,
        payer_identifier=header_values.get("payer_identifier", ""),
        payer_name=header_values.get("payer_name"),
        payment_date=remittance_date,
        payment_method=PaymentMethod.CHECK if check_number else PaymentMethod.EFT,
        check_number=check_number,
        reference_number=remittance_number,
    )
    return ParsedRemittance(header=header, lines=lines, errors=errors)


def parse_csv(text: str, mapping_config: dict[str, str] | None = None) -> ParsedRemittance:
    return _parse_delimited(text, None)


def parse_custom(text: str, mapping_config: dict[str, str] | None = None) -> ParsedRemittance:
    if not mapping_config:
        raise ValidationError("mapping_config is required for custom remittance files")
    mapping = dict(mapping_config)
    delimiter = mapping.pop("delimiter", ",") or ","
    unknown = sorted(set(mapping) - set(CSV_ALIASES))
    if unknown:
        raise ValidationError(f"unknown mapping field(s): {', '.join(unknown)}", fields=unknown)
    missing = [c for c in REQUIRED_COLUMNS if c not in mapping]
    if missing:
        raise ValidationError(f"mapping_config must map {', '.join(missing)}", fields=missing)
    return _parse_delimited(text, mapping, delimiter=delimiter)


DEFAULT_PARSERS: dict[RemittanceFileType, RemittanceParser] = {
    RemittanceFileType.EDI_835: parse_edi_835,
    RemittanceFileType.CSV: parse_csv,
    RemittanceFileType.CUSTOM: parse_custom,
}


# ---------------------------------------------------------------------------
# Ingestion
# ---------------------------------------------------------------------------

class RemittanceIngestor:
    def __init__(
        self,
        db_path: Path,
        claims: ClaimsService,
        payers: PayerRegistry,
        parsers: dict[RemittanceFileType, RemittanceParser] | None = None,
    ) -> None:
        self.db_path = db_path
        self.claims = claims
        self.payers = payers
        self.parsers: dict[RemittanceFileType, RemittanceParser] = dict(DEFAULT_PARSERS)
        if parsers:
            self.parsers.update(parsers)

    def register_parser(self, file_type: RemittanceFileType, parser: RemittanceParser) -> None:
        self.parsers[file_type] = parser

    def import_remittance(
        self,
        payer_id: str,
        file_type: RemittanceFileType | str,
        content: bytes | str,
        original_filename: str | None = None,
        mapping_config: dict[str, str] | None = None,
        progress: ProgressCallback | None = None,
        ctx: CallContext = NO_DEADLINE,
    ) -> RemittanceProcessingResult:
        report = progress or (lambda pct: None)
        if not payer_id:
            raise ValidationError("payer_id is required")
        if not content:
            raise ValidationError("file content is required")
        try:
            file_type = RemittanceFileType(file_type)
        except ValueError:
            raise ValidationError(f"unsupported file type: {file_type}") from None
        parser = self.parsers.get(file_type)
        if parser is None:
            raise ValidationError(f"no parser registered for {file_type.value} remittance files")

        payer = self.payers.get_payer(payer_id, ctx)
        if payer is None:
            raise NotFoundError("Payer", payer_id)

        if isinstance(content, bytes):
            try:
                text = content.decode("utf-8-sig")
            except UnicodeDecodeError as exc:
                raise ParsingError(
                    "remittance file is not valid UTF-8 text",
                    errors=[{"line": 0, "message": str(exc)}],
                ) from exc
        else:
            text = content
        report(0)

        parsed = parser(text, mapping_config)
        report(40)
        if parsed.header is None or not parsed.lines:
            errors = parsed.errors or [{"line": 0, "message": "no claim detail lines found"}]
            logger.warning("remittance_parse_failed", payer_id=payer_id, file_type=file_type.value, errors=len(errors))
            raise ParsingError("remittance file could not be parsed", errors=errors)

        header = parsed.header
        if persistence.remittance_exists(self.db_path, payer_id, header.remittance_number):
            raise DuplicateImportError(
                f"remittance {header.remittance_number} already imported for payer {payer_id}",
                payer_id=payer_id,
                remittance_number=header.remittance_number,
            )

        errors = list(parsed.errors)
        payment_id = f"pay-{uuid.uuid4().hex[:12]}"
        info_id = f"rem-{uuid.uuid4().hex[:12]}"
        details: list[RemittanceDetail] = []
        total = len(parsed.lines)
        for i, line in enumerate(parsed.lines, start=1):
            claim = self.claims.get_claim_by_number(line.claim_number, ctx)
            claim_id: str | None = None
            if claim is not None and claim.payer_id == payer_id:
                claim_id = claim.id
            elif claim is not None:
                errors.append(
                    {"line": line.line, "message": f"claim {line.claim_number} belongs to another payer"}
                )
            details.append(
                RemittanceDetail(
                    id=f"rd-{uuid.uuid4().hex[:12]}",
                    remittance_info_id=info_id,
                    line=line.line,
                    claim_number=line.claim_number,
                    claim_id=claim_id,
                    service_date=line.service_date,
                    billed_amount=line.billed_amount,
                    paid_amount=line.paid_amount,
                    adjustment_amount=line.adjustment_amount,
                    adjustment_codes=line.adjustment_codes,
                )
            )
            report(40 + (50 * i) // total)

        total_amount = sum_money(d.paid_amount for d in details)
        matched_amount = sum_money(d.paid_amount for d in details if d.claim_id)
        matched = sum(1 for d in details if d.claim_id)
        if total_amount < ZERO:
            logger.warning(
                "remittance_negative_total",
                payer_id=payer_id,
                remittance_number=header.remittance_number,
                total_amount=str(total_amount),
            )
            raise ParsingError(
                f"claim payments total {total_amount}; a remittance cannot create a negative payment",
                errors=errors + [{"line": 0, "message": f"net paid amount {total_amount} is negative"}],
            )
        if header.declared_total is not None and header.declared_total != total_amount:
            errors.append(
                {
                    "line": 0,
                    "message": f"declared total {header.declared_total} differs from claim payments {total_amount}",
                }
            )

        now = persistence.utc_now()
        payment_date = header.payment_date or header.remittance_date or date.today()
        payment = Payment(
            id=payment_id,
            payer_id=payer_id,
            payment_date=payment_date,
            payment_amount=total_amount,
            payment_method=header.payment_method,
            reference_number=header.reference_number,
            check_number=header.check_number,
            remittance_id=info_id,
            reconciliation_status=ReconciliationStatus.UNRECONCILED,
            notes=f"Imported from {original_filename}" if original_filename else None,
            created_at=now,
            updated_at=now,
            version=1,
        )
        info = RemittanceInfo(
            id=info_id,
            payment_id=payment_id,
            payer_id=payer_id,
            remittance_number=header.remittance_number,
            remittance_date=header.remittance_date or payment_date,
            payer_identifier=header.payer_identifier or payer.payer_identifier or payer.id,
            payer_name=header.payer_name or payer.name,
            total_amount=total_amount,
            claim_count=len(details),
            file_type=file_type,
            original_filename=original_filename,
        )
        ctx.check("import_remittance")
        persistence.save_remittance_import(self.db_path, payment, info, details)
        persistence.log_audit_event(
            self.db_path,
            event_type="remittance_import",
            action="created",
            entity_type="payment",
            entity_id=payment_id,
            detail=f"{file_type.value} {header.remittance_number}: {len(details)} lines, {matched} matched",
            new_value=str(total_amount),
        )
        report(100)
        logger.info(
            "remittance_imported",
            payment_id=payment_id,
            payer_id=payer_id,
            remittance_number=header.remittance_number,
            details=len(details),
            claims_matched=matched,
            total_amount=str(total_amount),
        )
        return RemittanceProcessingResult(
            payment=payment,
            remittance_info=info,
            details=details,
            details_processed=len(details),
            claims_matched=matched,
            claims_unmatched=len(details) - matched,
            total_amount=total_amount,
            matched_amount=matched_amount,
            unmatched_amount=sum_money([total_amount - matched_amount]),
            errors=errors,
        )
