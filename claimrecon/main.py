from __future__ import annotations

import json
from datetime import date
from decimal import Decimal
from functools import lru_cache
from typing import Any

import structlog
from fastapi import Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from starlette.responses import FileResponse

from claimrecon.batch import BatchItem
from claimrecon.config import get_settings
from claimrecon.errors import (
    ConflictError,
    DeadlineExceededError,
    DownstreamNotificationError,
    DuplicateClaimAllocationError,
    DuplicateImportError,
    InvalidClaimPayerError,
    NotFoundError,
    OverAllocationError,
    ParsingError,
    PaymentLockedError,
    ReconciliationError,
    ValidationError,
)
from claimrecon.logs import configure_logging
from claimrecon.models import (
    AdjustmentRequest,
    AdjustmentType,
    ClaimAllocation,
    PaymentMethod,
    as_json,
)
from claimrecon.service import PaymentService

logger = structlog.get_logger(__name__)

STATUS_BY_ERROR: list[tuple[type[ReconciliationError], int]] = [
    (NotFoundError, 404),
    (ConflictError, 409),
    (DuplicateImportError, 409),
    (PaymentLockedError, 409),
    (DownstreamNotificationError, 502),
    (DeadlineExceededError, 504),
    (ValidationError, 422),
    (OverAllocationError, 422),
    (DuplicateClaimAllocationError, 422),
    (InvalidClaimPayerError, 422),
    (ParsingError, 422),
]

app = FastAPI(title="Claim Payment Reconciliation", version="0.3.0")

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)


@lru_cache()
def get_service() -> PaymentService:
    return PaymentService(get_settings())


def status_for(exc: ReconciliationError) -> int:
    for error_type, status in STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 400


@app.exception_handler(ReconciliationError)
def handle_reconciliation_error(request: Request, exc: ReconciliationError) -> JSONResponse:
    status = status_for(exc)
    log = logger.error if status >= 500 else logger.info
    log("request_failed", path=request.url.path, error=exc.code, message=exc.message, status=status)
    return JSONResponse(exc.to_dict(), status_code=status)


class AdjustmentPayload(BaseModel):
    adjustment_type: AdjustmentType = AdjustmentType.CONTRACTUAL
    adjustment_code: str
    adjustment_amount: Decimal
    description: str | None = None


class ClaimPaymentPayload(BaseModel):
    claim_id: str
    amount: Decimal
    adjustments: list[AdjustmentPayload] = []

    def to_allocation(self) -> ClaimAllocation:
        return ClaimAllocation(
            claim_id=self.claim_id,
            amount=self.amount,
            adjustments=[
                AdjustmentRequest(
                    adjustment_type=a.adjustment_type,
                    adjustment_code=a.adjustment_code,
                    adjustment_amount=a.adjustment_amount,
                    description=a.description,
                )
                for a in self.adjustments
            ],
        )


class ReconcileRequest(BaseModel):
    claim_payments: list[ClaimPaymentPayload]
    notes: str | None = None
    expected_version: int | None = None


class UndoRequest(BaseModel):
    expected_version: int | None = None


class BatchEntry(BaseModel):
    payment_id: str
    reconcile_data: ReconcileRequest


class BatchReconcileRequest(BaseModel):
    items: list[BatchEntry]
    concurrency: int | None = Field(default=None, ge=1)
    stop_on_error: bool = False
    timeout: float | None = Field(default=None, gt=0)


class AutoReconcileRequest(BaseModel):
    match_threshold: int | None = Field(default=None, ge=0, le=100)


class CreatePaymentRequest(BaseModel):
    payer_id: str
    payment_date: date
    payment_amount: Decimal
    payment_method: PaymentMethod = PaymentMethod.EFT
    reference_number: str | None = None
    check_number: str | None = None
    notes: str | None = None


class FlagExceptionRequest(BaseModel):
    reason: str


@app.get("/health")
def health() -> JSONResponse:
    return JSONResponse({"status": "ok"})


# ---------------------------------------------------------------------------
# Remittance import
# ---------------------------------------------------------------------------

@app.post("/api/v1/remittances/import")
def api_import_remittance(
    payer_id: str = Form(...),
    file_type: str = Form(...),
    mapping_config: str | None = Form(None),
    file: UploadFile = File(...),
    service: PaymentService = Depends(get_service),
) -> JSONResponse:
    mapping: dict[str, str] | None = None
    if mapping_config:
        try:
            mapping = json.loads(mapping_config)
        except json.JSONDecodeError as exc:
            raise HTTPException(status_code=422, detail=f"mapping_config is not valid JSON: {exc}") from exc
        if not isinstance(mapping, dict):
            raise HTTPException(status_code=422, detail="mapping_config must be a JSON object")
    content = file.file.read()
    result = service.import_remittance(payer_id, file_type, content, file.filename, mapping)
    return JSONResponse(as_json(result), status_code=201)


# ---------------------------------------------------------------------------
# Payments
# ---------------------------------------------------------------------------

@app.post("/api/v1/payments")
def api_create_payment(payload: CreatePaymentRequest, service: PaymentService = Depends(get_service)) -> JSONResponse:
    payment = service.create_payment(
        payer_id=payload.payer_id,
        payment_date=payload.payment_date,
        payment_amount=payload.payment_amount,
        payment_method=payload.payment_method,
        reference_number=payload.reference_number,
        check_number=payload.check_number,
        notes=payload.notes,
    )
    return JSONResponse(as_json(payment), status_code=201)


@app.get("/api/v1/payments")
def api_list_payments(
    payer_id: str | None = None,
    status: str | None = None,
    start: date | None = None,
    end: date | None = None,
    limit: int = 500,
    service: PaymentService = Depends(get_service),
) -> JSONResponse:
    rows = service.list_payments(payer_id, status, start, end, limit)
    return JSONResponse({"rows": as_json(rows), "count": len(rows)})


@app.get("/api/v1/payments/metrics")
def api_payment_metrics(
    payer_id: str | None = None,
    start: date | None = None,
    end: date | None = None,
    service: PaymentService = Depends(get_service),
) -> JSONResponse:
    return JSONResponse(as_json(service.get_payment_metrics(payer_id, start, end)))


@app.post("/api/v1/payments/batch-reconcile")
def api_batch_reconcile(
    payload: BatchReconcileRequest, service: PaymentService = Depends(get_service)
) -> JSONResponse:
    items = [
        BatchItem(
            payment_id=entry.payment_id,
            allocations=[cp.to_allocation() for cp in entry.reconcile_data.claim_payments],
            notes=entry.reconcile_data.notes,
            expected_version=entry.reconcile_data.expected_version,
        )
        for entry in payload.items
    ]
    result = service.batch_reconcile_payments(
        items,
        concurrency=payload.concurrency,
        stop_on_error=payload.stop_on_error,
        timeout=payload.timeout,
    )
    return JSONResponse(as_json(result))


@app.get("/api/v1/payments/{payment_id}")
def api_get_payment(payment_id: str, service: PaymentService = Depends(get_service)) -> JSONResponse:
    return JSONResponse(as_json(service.get_payment(payment_id)))


@app.delete("/api/v1/payments/{payment_id}")
def api_delete_payment(payment_id: str, service: PaymentService = Depends(get_service)) -> JSONResponse:
    service.delete_payment(payment_id)
    return JSONResponse({"deleted": payment_id})


@app.get("/api/v1/payments/{payment_id}/suggested-matches")
def api_suggested_matches(
    payment_id: str,
    min_confidence: int | None = None,
    service: PaymentService = Depends(get_service),
) -> JSONResponse:
    return JSONResponse(as_json(service.get_suggested_matches(payment_id, min_confidence)))


@app.get("/api/v1/payments/{payment_id}/reconciliation")
def api_reconciliation_details(payment_id: str, service: PaymentService = Depends(get_service)) -> JSONResponse:
    body: dict[str, Any] = as_json(service.get_reconciliation_details(payment_id))
    body["pending_notifications"] = service.get_pending_notifications(payment_id)
    return JSONResponse(body)


@app.post("/api/v1/payments/{payment_id}/reconcile")
def api_reconcile(
    payment_id: str, payload: ReconcileRequest, service: PaymentService = Depends(get_service)
) -> JSONResponse:
    result = service.reconcile_payment(
        payment_id,
        [cp.to_allocation() for cp in payload.claim_payments],
        notes=payload.notes,
        expected_version=payload.expected_version,
    )
    return JSONResponse(as_json(result))


@app.post("/api/v1/payments/{payment_id}/undo")
def api_undo(
    payment_id: str, payload: UndoRequest | None = None, service: PaymentService = Depends(get_service)
) -> JSONResponse:
    result = service.undo_reconciliation(payment_id, payload.expected_version if payload else None)
    return JSONResponse(as_json(result))


@app.post("/api/v1/payments/{payment_id}/auto-reconcile")
def api_auto_reconcile(
    payment_id: str,
    payload: AutoReconcileRequest | None = None,
    service: PaymentService = Depends(get_service),
) -> JSONResponse:
    result = service.auto_reconcile_payment(payment_id, payload.match_threshold if payload else None)
    return JSONResponse(as_json(result))


@app.post("/api/v1/payments/{payment_id}/exception")
def api_flag_exception(
    payment_id: str, payload: FlagExceptionRequest, service: PaymentService = Depends(get_service)
) -> JSONResponse:
    return JSONResponse(as_json(service.flag_exception(payment_id, payload.reason)))


@app.delete("/api/v1/payments/{payment_id}/exception")
def api_clear_exception(payment_id: str, service: PaymentService = Depends(get_service)) -> JSONResponse:
    return JSONResponse(as_json(service.clear_exception(payment_id)))


@app.post("/api/v1/payments/{payment_id}/verify")
def api_verify_payment(payment_id: str, service: PaymentService = Depends(get_service)) -> JSONResponse:
    problems = service.verify_payment(payment_id)
    return JSONResponse({"payment": as_json(service.get_payment(payment_id)), "problems": problems})


@app.post("/api/v1/payments/{payment_id}/notifications/retry")
def api_retry_notifications(payment_id: str, service: PaymentService = Depends(get_service)) -> JSONResponse:
    changes = service.retry_notifications(payment_id)
    return JSONResponse({"updated_claims": as_json(changes)})


# ---------------------------------------------------------------------------
# Adjustments
# ---------------------------------------------------------------------------

@app.get("/api/v1/adjustments/summary")
def api_adjustment_summary(
    payer_id: str | None = None,
    start: date | None = None,
    end: date | None = None,
    claim_id: str | None = None,
    adjustment_type: str | None = None,
    top: int = 10,
    service: PaymentService = Depends(get_service),
) -> JSONResponse:
    summary = service.get_adjustment_summary(payer_id, start, end, claim_id, adjustment_type, top)
    return JSONResponse(as_json(summary))


@app.get("/api/v1/claims/{claim_id}/adjustments")
def api_claim_adjustments(claim_id: str, service: PaymentService = Depends(get_service)) -> JSONResponse:
    summary = service.get_adjustment_summary(claim_id=claim_id)
    rows = summary["by_claim"][0]["adjustments"] if summary["by_claim"] else []
    return JSONResponse({"claim_id": claim_id, "rows": as_json(rows), "total_amount": str(summary["total_amount"])})


# ---------------------------------------------------------------------------
# Aging
# ---------------------------------------------------------------------------

@app.get("/api/v1/aging")
def api_aging(
    as_of_date: date | None = None,
    payer_id: str | None = None,
    program_id: str | None = None,
    service: PaymentService = Depends(get_service),
) -> JSONResponse:
    report = service.get_aging_report(as_of_date, payer_id, program_id)
    return JSONResponse({"aging": as_json(report)})


@app.get("/api/v1/aging/report.pdf")
def api_aging_pdf(
    as_of_date: date | None = None,
    payer_id: str | None = None,
    program_id: str | None = None,
    service: PaymentService = Depends(get_service),
) -> FileResponse:
    report = service.get_aging_report(as_of_date, payer_id, program_id)
    name = f"aging-{report.as_of_date.isoformat()}.pdf"
    pdf_path = service.render_aging_report(report, service.settings.data_dir / "reports" / name)
    return FileResponse(
        pdf_path,
        media_type="application/pdf",
        headers={"Content-Disposition": f'inline; filename="{name}"'},
    )


# ---------------------------------------------------------------------------
# Audit
# ---------------------------------------------------------------------------

@app.get("/api/v1/audit")
def api_audit_events(
    entity_type: str | None = None,
    entity_id: str | None = None,
    limit: int = 200,
    service: PaymentService = Depends(get_service),
) -> JSONResponse:
    rows = service.list_audit_events(entity_type, entity_id, limit)
    return JSONResponse({"rows": rows, "count": len(rows)})


@app.on_event("startup")
def on_startup() -> None:
    settings = get_settings()
    configure_logging(settings.log_level, settings.log_json)
    get_service()
