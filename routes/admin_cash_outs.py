from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.encoders import jsonable_encoder

from cashout.errors import ProviderError
from cashout.reconcile.engine import as_utc
from cashout.records.service import cancel_cash_out, get_cash_out
from cashout.runtime import CashOutRuntime, get_runtime
from deps.admin import require_admin
from schemas import (
    CancelCashOutRequest,
    CashOutLookupResponse,
    CashOutOut,
    ReconcileRequest,
    ReconcileResponse,
    RetrySweepResponse,
)

router = APIRouter(prefix="/v1/admin/cash-outs", tags=["admin-cash-outs"])
logger = logging.getLogger("cashout.admin")


@router.post("/reconcile", response_model=ReconcileResponse)
def run_reconciliation(
    body: ReconcileRequest | None = None,
    _: str = Depends(require_admin),
    rt: CashOutRuntime = Depends(get_runtime),
):
    body = body or ReconcileRequest()
    result = rt.reconciliation.reconcile_pending_cash_outs(
        provider=body.provider,
        max_age_days=body.max_age_days,
        batch_size=body.batch_size,
    )
    return result.to_dict()


@router.get("/reconcile/report")
def reconciliation_report(
    provider: Optional[str] = None,
    start_date: Optional[datetime] = None,
    end_date: Optional[datetime] = None,
    _: str = Depends(require_admin),
    rt: CashOutRuntime = Depends(get_runtime),
):
    start_date, end_date = as_utc(start_date), as_utc(end_date)
    if start_date and end_date and start_date > end_date:
        raise HTTPException(status_code=422, detail="START_AFTER_END")
    report = rt.reconciliation.generate_reconciliation_report(
        provider=provider,
        start_date=start_date,
        end_date=end_date,
    )
    return jsonable_encoder(report, custom_encoder={Decimal: str})


@router.post("/retries/run", response_model=RetrySweepResponse)
def run_retry_sweep(
    _: str = Depends(require_admin),
    rt: CashOutRuntime = Depends(get_runtime),
):
    return rt.retry.process_pending_retries()


@router.get("/{cash_out_id}", response_model=CashOutLookupResponse)
def lookup_cash_out(
    cash_out_id: str,
    refresh: bool = Query(default=False),
    _: str = Depends(require_admin),
    rt: CashOutRuntime = Depends(get_runtime),
):
    if not refresh:
        return CashOutLookupResponse(cash_out=CashOutOut.from_record(get_cash_out(rt.store, cash_out_id)))

    try:
        record, detail = rt.reconciliation.reconcile_one(cash_out_id)
    except ProviderError as exc:
        logger.warning("status refresh failed cash_out_id=%s code=%s err=%s", cash_out_id, exc.code, exc.message)
        raise HTTPException(status_code=502, detail={"code": exc.code, "message": exc.message})
    return CashOutLookupResponse(cash_out=CashOutOut.from_record(record), refresh=detail)


@router.post("/{cash_out_id}/cancel", response_model=CashOutOut)
def cancel(
    cash_out_id: str,
    body: CancelCashOutRequest | None = None,
    _: str = Depends(require_admin),
    rt: CashOutRuntime = Depends(get_runtime),
):
    record = cancel_cash_out(
        rt.store,
        cash_out_id,
        reason=(body.reason if body else None),
        audit=rt.audit,
    )
    return CashOutOut.from_record(record)
