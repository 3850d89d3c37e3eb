from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field, StrictInt

from core.config import cfg
from core.errors import ReconcileError
from core.events import log_event, E
from core.log import get_logger
from core.reconciliation import OrderReconciler
from .base import error_response, http_error, success_response
from .deps import get_order_reconciler, require_user

logger = get_logger(__name__)

router = APIRouter(prefix="/payments", tags=["payments"])

DEFAULT_SIGNATURE_HEADER = "Toss-Signature"


class PrepareRequest(BaseModel):
    packageId: str = Field(default="", max_length=32)


class ConfirmRequest(BaseModel):
    paymentKey: str = Field(default="", max_length=200)
    orderId: str = Field(default="", max_length=64)
    amount: StrictInt = 0


class CancelRequest(BaseModel):
    reason: str = Field(default="", max_length=200)


@router.post("/prepare", summary="Create a pending order for a credit package")
def prepare_order(
    payload: PrepareRequest,
    current_user: Dict[str, str] = Depends(require_user),
    reconciler: OrderReconciler = Depends(get_order_reconciler),
):
    try:
        data = reconciler.prepare(current_user["id"], payload.packageId)
    except ReconcileError as e:
        raise http_error(e)
    return success_response(data, message="order created")


@router.post("/confirm", summary="Confirm a payment and credit the buyer")
def confirm_payment(
    payload: ConfirmRequest,
    current_user: Dict[str, str] = Depends(require_user),
    reconciler: OrderReconciler = Depends(get_order_reconciler),
):
    try:
        result = reconciler.confirm(current_user["id"], payload.paymentKey, payload.orderId, payload.amount)
    except ReconcileError as e:
        raise http_error(e)
    if not result.success:
        # 订单已先进入其他终态
        raise HTTPException(
            status_code=409,
            detail=error_response(
                code=409,
                message="order already processed",
                data={"code": "ALREADY_PROCESSED", "status": result.status, "orderId": result.order_id},
            ),
        )
    return result.to_response()


@router.post("/{order_id}/cancel", summary="Cancel a pending order")
def cancel_payment(
    order_id: str,
    payload: CancelRequest,
    current_user: Dict[str, str] = Depends(require_user),
    reconciler: OrderReconciler = Depends(get_order_reconciler),
):
    try:
        data = reconciler.cancel(current_user["id"], order_id, reason=payload.reason)
    except ReconcileError as e:
        raise http_error(e)
    return success_response(data, message="order canceled" if data["status"] == "canceled" else "order already processed")


@router.post("/webhook", summary="Gateway webhook")
async def payment_webhook(request: Request, reconciler: OrderReconciler = Depends(get_order_reconciler)):
    raw_body = await request.body()
    header = cfg.get("payment.signature_header", DEFAULT_SIGNATURE_HEADER)
    log_event(logger, E.WEBHOOK_RECEIVE, size=len(raw_body))
    try:
        # 验签与账本写入是阻塞调用，放到线程池执行
        await run_in_threadpool(reconciler.handle_webhook, raw_body, request.headers.get(header, ""))
    except ReconcileError as e:
        raise http_error(e)
    return {"success": True}
