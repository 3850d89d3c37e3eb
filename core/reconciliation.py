"""
core/reconciliation.py: 外部信号对账（支付网关 / 生成服务 → 账本与对象存储）

OrderReconciler
    pending ──confirm──▶ confirmed   （网关确认 + 原子入账）
    pending ──webhook──▶ canceled | expired | aborted
    pending ──error────▶ failed
    其余状态均为终态，离开终态的迁移一律不生效。

GenerationReconciler
    任务状态 ──succeeded──▶ 每个 job id 只存储一次产物
                            + 来源记录 + 签名 URL

日志沿用请求的 trace_id，订单号作为 order_id 字段写入事件。
"""

import re
import uuid
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, ValidationError

from core.credit_packages import get_package, total_credits
from core.errors import (
    AlreadyProcessed,
    AmountMismatch,
    InvalidInput,
    NotConfigured,
    NotFound,
    ReconcileError,
    SignatureInvalid,
    StorageUnavailable,
)
from core.events import log_event, E
from core.generation_poller import (
    JOB_STATUS_CANCELED,
    JOB_STATUS_FAILED,
    JOB_STATUS_SUCCEEDED,
    JOB_TERMINAL_STATUSES,
    GenerationPoller,
    extension_for,
    guess_content_type,
)
from core.ledger_store import (
    ORDER_STATUS_ABORTED,
    ORDER_STATUS_CANCELED,
    ORDER_STATUS_CONFIRMED,
    ORDER_STATUS_EXPIRED,
    ORDER_STATUS_PENDING,
    SNAPSHOT_CONFIRMED,
    SNAPSHOT_WEBHOOK,
    GatewaySnapshot,
    LedgerStore,
)
from core.log import get_logger
from core.object_store import ObjectStore
from core.payment_gateway import PaymentGatewayClient

logger = get_logger(__name__)

WEBHOOK_PAYMENT_STATUS_CHANGED = "PAYMENT_STATUS_CHANGED"
WEBHOOK_TERMINAL_STATUS = {
    "CANCELED": ORDER_STATUS_CANCELED,
    "EXPIRED": ORDER_STATUS_EXPIRED,
    "ABORTED": ORDER_STATUS_ABORTED,
}

_JOB_ID_PATTERN = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


# ─── 结果 / 载荷 ───────────────────────────────────────────────────────────


class ConfirmResult(BaseModel):
    order_id: str
    credits: int
    status: str
    already_processed: bool = False

    @property
    def success(self) -> bool:
        return self.status == ORDER_STATUS_CONFIRMED

    def to_response(self) -> Dict[str, Any]:
        return {"success": self.success, "credits": self.credits, "orderId": self.order_id}


class WebhookPayload(BaseModel):
    model_config = ConfigDict(extra="allow")

    eventType: str = ""
    createdAt: Optional[str] = None
    data: Dict[str, Any] = {}


class PaymentStatusData(BaseModel):
    model_config = ConfigDict(extra="allow")

    orderId: str
    status: str
    paymentKey: Optional[str] = None


class GenerationResult(BaseModel):
    job_id: str
    status: str
    image_url: Optional[str] = None
    image_id: Optional[str] = None
    error: Optional[str] = None

    def to_response(self) -> Dict[str, Any]:
        if self.status == JOB_STATUS_SUCCEEDED:
            return {"status": self.status, "imageUrl": self.image_url, "imageId": self.image_id}
        if self.status == JOB_STATUS_FAILED:
            return {"status": self.status, "error": self.error}
        return {"status": self.status}


# ─── 订单 ──────────────────────────────────────────────────────────────────


def _require_amount(amount: Any) -> int:
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise InvalidInput("amount must be a positive integer")
    return amount


class OrderReconciler:
    def __init__(
        self,
        ledger: LedgerStore,
        gateway: PaymentGatewayClient,
        secret_key: str = "",
        webhook_secret: str = "",
    ):
        self.ledger = ledger
        self.gateway = gateway
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def prepare(self, user_id: str, package_id: str) -> Dict[str, Any]:
        pkg = get_package(package_id)
        if not pkg:
            raise InvalidInput("invalid package")
        credits = total_credits(pkg)
        order = self.ledger.create_order(user_id, amount=pkg["price"], credits=credits, package_id=pkg["id"])
        return {
            "orderId": order.id,
            "amount": order.amount,
            "credits": credits,
            "orderName": f"{pkg['name']} credit pack ({credits} credits)",
        }

    def _replay(self, order) -> ConfirmResult:
        credits = int(order.credits or 0) if order.status == ORDER_STATUS_CONFIRMED else 0
        log_event(logger, E.PAYMENT_CONFIRM_REPLAY, order_id=order.id, status=order.status)
        return ConfirmResult(order_id=order.id, credits=credits, status=order.status, already_processed=True)

    def _compensate(self, payment_key: str, order_id: str, reason: str) -> None:
        """网关已扣款但账本无法入账时，尽力向网关发起取消退款。"""
        try:
            self.gateway.cancel(self.secret_key, payment_key, reason)
            log_event(logger, E.PAYMENT_COMPENSATE, order_id=order_id, reason=reason)
        except Exception as e:
            log_event(logger, E.PAYMENT_COMPENSATE, level="error", order_id=order_id, reason=reason, error=e)

    def confirm(self, user_id: str, payment_key: str, order_id: str, amount: Any) -> ConfirmResult:
        if not str(payment_key or "").strip() or not str(order_id or "").strip():
            raise InvalidInput("missing required fields")
        amount = _require_amount(amount)

        order = self.ledger.get_order(order_id)
        if order is None or order.user_id != user_id:
            raise NotFound("order not found")
        if order.status != ORDER_STATUS_PENDING:
            return self._replay(order)
        if int(order.amount) != amount:
            log_event(logger, E.PAYMENT_AMOUNT_MISMATCH, level="warning", order_id=order_id, stored=order.amount, declared=amount)
            raise AmountMismatch("amount mismatch")
        if not self.secret_key:
            raise NotConfigured("payment service not configured")

        log_event(logger, E.PAYMENT_CONFIRM_START, order_id=order_id, user_id=user_id, amount=amount)
        try:
            confirmed = self.gateway.confirm(self.secret_key, payment_key, order_id, amount)
        except ReconcileError as e:
            log_event(logger, E.PAYMENT_CONFIRM_FAIL, level="warning", order_id=order_id, code=e.code)
            self.ledger.mark_failed(order_id, f"{e.code}: {e.message} {e.diagnostic or ''}".strip())
            current = self.ledger.get_order(order_id)
            # 同一笔支付的并发确认已先完成
            if current is not None and current.status == ORDER_STATUS_CONFIRMED:
                return self._replay(current)
            raise

        snapshot = GatewaySnapshot(kind=SNAPSHOT_CONFIRMED, payload=confirmed.model_dump())
        try:
            self.ledger.credit_and_confirm(
                order_id,
                user_id,
                int(order.credits),
                snapshot,
                tx_id=str(uuid.uuid4()),
                payment_key=payment_key,
            )
        except AlreadyProcessed:
            current = self.ledger.get_order(order_id)
            if current is not None and current.status != ORDER_STATUS_CONFIRMED:
                log_event(logger, E.PAYMENT_RACE_LOST, level="warning", order_id=order_id, status=current.status)
                self._compensate(payment_key, order_id, f"order {current.status} before confirmation")
            return self._replay(current or order)
        except StorageUnavailable as e:
            log_event(logger, E.PAYMENT_CONFIRM_FAIL, level="error", order_id=order_id, code=e.code)
            if self.ledger.mark_failed(order_id, f"{e.code}: {e.diagnostic or e.message}"):
                self._compensate(payment_key, order_id, "ledger unavailable")
            else:
                logger.error("order left pending after captured payment, needs manual review: order_id=%s", order_id)
            raise

        log_event(logger, E.PAYMENT_CONFIRM_COMPLETE, order_id=order_id, user_id=user_id, credits=order.credits)
        return ConfirmResult(order_id=order_id, credits=int(order.credits), status=ORDER_STATUS_CONFIRMED)

    def cancel(self, user_id: str, order_id: str, reason: str = "") -> Dict[str, Any]:
        order = self.ledger.cancel_pending(order_id, user_id, reason)
        return {"orderId": order.id, "status": order.status}

    def handle_webhook(self, raw_body: bytes, signature: str) -> Dict[str, Any]:
        """
        处理网关 webhook：先对原始字节验签再解析，webhook 永不入账。
        """
        if not self.webhook_secret:
            raise NotConfigured("webhook not configured")
        if not self.gateway.verify_signature(self.webhook_secret, raw_body, signature):
            log_event(logger, E.WEBHOOK_SIGNATURE_INVALID, level="warning", size=len(raw_body or b""))
            raise SignatureInvalid("invalid signature")
        try:
            payload = WebhookPayload.model_validate_json(raw_body)
        except ValidationError:
            raise InvalidInput("invalid JSON")

        order_id = None
        gateway_status = None
        outcome = "ignored"
        if payload.eventType == WEBHOOK_PAYMENT_STATUS_CHANGED:
            try:
                data = PaymentStatusData.model_validate(payload.data)
            except ValidationError:
                raise InvalidInput("invalid payment status payload")
            order_id = data.orderId
            gateway_status = data.status.upper()
            target = WEBHOOK_TERMINAL_STATUS.get(gateway_status)
            if target:
                snapshot = GatewaySnapshot(kind=SNAPSHOT_WEBHOOK, payload=payload.data)
                applied = self.ledger.transition_status(order_id, target, snapshot)
                outcome = "applied" if applied else "noop"
        log_event(
            logger,
            E.WEBHOOK_APPLY if outcome == "applied" else E.WEBHOOK_IGNORE,
            event_type=payload.eventType,
            order_id=order_id,
            status=gateway_status,
            outcome=outcome,
        )

        # 审计阶段：与上面的状态迁移相互独立，失败不影响响应
        raw_text = raw_body.decode("utf-8", errors="replace") if isinstance(raw_body, bytes) else str(raw_body)
        self.ledger.record_payment_event(payload.eventType, order_id, gateway_status, outcome, raw_text)
        return {"success": True, "outcome": outcome}


# ─── 生成任务 ──────────────────────────────────────────────────────────────


def artifact_key_for(job_id: str, ext: str) -> str:
    return f"generated/{job_id}{ext}"


class GenerationReconciler:
    def __init__(
        self,
        ledger: LedgerStore,
        poller: GenerationPoller,
        store: ObjectStore,
        url_ttl_seconds: int = 3600,
    ):
        self.ledger = ledger
        self.poller = poller
        self.store = store
        self.url_ttl_seconds = int(url_ttl_seconds)

    def _find_record(self, job_id: str) -> Optional[Dict[str, Any]]:
        try:
            return self.ledger.find_artifact(job_id)
        except Exception as e:
            # 来源记录可缺失，回退到对象存储检查
            logger.warning("artifact lookup failed: job_id=%s err=%s", job_id, e)
            return None

    def _record(self, job_id: str, key: str, prompt: str, owner_id: Optional[str], content_type: str) -> Optional[Dict[str, Any]]:
        try:
            return self.ledger.record_artifact(job_id, key, prompt=prompt, user_id=owner_id, content_type=content_type)
        except Exception as e:
            log_event(logger, E.GENERATION_RECORD_FAIL, level="warning", job_id=job_id, error=e)
            return None

    def _signed(self, job_id: str, key: str, image_id: Optional[str]) -> GenerationResult:
        try:
            url = self.store.signed_url(key, self.url_ttl_seconds)
        except ReconcileError:
            raise
        except Exception as e:
            raise StorageUnavailable("could not sign artifact url", diagnostic=str(e)[:300])
        return GenerationResult(job_id=job_id, status=JOB_STATUS_SUCCEEDED, image_url=url, image_id=image_id)

    def _persist(self, job_id: str, output_ref: str) -> Dict[str, str]:
        key = artifact_key_for(job_id, extension_for(output_ref))
        if self.store.exists(key):
            log_event(logger, E.GENERATION_REUSE, job_id=job_id, key=key, source="object_store")
            return {"key": key, "content_type": guess_content_type(key)}
        try:
            data, content_type = self.poller.download(output_ref)
        except ReconcileError as e:
            log_event(logger, E.GENERATION_DOWNLOAD_FAIL, level="warning", job_id=job_id, code=e.code)
            raise
        self.store.put(key, data, content_type)
        log_event(logger, E.GENERATION_PERSIST, job_id=job_id, key=key, size=len(data))
        return {"key": key, "content_type": content_type}

    def check_job(self, job_id: str, prompt: str = "", owner_id: Optional[str] = None) -> GenerationResult:
        job_id = str(job_id or "").strip()
        if not _JOB_ID_PATTERN.match(job_id):
            raise InvalidInput("missing or malformed job id")

        record = self._find_record(job_id)
        if record:
            log_event(logger, E.GENERATION_REUSE, job_id=job_id, key=record["artifact_key"], source="ledger")
            return self._signed(job_id, record["artifact_key"], record["image_id"])

        job = self.poller.check_status(job_id)
        log_event(logger, E.GENERATION_STATUS, job_id=job_id, status=job.status)
        if job.status in (JOB_STATUS_FAILED, JOB_STATUS_CANCELED):
            return GenerationResult(job_id=job_id, status=JOB_STATUS_FAILED, error=job.error or job.status)
        if job.status not in JOB_TERMINAL_STATUSES:
            return GenerationResult(job_id=job_id, status=job.status)

        stored = self._persist(job_id, job.output_ref)
        record = self._record(job_id, stored["key"], prompt, owner_id, stored["content_type"])
        return self._signed(job_id, stored["key"], record["image_id"] if record else None)
