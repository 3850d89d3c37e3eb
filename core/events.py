"""
core/events.py: 结构化事件日志

提供统一的事件类型常量（E 类）和 log_event() 格式化方法，
对账链路上的关键操作都通过此模块记录，确保日志可 grep / 统计。

格式：event=xxx | key=val | key=val

用法：
    from core.log import get_logger
    from core.events import log_event, E

    logger = get_logger(__name__)
    log_event(logger, E.PAYMENT_CONFIRM_START, order_id="ord_1", amount=9900)
    # 输出：event=payment.confirm.start | order_id=ord_1 | amount=9900
"""

import logging
from typing import Any


class E:
    """结构化事件类型常量，按功能模块分组。"""

    # ── 支付订单 ────────────────────────────────────────────────────────────
    PAYMENT_ORDER_PREPARE = "payment.order.prepare"
    PAYMENT_ORDER_CANCEL = "payment.order.cancel"
    PAYMENT_CONFIRM_START = "payment.confirm.start"
    PAYMENT_CONFIRM_COMPLETE = "payment.confirm.complete"
    PAYMENT_CONFIRM_REPLAY = "payment.confirm.replay"
    PAYMENT_CONFIRM_FAIL = "payment.confirm.fail"
    PAYMENT_AMOUNT_MISMATCH = "payment.amount_mismatch"
    PAYMENT_MARK_FAILED = "payment.mark_failed"
    PAYMENT_RACE_LOST = "payment.race_lost"
    PAYMENT_COMPENSATE = "payment.compensate"

    # ── 支付网关 ────────────────────────────────────────────────────────────
    GATEWAY_REQUEST = "gateway.request"
    GATEWAY_REJECTED = "gateway.rejected"
    GATEWAY_UNREACHABLE = "gateway.unreachable"

    # ── Webhook ─────────────────────────────────────────────────────────────
    WEBHOOK_RECEIVE = "webhook.receive"
    WEBHOOK_SIGNATURE_INVALID = "webhook.signature_invalid"
    WEBHOOK_APPLY = "webhook.apply"
    WEBHOOK_IGNORE = "webhook.ignore"
    WEBHOOK_AUDIT_FAIL = "webhook.audit_fail"

    # ── 积分 ────────────────────────────────────────────────────────────────
    CREDIT_GRANT = "credit.grant"

    # ── 图片生成 ────────────────────────────────────────────────────────────
    GENERATION_STATUS = "generation.status"
    GENERATION_REUSE = "generation.reuse"
    GENERATION_PERSIST = "generation.persist"
    GENERATION_DOWNLOAD_FAIL = "generation.download_fail"
    GENERATION_RECORD_FAIL = "generation.record_fail"
    GENERATION_CLAIM = "generation.claim"

    # ── 对象存储 ────────────────────────────────────────────────────────────
    STORAGE_PUT = "storage.put"
    STORAGE_FAIL = "storage.fail"

    # ── 系统 ────────────────────────────────────────────────────────────────
    SYSTEM_STARTUP = "system.startup"
    SYSTEM_DB_INIT = "system.db_init"


def log_event(
    logger: logging.Logger,
    event: str,
    level: str = "info",
    **fields: Any,
) -> None:
    """
    输出一行结构化事件日志。

        log_event(logger, E.GATEWAY_REJECTED, level="warning",
                  order_id="ord_1", code="REJECT_CARD_COMPANY")
        # → event=gateway.rejected | order_id=ord_1 | code=REJECT_CARD_COMPANY
    """
    parts = [f"event={event}"]
    for k, v in fields.items():
        sv = str(v) if not isinstance(v, str) else v
        # 单行日志截断
        if len(sv) > 300:
            sv = sv[:297] + "..."
        parts.append(f"{k}={sv}")
    msg = " | ".join(parts)
    getattr(logger, level)(msg, stacklevel=2)
