"""
core/payment_gateway.py: Toss Payments 客户端

- confirm / cancel：出站 REST 调用，HTTP Basic 认证（``secret:``）
- verify_signature：对 webhook 原始请求体做 HMAC-SHA256，base64 编码比对
"""

import base64
import hashlib
import hmac
from typing import Any, Dict, Optional, Union

import requests
from pydantic import BaseModel, ConfigDict

from core.config import cfg
from core.errors import GatewayRejected, GatewayUnreachable
from core.events import log_event, E
from core.log import get_logger

logger = get_logger(__name__)

DEFAULT_API_BASE = "https://api.tosspayments.com/v1"


class ConfirmedTransaction(BaseModel):
    model_config = ConfigDict(extra="allow")

    paymentKey: str
    orderId: str
    status: str = ""
    totalAmount: int = 0
    method: Optional[str] = None
    approvedAt: Optional[str] = None


def _timeout_seconds() -> float:
    try:
        value = float(cfg.get("payment.timeout_seconds", 10) or 10)
    except (TypeError, ValueError):
        value = 10.0
    return max(1.0, min(value, 60.0))


class PaymentGatewayClient:
    def __init__(self, api_base: Optional[str] = None, timeout: Optional[float] = None, session: Optional[requests.Session] = None):
        self.api_base = (api_base or cfg.get("payment.api_base", DEFAULT_API_BASE)).rstrip("/")
        self.timeout = timeout or _timeout_seconds()
        self.http = session or requests.Session()

    @staticmethod
    def _auth_header(secret: str) -> str:
        token = base64.b64encode(f"{secret}:".encode("utf-8")).decode("ascii")
        return f"Basic {token}"

    def _post(self, path: str, secret: str, body: Dict[str, Any], ref: str) -> Dict[str, Any]:
        url = f"{self.api_base}{path}"
        log_event(logger, E.GATEWAY_REQUEST, path=path, ref=ref)
        try:
            resp = self.http.post(
                url,
                json=body,
                headers={
                    "Authorization": self._auth_header(secret),
                    "Content-Type": "application/json",
                },
                timeout=(min(5.0, self.timeout), self.timeout),
            )
        except requests.RequestException as e:
            log_event(logger, E.GATEWAY_UNREACHABLE, level="warning", path=path, ref=ref, error=e)
            raise GatewayUnreachable("payment gateway unreachable", diagnostic=str(e)[:300])

        try:
            data = resp.json()
        except ValueError:
            data = {}
        if not isinstance(data, dict):
            data = {}

        if resp.status_code >= 500:
            log_event(logger, E.GATEWAY_UNREACHABLE, level="warning", path=path, ref=ref, status=resp.status_code)
            raise GatewayUnreachable(
                f"payment gateway error {resp.status_code}",
                diagnostic=str(data.get("code") or resp.status_code),
            )
        if resp.status_code >= 400:
            code = str(data.get("code") or resp.status_code)
            message = str(data.get("message") or "Unknown error")
            log_event(logger, E.GATEWAY_REJECTED, level="warning", path=path, ref=ref, status=resp.status_code, code=code)
            raise GatewayRejected(f"payment gateway rejected: {message}", diagnostic=code)
        return data

    def confirm(self, secret: str, transaction_key: str, order_id: str, amount: int) -> ConfirmedTransaction:
        data = self._post(
            "/payments/confirm",
            secret,
            {"paymentKey": transaction_key, "orderId": order_id, "amount": int(amount)},
            ref=order_id,
        )
        try:
            result = ConfirmedTransaction.model_validate(data)
        except ValueError as e:
            raise GatewayRejected("malformed confirm response", diagnostic=str(e)[:300])
        # 网关回显实际扣款，对不上的不是本单
        if result.orderId != order_id or (result.totalAmount and int(result.totalAmount) != int(amount)):
            raise GatewayRejected("gateway confirmed a different order or amount", diagnostic="MISMATCHED_CONFIRMATION")
        return result

    def cancel(self, secret: str, transaction_key: str, reason: str) -> Dict[str, Any]:
        return self._post(
            f"/payments/{transaction_key}/cancel",
            secret,
            {"cancelReason": reason},
            ref=transaction_key,
        )

    @staticmethod
    def verify_signature(secret: str, raw_body: Union[bytes, str], signature_header: str) -> bool:
        """常量时间比对 webhook 签名，不抛异常。"""
        try:
            if not secret or not signature_header:
                return False
            body = raw_body.encode("utf-8") if isinstance(raw_body, str) else bytes(raw_body)
            digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
            expected = base64.b64encode(digest).decode("ascii")
            return hmac.compare_digest(expected.encode("ascii"), signature_header.strip().encode("utf-8"))
        except Exception:
            return False
