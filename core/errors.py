"""错误分类：账本、外部客户端与路由共用，携带 HTTP 状态码、稳定错误码与可重试标记。"""

from typing import Any, Dict, Optional


class ReconcileError(Exception):
    status_code = 500
    code = "INTERNAL_ERROR"
    retryable = False

    def __init__(self, message: str = "", diagnostic: Optional[str] = None):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.diagnostic = diagnostic

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"error": self.message, "code": self.code}
        if self.diagnostic:
            data["diagnostic"] = self.diagnostic
        if self.retryable:
            data["retryable"] = True
        return data


class NotAuthenticated(ReconcileError):
    status_code = 401
    code = "NOT_AUTHENTICATED"


class NotFound(ReconcileError):
    status_code = 404
    code = "NOT_FOUND"


class InvalidInput(ReconcileError):
    status_code = 400
    code = "INVALID_INPUT"


class AmountMismatch(ReconcileError):
    status_code = 400
    code = "AMOUNT_MISMATCH"


class AlreadyProcessed(ReconcileError):
    """订单已离开 ``pending``，调用方按无操作处理。"""

    status_code = 409
    code = "ALREADY_PROCESSED"

    def __init__(self, message: str = "", status: Optional[str] = None):
        super().__init__(message or "order already processed")
        self.status = status


class GatewayRejected(ReconcileError):
    status_code = 502
    code = "GATEWAY_REJECTED"


class GatewayUnreachable(ReconcileError):
    status_code = 504
    code = "GATEWAY_UNREACHABLE"
    retryable = True


class DownloadFailed(ReconcileError):
    status_code = 503
    code = "DOWNLOAD_FAILED"
    retryable = True


class StorageUnavailable(ReconcileError):
    status_code = 503
    code = "STORAGE_UNAVAILABLE"
    retryable = True


class SignatureInvalid(ReconcileError):
    status_code = 403
    code = "SIGNATURE_INVALID"


class NotConfigured(ReconcileError):
    status_code = 500
    code = "NOT_CONFIGURED"
