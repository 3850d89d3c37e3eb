from typing import Any, Dict, Optional

from fastapi import HTTPException

from core.errors import ReconcileError


def success_response(data: Any = None, message: str = "success", code: int = 0) -> Dict[str, Any]:
    return {"code": code, "message": message, "data": data}


def error_response(code: int, message: str, data: Optional[Any] = None) -> Dict[str, Any]:
    return {"code": code, "message": message, "data": data}


def http_error(exc: ReconcileError) -> HTTPException:
    """把领域错误映射为路由统一的错误信封。"""
    return HTTPException(
        status_code=exc.status_code,
        detail=error_response(code=exc.status_code, message=exc.message, data=exc.to_dict()),
    )
