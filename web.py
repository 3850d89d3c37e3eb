import json
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from apis.ai import router as ai_router
from apis.base import error_response
from apis.credits import router as credits_router
from apis.deps import DB
from apis.gallery import router as gallery_router
from apis.payments import router as payments_router
from core.config import cfg, VERSION, API_BASE
from core.errors import ReconcileError
from core.events import log_event, E
from core.log import get_logger, get_trace_id, set_trace_id

logger = get_logger(__name__)


class UnicodeJSONResponse(JSONResponse):
    """不转义非 ASCII 字符的 JSON 响应。"""
    def render(self, content: Any) -> bytes:
        return json.dumps(
            content,
            ensure_ascii=False,
            allow_nan=False,
            indent=None,
            separators=(",", ":"),
        ).encode("utf-8")


app = FastAPI(
    title="Credit Reconciler API",
    description="Payment confirmation, credit ledger and generation artifact reconciliation",
    version=VERSION,
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
    default_response_class=UnicodeJSONResponse,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=cfg.get("cors.allow_origins", ["*"]),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.middleware("http")
async def add_trace_id(request: Request, call_next):
    trace_id = set_trace_id(request.headers.get("X-Request-Id", ""))
    response = await call_next(request)
    response.headers["X-Request-Id"] = trace_id
    response.headers["X-Version"] = VERSION
    return response


@app.exception_handler(ReconcileError)
async def reconcile_error_handler(request: Request, exc: ReconcileError):
    # 依赖解析阶段抛出的错误，路由尚未来得及映射
    data = exc.to_dict()
    data["trace_id"] = get_trace_id()
    return UnicodeJSONResponse(
        status_code=exc.status_code,
        content={"detail": error_response(code=exc.status_code, message=exc.message, data=data)},
    )


api_router = APIRouter(prefix=f"{API_BASE}")
api_router.include_router(payments_router)
api_router.include_router(credits_router)
api_router.include_router(ai_router)
api_router.include_router(gallery_router)
app.include_router(api_router)


@app.get("/healthz", include_in_schema=False)
async def healthz():
    return {"status": "ok", "version": VERSION}


@app.on_event("startup")
async def ensure_tables():
    try:
        DB.create_tables()
    except Exception:
        logger.exception("database initialisation failed")
        raise
    log_event(logger, E.SYSTEM_STARTUP, version=VERSION, api_base=API_BASE)
