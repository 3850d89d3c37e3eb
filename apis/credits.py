from typing import Dict

from fastapi import APIRouter, Depends, Query

from core.credit_packages import get_package_catalog
from core.errors import ReconcileError
from core.ledger_store import LedgerStore
from .base import http_error, success_response
from .deps import get_ledger, require_user

router = APIRouter(prefix="/credits", tags=["credits"])


@router.get("/balance", summary="Current paid credit balance")
def credit_balance(
    current_user: Dict[str, str] = Depends(require_user),
    ledger: LedgerStore = Depends(get_ledger),
):
    try:
        balance = ledger.get_balance(current_user["id"])
    except ReconcileError as e:
        raise http_error(e)
    return success_response({"balance": balance})


@router.get("/history", summary="Credit transaction history")
def credit_history(
    limit: int = Query(20, ge=1, le=50),
    offset: int = Query(0, ge=0),
    current_user: Dict[str, str] = Depends(require_user),
    ledger: LedgerStore = Depends(get_ledger),
):
    rows = ledger.list_transactions(current_user["id"], limit=limit, offset=offset)
    return success_response({"list": rows, "limit": limit, "offset": offset})


@router.get("/packages", summary="Credit package catalog")
async def credit_packages():
    return success_response(get_package_catalog())
