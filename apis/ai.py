from typing import Dict, Optional

from fastapi import APIRouter, Depends, Query

from core.auth import get_optional_user
from core.errors import ReconcileError
from core.reconciliation import GenerationReconciler
from .base import http_error
from .deps import get_generation_reconciler

router = APIRouter(prefix="/ai", tags=["generation"])


@router.get("/status", summary="Poll a generation job and persist its artifact once")
def generation_status(
    id: str = Query("", max_length=128),
    prompt: str = Query("", max_length=4000),
    current_user: Optional[Dict[str, str]] = Depends(get_optional_user),
    reconciler: GenerationReconciler = Depends(get_generation_reconciler),
):
    owner_id = current_user["id"] if current_user else None
    try:
        result = reconciler.check_job(id, prompt=prompt, owner_id=owner_id)
    except ReconcileError as e:
        raise http_error(e)
    return result.to_response()
