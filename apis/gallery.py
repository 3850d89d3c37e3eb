from typing import Dict

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import StreamingResponse

from core.errors import ReconcileError
from core.ledger_store import LedgerStore
from core.object_store import ObjectStore
from .base import error_response, http_error, success_response
from .deps import get_ledger, get_object_store, require_user

router = APIRouter(prefix="/gallery", tags=["gallery"])


@router.get("", summary="Artifacts owned by the current user")
def list_gallery(
    limit: int = Query(50, ge=1, le=50),
    current_user: Dict[str, str] = Depends(require_user),
    ledger: LedgerStore = Depends(get_ledger),
):
    return success_response(ledger.list_artifacts(current_user["id"], limit=limit))


@router.get("/{image_id}/image", summary="Stream a stored artifact")
def gallery_image(
    image_id: str,
    ledger: LedgerStore = Depends(get_ledger),
    store: ObjectStore = Depends(get_object_store),
):
    record = ledger.get_artifact(image_id)
    if not record:
        raise HTTPException(status_code=404, detail=error_response(code=404, message="image not found"))
    try:
        obj = store.get(record["artifact_key"])
    except ReconcileError as e:
        raise http_error(e)
    if obj is None:
        raise HTTPException(status_code=404, detail=error_response(code=404, message="image object missing"))
    headers = {"Cache-Control": "private, max-age=3600"}
    if obj.size is not None:
        headers["Content-Length"] = str(obj.size)
    return StreamingResponse(obj.chunks, media_type=record["content_type"] or obj.content_type, headers=headers)


@router.post("/{image_id}/claim", summary="Attach an anonymous artifact to the current user")
def claim_image(
    image_id: str,
    current_user: Dict[str, str] = Depends(require_user),
    ledger: LedgerStore = Depends(get_ledger),
):
    try:
        record = ledger.claim_artifact(image_id, current_user["id"])
    except ReconcileError as e:
        raise http_error(e)
    return success_response(record, message="image claimed")
