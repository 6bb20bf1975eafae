"""HTTP face of the normalization worker."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from config import settings
from routers.auth_scope import require_worker_secret
from services.normalization import NormalizationError, NormalizationJob, run_normalization

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/worker-normalize")
async def worker_normalize(
    request: Request,
    _authorized: None = Depends(require_worker_secret),
):
    """Normalize one video and answer with the worker result payload."""
    try:
        payload = await request.json()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail={"error": "invalid_json", "message": "Body must be JSON."}) from exc
    if not isinstance(payload, dict):
        raise HTTPException(status_code=400, detail={"error": "invalid_json", "message": "Body must be a JSON object."})

    try:
        job = NormalizationJob.from_payload(payload)
    except NormalizationError as exc:
        raise HTTPException(status_code=400, detail={"error": "invalid_job", "message": str(exc)}) from exc

    result = await run_normalization(job, request.app.state.object_store, settings)
    if not result.success:
        logger.warning("Worker normalization failed for %s: %s", job.video_id, result.error)
    return JSONResponse(status_code=200 if result.success else 500, content=result.to_payload())
