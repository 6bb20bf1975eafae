"""Broker-facing normalization callback endpoint."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

router = APIRouter()


@router.post("/normalize-callback")
async def normalize_callback(request: Request):
    """Apply a worker result delivered by the broker.

    The raw body is handed over untouched; signatures cover the exact bytes.
    """
    receiver = request.app.state.callback_receiver
    raw_body = await request.body()
    response = await receiver.handle(raw_body, request.headers)
    return JSONResponse(status_code=response.status_code, content=response.body)
