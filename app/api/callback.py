"""
Daraja STK callback endpoint.

POST /mpesa/callback        (also /pay/mpesa/callback)
GET  /mpesa/callback        liveness probe
HEAD /mpesa/callback        liveness probe, no body

Every POST is answered 200 {"ok": true}, including malformed bodies and
internal failures. Daraja redelivers on anything else, and redeliveries pile
up quickly. Real error handling happens in the reconciler after the ack.
"""

import json
import logging

from fastapi import APIRouter, Depends, Request, Response
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_session
from app.engine.reconciler import reconcile

logger = logging.getLogger("stk_gateway.callback")

router = APIRouter(tags=["callback"])

CALLBACK_PATHS = ("/mpesa/callback", "/pay/mpesa/callback")
NO_STORE = {"Cache-Control": "no-store, no-cache, must-revalidate"}


def _ack(body: dict) -> JSONResponse:
    return JSONResponse(status_code=200, content=body, headers=NO_STORE)


async def receive_callback(request: Request, session: AsyncSession = Depends(get_session)):
    try:
        raw = await request.body()
        payload = json.loads(raw) if raw else {}
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        logger.warning("Callback body is not JSON: %s", e)
        payload = {}

    try:
        await reconcile(session, payload)
    except Exception:
        # reconcile() already swallows its own failures; this guards the ack.
        logger.exception("Unexpected error while reconciling callback")

    return _ack({"ok": True})


async def callback_alive():
    return _ack({"status": "callback alive"})


async def callback_head():
    return Response(status_code=204, headers=NO_STORE)


for _path in CALLBACK_PATHS:
    router.add_api_route(_path, receive_callback, methods=["POST"])
    router.add_api_route(_path, callback_head, methods=["HEAD"])
    router.add_api_route(_path, callback_alive, methods=["GET"])
