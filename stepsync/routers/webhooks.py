"""Fitbit subscriber endpoint.

GET  /api/v1/webhooks/fitbit?verify=<code>   subscriber verification handshake
POST /api/v1/webhooks/fitbit                 notification batch

Fitbit expects a 204 within a few seconds and disables subscribers that keep
failing, so the POST handler only verifies, validates and enqueues; all data
fetching happens later in the queue worker.
"""

from __future__ import annotations

import base64
import hashlib
import hmac
import logging

from fastapi import APIRouter, Header, Query, Request, Response
from pydantic import ValidationError

from stepsync.dependencies import AppSettings, Queue
from stepsync.models.webhooks import NotificationBatch

router = APIRouter(prefix="/webhooks", tags=["webhooks"])
logger = logging.getLogger("stepsync.webhooks")


def sign_fitbit_payload(payload: bytes, client_secret: str) -> str:
    """Return ``BASE64(HMAC-SHA1(payload, client_secret + "&"))``."""
    key = f"{client_secret}&".encode()
    digest = hmac.new(key, payload, hashlib.sha1).digest()
    return base64.b64encode(digest).decode()


def verify_fitbit_signature(payload: bytes, signature: str | None, client_secret: str) -> bool:
    """Verify the X-Fitbit-Signature header for a raw request body.

    A missing header or an unset secret fails without hashing the body.
    """
    if not signature or not client_secret:
        return False
    expected = sign_fitbit_payload(payload, client_secret)
    return hmac.compare_digest(expected.encode(), signature.strip().encode())


@router.get("/fitbit", status_code=204)
async def verify_subscriber(
    settings: AppSettings,
    verify: str | None = Query(default=None),
) -> Response:
    """Answer Fitbit's verification probe: 204 for the right code, 404 otherwise."""
    expected = settings.fitbit_subscriber_verification_code
    if not verify or not expected:
        return Response(status_code=404)
    if hmac.compare_digest(verify.encode(), expected.encode()):
        logger.info("Fitbit subscriber verification succeeded")
        return Response(status_code=204)
    logger.warning("Fitbit subscriber verification failed")
    return Response(status_code=404)


@router.post("/fitbit", status_code=204)
async def receive_notifications(
    request: Request,
    settings: AppSettings,
    queue: Queue,
    x_fitbit_signature: str | None = Header(default=None, alias="X-Fitbit-Signature"),
) -> Response:
    """Verify and enqueue a Fitbit notification batch.

    400 for an empty or invalid body (nothing enqueued), 401 for a bad
    signature, 204 otherwise, including when enqueueing fails internally.
    """
    body = await request.body()
    if not body:
        return Response(status_code=400)

    if not verify_fitbit_signature(body, x_fitbit_signature, settings.fitbit_client_secret):
        logger.warning("Rejected Fitbit webhook with invalid signature")
        return Response(status_code=401)

    try:
        notifications = NotificationBatch.validate_json(body)
    except ValidationError as exc:
        logger.warning("Rejected invalid Fitbit notification batch: %d error(s)", exc.error_count())
        return Response(status_code=400)

    try:
        job_ids = await queue.enqueue_batch(notifications)
        logger.info("Fitbit webhook: %d notification(s) queued as %s", len(job_ids), job_ids)
    except Exception:
        logger.exception("Failed to enqueue Fitbit notifications")

    return Response(status_code=204)
