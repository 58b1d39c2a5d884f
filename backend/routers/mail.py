"""Mail router - sync passes, cached inbox reads, mutations and push webhooks."""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse, StreamingResponse

from backend.core.config import settings
from backend.models.schemas import (
    GmailPushNotification,
    InboxPage,
    IncrementalSyncRequest,
    InitialSyncRequest,
    LabelUpdateRequest,
    LabelUpdateResponse,
    MarkReadResponse,
    MessageDetail,
    SendEmailRequest,
    SuccessResponse,
    SyncResult,
)
from backend.providers.email.base import (
    AuthenticationError,
    MailProviderError,
    RateLimitError,
    ResourceNotFoundError,
)
from backend.services.credentials import UserNotFoundError
from backend.services.notifier import RealtimeNotifier
from backend.workers.sync_worker import MailSyncWorker

logger = logging.getLogger(__name__)

router = APIRouter()

SIGNATURE_HEADER = "x-hub-signature-256"
SSE_KEEPALIVE_SECONDS = 15


def get_mail_worker(request: Request) -> MailSyncWorker:
    return request.app.state.mail_sync


def get_event_notifier(request: Request) -> RealtimeNotifier:
    return request.app.state.notifier


def _to_http_error(e: Exception) -> HTTPException:
    """Map engine errors onto HTTP status codes."""
    if isinstance(e, UserNotFoundError):
        return HTTPException(status_code=401, detail=f"{e}. Please sign in again.")
    if isinstance(e, AuthenticationError):
        return HTTPException(status_code=401, detail="Mail provider rejected the access token. Please sign in again.")
    if isinstance(e, RateLimitError):
        return HTTPException(status_code=429, detail=f"Mail provider rate limit reached: {e}")
    if isinstance(e, ResourceNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, MailProviderError):
        return HTTPException(status_code=502, detail=f"Mail provider error: {e}")
    if isinstance(e, ValueError):
        return HTTPException(status_code=400, detail=str(e))
    return HTTPException(status_code=500, detail=str(e))


def verify_signature(body: bytes, signature: Optional[str], secret: Optional[str]) -> bool:
    """Check an ``sha256=<hex>`` HMAC header. Without a secret every body is accepted."""
    if not secret:
        return True
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(signature[len("sha256="):], expected)


# ============== Sync ==============

@router.post("/sync/initial", response_model=SyncResult)
async def initial_sync(payload: InitialSyncRequest, request: Request):
    """Run the lookback backfill for a mailbox."""
    worker = get_mail_worker(request)
    try:
        return await worker.perform_initial_sync(payload.user_email)
    except Exception as e:
        logger.error(f"Initial sync failed for {payload.user_email}: {e}")
        raise _to_http_error(e)


@router.post("/sync/incremental", response_model=SyncResult)
async def incremental_sync(payload: IncrementalSyncRequest, request: Request):
    """Pull provider changes since the stored cursor."""
    worker = get_mail_worker(request)
    try:
        return await worker.perform_incremental_sync(payload.user_email, max_results=payload.max_results)
    except Exception as e:
        logger.error(f"Incremental sync failed for {payload.user_email}: {e}")
        raise _to_http_error(e)


@router.get("/events")
async def sync_events(request: Request, user_email: str = Query(...)):
    """Server-sent events for sync progress and saved threads."""
    notifier = get_event_notifier(request)
    queue = notifier.subscribe(user_email)

    async def generate():
        try:
            yield f"data: {json.dumps({'type': 'subscribed', 'userEmail': user_email})}\n\n"
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=SSE_KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield f"data: {json.dumps(event, default=str)}\n\n"
        finally:
            notifier.unsubscribe(user_email, queue)

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
        }
    )


# ============== Cached reads ==============

@router.get("/inbox", response_model=InboxPage)
async def get_inbox(
    request: Request,
    user_email: str = Query(...),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    fallback: bool = Query(False, description="Fetch from the provider when the cache is empty on the first page"),
):
    worker = get_mail_worker(request)
    try:
        return await worker.get_inbox_emails_from_db(user_email, limit, offset, fallback_to_provider=fallback)
    except Exception as e:
        raise _to_http_error(e)


@router.get("/messages/{external_id}", response_model=MessageDetail)
async def get_message(external_id: str, request: Request, user_email: str = Query(...)):
    worker = get_mail_worker(request)
    try:
        return await worker.get_email_content(user_email, external_id)
    except Exception as e:
        raise _to_http_error(e)


@router.get("/threads/{thread_external_id}/messages", response_model=List[MessageDetail])
async def get_thread_messages(thread_external_id: str, request: Request, user_email: str = Query(...)):
    worker = get_mail_worker(request)
    try:
        return await worker.get_thread_emails(user_email, thread_external_id)
    except Exception as e:
        raise _to_http_error(e)


# ============== Mutations ==============

@router.post("/threads/{thread_external_id}/labels", response_model=LabelUpdateResponse)
async def update_thread_labels(
    thread_external_id: str,
    payload: LabelUpdateRequest,
    request: Request,
    user_email: str = Query(...),
):
    worker = get_mail_worker(request)
    try:
        labels = await worker.update_message_labels(
            user_email, thread_external_id, payload.labels, payload.operation
        )
    except Exception as e:
        raise _to_http_error(e)
    return LabelUpdateResponse(thread_external_id=thread_external_id, labels=labels)


@router.post("/messages/{external_id}/read", response_model=MarkReadResponse)
async def mark_read(external_id: str, request: Request, user_email: str = Query(...)):
    worker = get_mail_worker(request)
    try:
        result = await worker.mark_email_as_read(user_email, external_id)
    except Exception as e:
        raise _to_http_error(e)
    return MarkReadResponse(**result)


@router.post("/send", response_model=SuccessResponse)
async def send_email(payload: SendEmailRequest, request: Request, user_email: str = Query(...)):
    worker = get_mail_worker(request)
    try:
        await worker.send_email(
            user_email, payload.to, payload.subject, payload.body,
            is_html=payload.is_html, cc=payload.cc,
        )
    except Exception as e:
        raise _to_http_error(e)
    return SuccessResponse(message=f"Email sent to {len(payload.to)} recipient(s)")


# ============== Push notifications ==============

@router.post("/push/setup")
async def setup_push(request: Request, user_email: str = Query(...)):
    worker = get_mail_worker(request)
    try:
        return await worker.setup_push_notifications(user_email)
    except Exception as e:
        raise _to_http_error(e)


def _decode_gmail_push(payload: dict) -> GmailPushNotification:
    """Accept the bare notification or a Pub/Sub push envelope around it."""
    message = payload.get("message")
    if isinstance(message, dict) and message.get("data"):
        data = base64.b64decode(message["data"]).decode()
        payload = json.loads(data)
    return GmailPushNotification(**payload)


@router.post("/webhooks/gmail", status_code=202)
async def gmail_webhook(request: Request, background_tasks: BackgroundTasks):
    body = await request.body()
    if not verify_signature(body, request.headers.get(SIGNATURE_HEADER), settings.webhook_secret):
        logger.warning("Rejected Gmail webhook with a bad signature")
        raise HTTPException(status_code=401, detail="Invalid webhook signature")

    try:
        notification = _decode_gmail_push(json.loads(body or b"{}"))
    except (ValueError, TypeError) as e:
        raise HTTPException(status_code=400, detail=f"Malformed Gmail notification: {e}")

    worker = get_mail_worker(request)
    logger.info(f"Gmail push for {notification.emailAddress} at history {notification.historyId}")
    background_tasks.add_task(_run_push_sync, worker, notification.emailAddress)
    return {"accepted": True}


@router.post("/webhooks/outlook")
async def outlook_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    validationToken: Optional[str] = Query(None),
):
    # Graph validates a new subscription by echoing this token as text.
    if validationToken:
        return PlainTextResponse(validationToken)

    try:
        payload = await request.json()
    except ValueError:
        raise HTTPException(status_code=400, detail="Malformed Outlook notification")

    worker = get_mail_worker(request)
    user_ids = set()
    for item in payload.get("value", []):
        client_state = item.get("clientState") or ""
        if client_state.startswith("outlook-"):
            user_ids.add(client_state[len("outlook-"):])

    for user_id in user_ids:
        try:
            user = await worker.credentials.get_user_by_id(user_id)
        except UserNotFoundError as e:
            logger.warning(f"Outlook notification for unknown account: {e}")
            continue
        background_tasks.add_task(_run_push_sync, worker, user.email)

    return PlainTextResponse("", status_code=202)


async def _run_push_sync(worker: MailSyncWorker, user_email: str) -> None:
    try:
        result = await worker.handle_push_notification(user_email)
        logger.info(f"Push-triggered sync for {user_email}: {result.new_emails_count} new")
    except Exception as e:
        logger.error(f"Push-triggered sync failed for {user_email}: {e}")
