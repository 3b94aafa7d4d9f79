"""
WhatsApp Cloud API Webhook Handler

מקבל הודעות מ-Meta Cloud API, מעביר כל הודעה למנוע השיחה ושולח את
התשובות ברקע. תמיד מחזיר 200 כדי ש-Meta לא ינסה שוב בגלל כשלון עסקי.
"""
from __future__ import annotations

import hashlib
import hmac
import json
from datetime import datetime, timedelta

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from order_bot.conversation.engine import DialogueEngine
from order_bot.core.config import settings
from order_bot.core.logging import get_logger
from order_bot.core.validation import PhoneNumberValidator
from order_bot.db.database import get_db
from order_bot.db.models.webhook_event import WebhookEvent
from order_bot.domain.services.whatsapp import OutboundDispatcher, get_whatsapp_provider

logger = get_logger(__name__)

router = APIRouter()

_PLATFORM = "whatsapp"


# ──────────────────────────────────────────────
#  Idempotency - טבלת webhook_events
# ──────────────────────────────────────────────


async def _try_acquire_message(db: AsyncSession, message_id: str, platform: str = _PLATFORM) -> bool:
    """
    ניסיון לרכוש הודעה לעיבוד (idempotency check).
    מחזיר True אם ההודעה חדשה ואפשר לעבד, False אם כפולה.
    גישה אופטימיסטית: INSERT קודם, טיפול בקיים אחר כך.
    """
    if not message_id:
        return True  # הודעה ללא ID - מאפשרים עיבוד (אין מה לדדפ)

    try:
        async with db.begin_nested():
            db.add(WebhookEvent(
                message_id=message_id,
                platform=platform,
                status="processing",
                created_at=datetime.utcnow(),
            ))
        # commit מיידי כדי שהרשומה תישמר גם אם העיבוד נכשל
        await db.commit()
        return True
    except IntegrityError:
        pass  # הודעה כבר קיימת - בדיקה אם completed או stale

    result = await db.execute(
        select(WebhookEvent.status, WebhookEvent.created_at)
        .where(WebhookEvent.message_id == message_id)
    )
    row = result.one_or_none()
    if not row:
        return False

    if row.status == "completed":
        logger.info(
            "Skipping completed duplicate message",
            extra_data={"message_id": message_id},
        )
        return False

    # ניסיון retry אטומי - UPDATE רק אם ההודעה תקועה מעבר ל-threshold
    threshold = datetime.utcnow() - timedelta(seconds=settings.WEBHOOK_STALE_PROCESSING_SECONDS)
    update_result = await db.execute(
        update(WebhookEvent)
        .where(
            WebhookEvent.message_id == message_id,
            WebhookEvent.status == "processing",
            WebhookEvent.created_at < threshold,
        )
        .values(created_at=datetime.utcnow())
    )

    if update_result.rowcount > 0:
        await db.commit()
        logger.warning(
            "Retrying stale processing message",
            extra_data={"message_id": message_id},
        )
        return True

    await db.commit()
    logger.info(
        "Skipping in-progress message",
        extra_data={"message_id": message_id},
    )
    return False


async def _mark_message_completed(db: AsyncSession, message_id: str) -> None:
    """סימון הודעה כ-completed אחרי עיבוד מוצלח + commit."""
    if not message_id:
        return
    await db.execute(
        update(WebhookEvent)
        .where(WebhookEvent.message_id == message_id)
        .values(status="completed")
    )
    await db.commit()


# ──────────────────────────────────────────────
#  אימות webhook - Meta verification & signature
# ──────────────────────────────────────────────


@router.get(
    "/webhook",
    summary="Cloud API Webhook Verification",
    description="Meta webhook verification, echoes hub.challenge.",
    tags=["Webhooks"],
)
async def verify_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
) -> PlainTextResponse:
    """אימות webhook מול Meta - מחזיר hub.challenge אם verify_token מתאים."""
    if (
        hub_mode == "subscribe"
        and hub_challenge
        and hub_verify_token
        and settings.WHATSAPP_CLOUD_API_VERIFY_TOKEN
        and hmac.compare_digest(hub_verify_token, settings.WHATSAPP_CLOUD_API_VERIFY_TOKEN)
    ):
        logger.info("WhatsApp webhook verified successfully")
        return PlainTextResponse(hub_challenge)
    logger.warning(
        "WhatsApp webhook verification failed",
        extra_data={"hub_mode": hub_mode},
    )
    raise HTTPException(status_code=403, detail="Verification failed")


def _verify_signature(body: bytes, signature_header: str) -> bool:
    """אימות חתימת HMAC-SHA256 של Meta על ה-payload."""
    if not signature_header or not signature_header.startswith("sha256="):
        return False
    expected = hmac.new(
        settings.WHATSAPP_CLOUD_API_APP_SECRET.encode(),
        body,
        hashlib.sha256,
    ).hexdigest()
    return hmac.compare_digest(signature_header[7:], expected)


# ──────────────────────────────────────────────
#  חילוץ תוכן מפורמט Cloud API
# ──────────────────────────────────────────────


def extract_content(message: dict) -> str:
    """
    Normalize an inbound message into a dialogue token.

    Text is trimmed; interactive replies and template quick-reply buttons
    yield the option id. Unsupported types (media, location...) give "".
    """
    msg_type = message.get("type", "")

    if msg_type == "text":
        return (message.get("text", {}).get("body") or "").strip()

    if msg_type == "interactive":
        interactive = message.get("interactive", {})
        interactive_type = interactive.get("type", "")
        if interactive_type == "button_reply":
            return (interactive.get("button_reply", {}).get("id") or "").strip()
        if interactive_type == "list_reply":
            return (interactive.get("list_reply", {}).get("id") or "").strip()

    # כפתור template (quick reply)
    if msg_type == "button":
        button = message.get("button", {})
        return (button.get("payload") or button.get("text") or "").strip()

    return ""


def _contact_names(value: dict) -> dict[str, str]:
    """wa_id -> profile name מתוך value.contacts"""
    names: dict[str, str] = {}
    for contact in value.get("contacts", []):
        wa_id = contact.get("wa_id")
        name = (contact.get("profile") or {}).get("name")
        if wa_id and name:
            names[wa_id] = name
    return names


# ──────────────────────────────────────────────
#  Webhook handler ראשי
# ──────────────────────────────────────────────


@router.post(
    "/webhook",
    summary="Cloud API Webhook",
    description="Receive WhatsApp messages and delivery statuses from Meta.",
    responses={
        200: {"description": "Payload accepted"},
        403: {"description": "Invalid signature"},
    },
    tags=["Webhooks"],
)
async def receive_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: AsyncSession = Depends(get_db),
) -> dict:
    """
    קבלת ועיבוד הודעות מ-WhatsApp Cloud API.

    1. אימות חתימת Meta (X-Hub-Signature-256) כשמוגדר app secret
    2. חילוץ הודעות מ-entry[].changes[].value.messages[]
    3. idempotency check
    4. מנוע השיחה
    5. שליחת תשובות + קבלת קריאה ברקע
    """
    body = await request.body()

    if settings.WHATSAPP_CLOUD_API_APP_SECRET:
        signature = request.headers.get("X-Hub-Signature-256", "")
        if not _verify_signature(body, signature):
            logger.warning("WhatsApp webhook: invalid signature")
            raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        payload = json.loads(body or b"{}")
    except ValueError:
        logger.warning("WhatsApp webhook: body is not valid JSON")
        return {"status": "ok"}

    if payload.get("object") != "whatsapp_business_account":
        logger.debug(
            "Ignoring non-WhatsApp webhook object",
            extra_data={"object": payload.get("object")},
        )
        return {"status": "ok"}

    dispatcher = OutboundDispatcher(get_whatsapp_provider())

    for entry in payload.get("entry", []):
        for change in entry.get("changes", []):
            value = change.get("value", {})
            contact_names = _contact_names(value)

            for message in value.get("messages", []):
                await _process_message(db, message, contact_names, dispatcher, background_tasks)

            for status in value.get("statuses", []):
                logger.info(
                    "WhatsApp message status update",
                    extra_data={
                        "message_id": status.get("id"),
                        "status": status.get("status"),
                        "recipient": PhoneNumberValidator.mask(status.get("recipient_id", "")),
                    },
                )

    return {"status": "ok"}


async def _process_message(
    db: AsyncSession,
    message: dict,
    contact_names: dict[str, str],
    dispatcher: OutboundDispatcher,
    background_tasks: BackgroundTasks,
) -> None:
    """עיבוד הודעה בודדת. שגיאות נרשמות ללוג ולא עוצרות את שאר ה-payload."""
    message_id = message.get("id", "")
    from_phone = message.get("from", "")
    if not from_phone:
        return

    phone = PhoneNumberValidator.normalize(from_phone)
    phone_masked = PhoneNumberValidator.mask(phone)
    token = extract_content(message)

    logger.debug(
        "WhatsApp message received",
        extra_data={
            "from": phone_masked,
            "message_id": message_id,
            "type": message.get("type", ""),
        },
    )

    if not token:
        logger.info(
            "Unsupported message type, skipping",
            extra_data={"from": phone_masked, "type": message.get("type", "")},
        )
        return

    try:
        acquired = await _try_acquire_message(db, message_id)
    except Exception as exc:
        await db.rollback()
        logger.error(
            "Idempotency check failed",
            extra_data={"message_id": message_id, "error": str(exc)},
            exc_info=True,
        )
        return
    if not acquired:
        return

    _msg_failed = False
    try:
        result = await DialogueEngine(db).handle(
            phone,
            token,
            message_id=message_id or None,
            contact_name=contact_names.get(from_phone),
        )
        if message_id:
            background_tasks.add_task(dispatcher.mark_read, message_id)
        if not result.duplicate and result.messages:
            background_tasks.add_task(dispatcher.deliver, phone, result.messages)
    except Exception as exc:
        _msg_failed = True
        await db.rollback()
        logger.error(
            "WhatsApp message processing failed",
            extra_data={
                "message_id": message_id,
                "phone": phone_masked,
                "error": str(exc),
            },
            exc_info=True,
        )
    finally:
        # הודעה שנכשלה נשארת ב-processing ומאפשרת retry אחרי timeout
        if not _msg_failed and message_id:
            try:
                await _mark_message_completed(db, message_id)
            except Exception:
                logger.error(
                    "Failed to mark message as completed",
                    extra_data={"message_id": message_id},
                    exc_info=True,
                )
