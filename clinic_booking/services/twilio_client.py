# clinic_booking/services/twilio_client.py
import logging
from twilio.rest import Client
from ..config import settings

logger = logging.getLogger(__name__)


def _normalize_phone(number: str) -> str:
    number = (number or "").strip().replace(" ", "")
    if number and not number.startswith("+"):
        number = "+" + number.lstrip("+")
    return number


def _normalize_wa(number: str) -> str:
    if not number:
        return number
    number = number.strip()
    if number.startswith("whatsapp:"):
        number = number.split(":", 1)[1]
    return f"whatsapp:{_normalize_phone(number)}"


def get_twilio_client() -> Client | None:
    if not settings.TWILIO_ACCOUNT_SID or not settings.TWILIO_AUTH_TOKEN:
        return None
    return Client(settings.TWILIO_ACCOUNT_SID, settings.TWILIO_AUTH_TOKEN)


def send_message(to: str, body: str, channel: str | None = None) -> dict:
    """
    Sends one text through Twilio over SMS or WhatsApp.
    - DRY_RUN=true: nothing is sent, the message is logged
    - missing credentials/sender: MOCK mode, logged, nothing sent
    Twilio errors propagate; the notification layer decides what to do.
    """
    channel = channel or settings.NOTIFY_CHANNEL
    if channel == "whatsapp":
        to_norm = _normalize_wa(to)
        from_norm = _normalize_wa(settings.TWILIO_WHATSAPP_FROM or "")
    else:
        to_norm = _normalize_phone(to)
        from_norm = _normalize_phone(settings.TWILIO_SMS_FROM or "")

    one_line = body.replace("\n", " | ")
    if settings.DRY_RUN:
        logger.info("[DRY_RUN %s] to=%s body=%s", channel.upper(), to_norm, one_line)
        return {"dry_run": True, "to": to_norm, "body": body}

    client = get_twilio_client()
    if client is None or not from_norm:
        logger.warning("[%s MOCK] to=%s body=%s", channel.upper(), to_norm, one_line)
        return {"mock": True, "to": to_norm, "body": body}

    msg = client.messages.create(from_=from_norm, to=to_norm, body=body)
    logger.info("Twilio %s sent: sid=%s to=%s", channel, msg.sid, to_norm)
    return {"sid": msg.sid, "to": to_norm}
