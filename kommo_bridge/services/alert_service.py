"""Operator alerts through a Telegram bot."""

import time
from typing import Optional

import httpx

from kommo_bridge.config import settings
from kommo_bridge.logging_config import get_logger, preview

logger = get_logger("alert_service")

# same level+message is sent at most once per window
ALERT_COOLDOWN_SECONDS = 60.0
_last_sent: dict[str, float] = {}


def format_alert(level: str, message: str, context: Optional[dict] = None) -> str:
    emoji = {"INFO": "ℹ️", "WARNING": "⚠️", "ERROR": "❌", "CRITICAL": "🔥"}
    text = f"{emoji.get(level, '📢')} *{level}* kommo-bridge\n\n{message}"
    if context:
        lines = "\n".join(f"  {k}: {preview(v, 200)}" for k, v in context.items())
        text += f"\n\n```\n{lines}\n```"
    return text


def send_alert(
    level: str,
    message: str,
    context: Optional[dict] = None,
    *,
    transport: Optional[httpx.BaseTransport] = None,
) -> bool:
    """Send an alert; returns True when Telegram accepted it."""
    if not settings.alert_bot_token or not settings.alert_chat_id:
        logger.warning(f"Alert not configured: {level} - {message}")
        return False

    dedupe_key = f"{level}:{message}"
    now = time.monotonic()
    if now - _last_sent.get(dedupe_key, float("-inf")) < ALERT_COOLDOWN_SECONDS:
        logger.info("Alert suppressed by cooldown", extra={"context": {"level": level, "alert": message}})
        return False

    try:
        with httpx.Client(timeout=10, transport=transport) as client:
            response = client.post(
                f"https://api.telegram.org/bot{settings.alert_bot_token}/sendMessage",
                json={
                    "chat_id": settings.alert_chat_id,
                    "text": format_alert(level, message, context),
                    "parse_mode": "Markdown",
                },
            )
    except httpx.HTTPError as e:
        logger.error(f"Failed to send alert: {e}")
        return False

    if response.status_code != 200:
        logger.error(f"Alert rejected: {response.status_code}")
        return False
    _last_sent[dedupe_key] = now
    return True


def alert_critical(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for CRITICAL level alert."""
    return send_alert("CRITICAL", message, context)


def alert_warning(message: str, context: Optional[dict] = None) -> bool:
    """Shortcut for WARNING level alert."""
    return send_alert("WARNING", message, context)
