"""
notifier.py -- User-facing cues for the bubble canvas client.

Covers:
  - The "ping" when someone else writes in the open channel
  - Failures the user should know about (store unreachable, session rejected)

Every cue is logged.  The ping also rings the terminal bell when SOUND_CUE is
on.  When TELEGRAM_BOT_TOKEN and TELEGRAM_CHAT_ID are set, cues are mirrored
to Telegram as well.

Uses urllib.request to POST to https://api.telegram.org/bot{token}/sendMessage
"""

import html
import json
import logging
import sys
import urllib.request
import urllib.error

import config

logger = logging.getLogger(__name__)

# Telegram Bot API base URL template
TELEGRAM_API = "https://api.telegram.org/bot{token}/{method}"


def _telegram_api(method: str, payload: dict) -> dict:
    """POST to the Bot API (only sendMessage is used).  {} on any failure; never raises."""
    if not config.TELEGRAM_BOT_TOKEN:
        logger.debug("Telegram not configured, skipping %s", method)
        return {}

    url = TELEGRAM_API.format(token=config.TELEGRAM_BOT_TOKEN, method=method)
    data = json.dumps(payload).encode("utf-8")
    headers = {
        "Content-Type": "application/json",
        "User-Agent": "BubbleCanvas/1.0",
    }
    req = urllib.request.Request(url, data=data, headers=headers)

    try:
        with urllib.request.urlopen(req, timeout=config.REQUEST_TIMEOUT_SEC) as resp:
            result = json.loads(resp.read().decode("utf-8"))
            if result.get("ok"):
                return result
            logger.warning("Telegram %s returned ok=false: %s", method, result)
            return {}
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace")
        logger.warning("Telegram %s HTTP %d: %s", method, e.code, body[:200])
        return {}
    except Exception as e:
        logger.warning("Telegram %s failed: %s", method, e)
        return {}


def _send_message(text: str, parse_mode: str = "HTML") -> bool:
    """Mirror a cue to Telegram.  Returns True if sent."""
    if not config.TELEGRAM_CHAT_ID:
        logger.debug("Telegram chat ID not set, skipping notification")
        return False

    result = _telegram_api("sendMessage", {
        "chat_id": config.TELEGRAM_CHAT_ID,
        "text": text,
        "parse_mode": parse_mode,
        "disable_web_page_preview": True,
    })
    return bool(result)


def _ring_bell() -> None:
    try:
        sys.stdout.write("\a")
        sys.stdout.flush()
    except (OSError, ValueError) as e:
        logger.debug("Could not ring bell: %s", e)


# ---------------------------------------------------------------------------
# Cues
# ---------------------------------------------------------------------------

def notify_new_message(channel_id: str, sender_name: str, content: str) -> None:
    """Ping for a message from someone else in the open channel."""
    who = sender_name or "someone"
    logger.info("New message in %s from %s", channel_id, who)
    if config.SOUND_CUE:
        _ring_bell()
    if config.TELEGRAM_BOT_TOKEN:
        _send_message(
            f"💬 <b>{html.escape(who)}</b>\n{html.escape(content[:300])}"
        )


def notify_error(kind: str, details: str) -> None:
    """
    Surface a failure the user can act on:
      - transport: the store is unreachable or failing
      - unauthorized: the session was rejected; polling for that resource stops
    """
    labels = {
        "transport": "Store unreachable",
        "unauthorized": "Session rejected",
    }
    label = labels.get(kind, kind)
    logger.warning("%s: %s", label, details)
    if config.TELEGRAM_BOT_TOKEN:
        _send_message(f"⚠️ <b>{html.escape(label)}</b>\n{html.escape(details[:300])}")


def notify_recovered(what: str) -> None:
    """The store answered again after a surfaced transport failure."""
    logger.info("%s: store reachable again", what)
