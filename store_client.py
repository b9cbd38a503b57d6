"""
store_client.py -- REST wrapper for the bubble/channel store.

Handles:
  - Public reads (bubble list -- no token needed)
  - Authenticated calls (token in the x-auth-token header)
  - A hard deadline on every request
  - Mapping HTTP failures onto a small exception taxonomy

ERRORS:
  Every failure raises a StoreError subclass:
    TransportError     network failure, timeout, 5xx
    UnauthorizedError  401 / 403 (missing, expired or foreign token)
    NotFoundError      404 (bubble or channel deleted meanwhile)
    ValidationError    400 / 422, or a response that is not the JSON we expect
  Callers catch these where they make the call; nothing here retries.

Uses urllib.request only.
"""

import base64
import json
import logging
import socket
import urllib.error
import urllib.parse
import urllib.request

import config

logger = logging.getLogger(__name__)

USER_AGENT = "BubbleCanvas/1.0"


# ---------------------------------------------------------------------------
# Error taxonomy
# ---------------------------------------------------------------------------

class StoreError(Exception):
    """Base class for every store failure."""

    kind = "store"

    def __init__(self, message: str, status: int = 0):
        super().__init__(message)
        self.status = status


class TransportError(StoreError):
    kind = "transport"


class UnauthorizedError(StoreError):
    kind = "unauthorized"


class NotFoundError(StoreError):
    kind = "not_found"


class ValidationError(StoreError):
    kind = "validation"


def _error_for_status(status: int, message: str) -> StoreError:
    if status in (401, 403):
        return UnauthorizedError(message, status)
    if status == 404:
        return NotFoundError(message, status)
    if status in (400, 409, 422):
        return ValidationError(message, status)
    return TransportError(message, status)


# ---------------------------------------------------------------------------
# Token helper
# ---------------------------------------------------------------------------

def user_id_from_token(token: str) -> str:
    """
    Read the user id from a JWT session token without verifying it.

    The payload is the middle dot-separated segment, base64url-encoded JSON
    shaped like {"user": {"id": "..."}}.  Returns "" if it can't be read.
    """
    parts = (token or "").split(".")
    if len(parts) < 2:
        return ""
    segment = parts[1]
    segment += "=" * (-len(segment) % 4)
    try:
        payload = json.loads(base64.urlsafe_b64decode(segment.encode("ascii")).decode("utf-8"))
    except (ValueError, UnicodeError) as e:
        logger.warning("Could not decode session token payload: %s", e)
        return ""
    user = payload.get("user") if isinstance(payload, dict) else None
    if isinstance(user, dict) and user.get("id"):
        return str(user["id"])
    return ""


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------

class StoreClient:
    """Thin client for the store endpoints.  Thread-safe (no shared state)."""

    def __init__(self, base_url: str = None, token: str = None,
                 timeout: float = None, auth_header: str = None):
        self.base_url = (base_url if base_url is not None else config.STORE_URL).rstrip("/")
        self.token = token if token is not None else config.AUTH_TOKEN
        self.timeout = float(timeout if timeout is not None else config.REQUEST_TIMEOUT_SEC)
        self.auth_header = auth_header or config.AUTH_HEADER

    def _request(self, method: str, path: str, body: dict = None, auth: bool = True):
        """
        Make a JSON request and return the parsed body.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path:   Path below the base URL, e.g. "/bubbles"
            body:   JSON body for POST/PUT
            auth:   Send the session token

        Raises:
            StoreError subclass on any failure.
        """
        url = self.base_url + path
        headers = {"User-Agent": USER_AGENT, "Accept": "application/json"}
        data = None
        if body is not None:
            data = json.dumps(body).encode("utf-8")
            headers["Content-Type"] = "application/json"
        if auth:
            if not self.token:
                raise UnauthorizedError(f"{method} {path}: no session token")
            headers[self.auth_header] = self.token

        req = urllib.request.Request(url, data=data, headers=headers, method=method)
        logger.debug("Store %s %s", method, path)
        try:
            with urllib.request.urlopen(req, timeout=self.timeout) as resp:
                raw = resp.read().decode("utf-8")
        except urllib.error.HTTPError as e:
            err_body = e.read().decode("utf-8", errors="replace")[:200]
            raise _error_for_status(e.code, f"{method} {path} HTTP {e.code}: {_error_msg(err_body)}") from e
        except urllib.error.URLError as e:
            raise TransportError(f"{method} {path} failed: {e.reason}") from e
        except (socket.timeout, TimeoutError) as e:
            raise TransportError(f"{method} {path} timed out after {self.timeout:.1f}s") from e
        except OSError as e:
            raise TransportError(f"{method} {path} failed: {e}") from e

        if not raw:
            return {}
        try:
            return json.loads(raw)
        except ValueError as e:
            raise ValidationError(f"{method} {path} returned invalid JSON: {raw[:80]!r}") from e

    # ------------------ Bubbles ------------------

    def list_bubbles(self) -> list:
        result = self._request("GET", "/bubbles", auth=False)
        if not isinstance(result, list):
            raise ValidationError("GET /bubbles did not return a list")
        return result

    def create_bubble(self, text: str, position: dict, color: str) -> dict:
        result = self._request("POST", "/bubbles", {"text": text, "position": position, "color": color})
        return _expect_object(result, "POST /bubbles")

    def update_bubble_position(self, bubble_id: str, position: dict) -> dict:
        path = f"/bubbles/{_quote(bubble_id)}"
        result = self._request("PUT", path, {"x": position["x"], "y": position["y"]})
        return _expect_object(result, f"PUT {path}")

    def delete_bubble(self, bubble_id: str) -> dict:
        return self._request("DELETE", f"/bubbles/{_quote(bubble_id)}")

    # ------------------ Channels ------------------

    def create_channel(self, receiver_id: str, content: str, sender_id: str) -> dict:
        body = {"receiverId": receiver_id, "content": content, "senderId": sender_id}
        return _expect_object(self._request("POST", "/channels", body), "POST /channels")

    def send_message(self, channel_id: str, content: str) -> dict:
        path = f"/channels/{_quote(channel_id)}/messages"
        return _expect_object(self._request("POST", path, {"content": content}), f"POST {path}")

    def get_channel(self, channel_id: str) -> dict:
        path = f"/channels/{_quote(channel_id)}"
        return _expect_object(self._request("GET", path), f"GET {path}")

    def list_user_channels(self, user_id: str) -> list:
        """
        Channels the user takes part in, newest first.

        The store returns at most config.CHANNEL_LIST_LIMIT channels; older
        ones are not reachable through this call.
        """
        path = f"/channels/user/{_quote(user_id)}"
        result = self._request("GET", path)
        if not isinstance(result, list):
            raise ValidationError(f"GET {path} did not return a list")
        if len(result) >= config.CHANNEL_LIST_LIMIT:
            logger.debug("Channel list at the %d-channel cap; older channels not shown",
                         config.CHANNEL_LIST_LIMIT)
        return result


def _quote(value: str) -> str:
    return urllib.parse.quote(str(value), safe="")


def _expect_object(result, what: str) -> dict:
    if not isinstance(result, dict):
        raise ValidationError(f"{what} did not return an object")
    return result


def _error_msg(body: str) -> str:
    """Pull {"msg": ...} out of an error body when present."""
    try:
        parsed = json.loads(body)
    except ValueError:
        return body
    if isinstance(parsed, dict) and parsed.get("msg"):
        return str(parsed["msg"])
    return body
