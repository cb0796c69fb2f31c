"""Client side of the shared state store: HTTP load/save and the push channel.

The HTTP calls are blocking (requests) with an explicit timeout; the sync
client runs them in a worker thread. The push channel is an asyncio
websocket listener that hands every ``{"type": "state"}`` payload to a
callback and reconnects on its own.
"""

from __future__ import annotations

import asyncio
import json
import logging
from enum import Enum
from typing import Callable, Optional

import requests
import websockets
from websockets.exceptions import WebSocketException

from .config import API_VARIANTS, DEFAULT_PUSH_TIMEOUT, Settings

logger = logging.getLogger("sleep_tasks.api")


class ApiErrorCode(str, Enum):
    NETWORK = "network_error"
    BAD_RESPONSE = "bad_response"
    INVALID_JSON = "invalid_json"
    TIMEOUT = "timeout"
    CONFLICT = "conflict"
    UNKNOWN = "unknown_error"


class ApiError(Exception):
    """Transport failure or malformed response from the store."""

    def __init__(self, message: str, code: ApiErrorCode = ApiErrorCode.UNKNOWN, status: Optional[int] = None):
        super().__init__(message)
        self.code = code
        self.status = status


class ConflictError(ApiError):
    """The store rejected a stale write and sent back its current document."""

    def __init__(self, current_state: dict, status: int = 409):
        super().__init__("save rejected: document is stale", ApiErrorCode.CONFLICT, status)
        self.current_state = current_state


class StateApi:
    """Blocking HTTP client for GET/POST /state (or GET/PUT /api/v1/state)."""

    def __init__(
        self,
        base_url: str,
        variant: str = "classic",
        timeout: float = DEFAULT_PUSH_TIMEOUT,
        session: Optional[requests.Session] = None,
    ):
        if variant not in API_VARIANTS:
            raise ValueError(f"Unknown API variant: {variant}")
        self.base_url = base_url.rstrip("/")
        self.variant = variant
        self.timeout = timeout
        self.session = session or requests.Session()

    @classmethod
    def from_settings(cls, settings: Settings) -> StateApi:
        return cls(settings.api_base, settings.api_variant, settings.push_timeout)

    @property
    def url(self) -> str:
        return self.base_url + API_VARIANTS[self.variant]["path"]

    def _request(self, op: str, method: str, **kwargs) -> requests.Response:
        try:
            res = self.session.request(
                method,
                self.url,
                headers={"Accept": "application/json"},
                timeout=self.timeout,
                **kwargs,
            )
        except requests.exceptions.Timeout as e:
            raise ApiError(f"{op} failed: timed out after {self.timeout}s", ApiErrorCode.TIMEOUT) from e
        except requests.exceptions.RequestException as e:
            raise ApiError(f"{op} failed: network error", ApiErrorCode.NETWORK) from e

        if res.status_code == 409:
            body = self._json(res, op, required=False)
            current = body.get("currentState") if isinstance(body, dict) else None
            if isinstance(current, dict):
                raise ConflictError(current, res.status_code)

        if not res.ok:
            raise ApiError(
                f"{op} failed: {res.status_code} {res.text[:200]}",
                ApiErrorCode.BAD_RESPONSE,
                res.status_code,
            )
        return res

    @staticmethod
    def _json(res: requests.Response, op: str, required: bool = True):
        try:
            body = res.json()
        except ValueError as e:
            if not required:
                return None
            raise ApiError(f"{op} failed: invalid JSON", ApiErrorCode.INVALID_JSON, res.status_code) from e
        if required and not isinstance(body, dict):
            raise ApiError(f"{op} failed: expected a JSON object", ApiErrorCode.INVALID_JSON, res.status_code)
        return body

    def load(self) -> dict:
        """Fetch the raw (unnormalized) shared document."""
        res = self._request("load", "GET")
        return self._json(res, "load")

    def save(self, document: dict) -> Optional[dict]:
        """Replace the shared document.

        Returns the persisted document when the store sends it back, or None
        for a bare ``{"ok": true}`` acknowledgement.
        """
        method = API_VARIANTS[self.variant]["save_method"]
        res = self._request("save", method, json=document)
        if not res.content:
            return None
        body = self._json(res, "save")
        if "updatedAt" in body or "tasks" in body:
            return body
        return None


class PushChannel:
    """Long-lived websocket subscription to full-state broadcasts."""

    def __init__(self, url: str, reconnect_delay: float = 2.0):
        self.url = url
        self.reconnect_delay = reconnect_delay

    @classmethod
    def from_settings(cls, settings: Settings) -> PushChannel:
        return cls(settings.ws_base)

    @staticmethod
    def parse_message(raw) -> Optional[dict]:
        """Payload of a ``{"type": "state", "payload": {...}}`` message, else None."""
        try:
            msg = json.loads(raw)
        except (TypeError, ValueError):
            logger.debug("Ignoring push message that is not JSON")
            return None
        if not isinstance(msg, dict) or msg.get("type") != "state":
            return None
        payload = msg.get("payload")
        return payload if isinstance(payload, dict) else None

    async def listen(self, on_state: Callable[[dict], None]) -> None:
        """Deliver every state payload to ``on_state`` in receipt order, until cancelled."""
        while True:
            try:
                async with websockets.connect(self.url) as ws:
                    logger.info(f"Push channel connected: {self.url}")
                    async for raw in ws:
                        payload = self.parse_message(raw)
                        if payload is not None:
                            on_state(payload)
                logger.info("Push channel closed by server")
            except (OSError, WebSocketException) as e:
                logger.warning(f"Push channel error: {e}")
            await asyncio.sleep(self.reconnect_delay)
