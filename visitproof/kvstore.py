"""
Key-value store client for the distributed backends.

Speaks the Upstash Redis REST protocol: every command is POSTed as a JSON
array (``["INCR", "key"]``) to a single endpoint with a bearer token, and the
reply is ``{"result": ...}`` or ``{"error": "..."}``.

The HTTP call itself is blocking (requests), so it is run in a worker thread
to keep the event loop free.
"""

import asyncio
import logging
from typing import Any, Optional

import requests

from . import config
from .util import mask_sensitive

logger = logging.getLogger(__name__)


class KeyValueStoreError(Exception):
    """Raised when the key-value store is unreachable or rejects a command."""


class UpstashRestClient:
    """
    Minimal async client for a Redis-compatible REST endpoint.

    Only the commands the rate limiter and replay guard need are exposed.
    """

    def __init__(
        self,
        url: str,
        token: str,
        timeout: float = 2.0,
        session: Optional[requests.Session] = None
    ):
        self.base_url = url
        self._token = token
        self._timeout = timeout
        self._session = session or requests.Session()

    def _post(self, payload: list) -> Any:
        try:
            response = self._session.post(
                self.base_url,
                json=payload,
                headers={
                    "Authorization": f"Bearer {self._token}",
                    "Content-Type": "application/json",
                },
                timeout=self._timeout,
            )
        except requests.RequestException as e:
            raise KeyValueStoreError(f"request failed: {e}") from e

        if not response.ok:
            raise KeyValueStoreError(f"HTTP {response.status_code}: {response.reason}")

        try:
            data = response.json()
        except ValueError as e:
            raise KeyValueStoreError("response is not JSON") from e

        if not isinstance(data, dict):
            raise KeyValueStoreError("unexpected response shape")
        if data.get("error"):
            raise KeyValueStoreError(str(data["error"]))
        return data.get("result")

    async def command(self, *args: Any) -> Any:
        """Execute one command, e.g. ``await client.command("GET", key)``."""
        payload = [str(a) for a in args]
        return await asyncio.to_thread(self._post, payload)

    async def get(self, key: str) -> Optional[str]:
        return await self.command("GET", key)

    async def set(
        self,
        key: str,
        value: str,
        ex: Optional[int] = None,
        nx: bool = False
    ) -> bool:
        """SET with optional expiry; with nx=True returns False if the key existed."""
        args = ["SET", key, value]
        if ex:
            args += ["EX", int(ex)]
        if nx:
            args.append("NX")
        result = await self.command(*args)
        return result is not None

    async def incr(self, key: str) -> int:
        return int(await self.command("INCR", key))

    async def expire(self, key: str, seconds: int) -> None:
        await self.command("EXPIRE", key, int(seconds))

    async def ttl(self, key: str) -> int:
        """Remaining lifetime in seconds; negative if missing or persistent."""
        return int(await self.command("TTL", key))

    async def exists(self, key: str) -> bool:
        return int(await self.command("EXISTS", key)) > 0


def client_from_env() -> Optional[UpstashRestClient]:
    """Build a client from configuration, or None if not configured."""
    if not config.kv_store_configured():
        return None
    logger.info(
        "Using key-value store at %s (token %s)",
        config.UPSTASH_REDIS_REST_URL,
        mask_sensitive(config.UPSTASH_REDIS_REST_TOKEN),
    )
    return UpstashRestClient(
        config.UPSTASH_REDIS_REST_URL,
        config.UPSTASH_REDIS_REST_TOKEN,
        timeout=config.KV_REQUEST_TIMEOUT,
    )
