"""
Test doubles shared by the visitproof test suite.
"""

import asyncio
from typing import Any, Dict, Iterable, List, Optional

from visitproof.kvstore import KeyValueStoreError
from visitproof.receipt import ReceiptOutcome


class FakeClock:
    """Manually advanced time source."""

    def __init__(self, start: float = 1_700_000_010.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """Async sleep replacement that records delays and advances a clock."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.delays: List[float] = []
        self.clock = clock

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        if self.clock is not None:
            self.clock.advance(delay)


class FakeResponse:
    def __init__(self, status_code: int = 200, payload: Any = None, json_error: bool = False):
        self.status_code = status_code
        self.reason = "OK" if status_code < 400 else "Error"
        self._payload = payload
        self._json_error = json_error

    @property
    def ok(self) -> bool:
        return self.status_code < 400

    def json(self) -> Any:
        if self._json_error:
            raise ValueError("not json")
        return self._payload


class FakeSession:
    """
    Stand-in for requests.Session.

    Each post() consumes the next scripted item; exceptions are raised, and
    the last item repeats once the script runs out.
    """

    def __init__(self, *script: Any):
        self.script = list(script)
        self.calls: List[Dict[str, Any]] = []

    def post(self, url: str, **kwargs: Any) -> FakeResponse:
        self.calls.append({"url": url, **kwargs})
        item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if isinstance(item, BaseException):
            raise item
        return item


class FakeKeyValueClient:
    """
    In-process stand-in for UpstashRestClient.

    With interleave=True every command yields to the event loop before it
    runs, the way a network round trip would. Commands named in fail_once
    raise KeyValueStoreError the first time they are issued.
    """

    def __init__(self, fail: bool = False, interleave: bool = False, fail_once: Iterable[str] = ()):
        self.data: Dict[str, str] = {}
        self.ttls: Dict[str, int] = {}
        self.fail = fail
        self.interleave = interleave
        self.fail_once = set(fail_once)
        self.commands: List[tuple] = []

    async def _record(self, *command: Any) -> None:
        if self.interleave:
            await asyncio.sleep(0)
        self.commands.append(command)
        if self.fail:
            raise KeyValueStoreError("store unreachable")
        if command[0] in self.fail_once:
            self.fail_once.discard(command[0])
            raise KeyValueStoreError(f"{command[0]} failed")

    async def get(self, key: str) -> Optional[str]:
        await self._record("GET", key)
        return self.data.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None, nx: bool = False) -> bool:
        await self._record("SET", key, value, ex, nx)
        if nx and key in self.data:
            return False
        self.data[key] = value
        if ex:
            self.ttls[key] = int(ex)
        return True

    async def incr(self, key: str) -> int:
        await self._record("INCR", key)
        value = int(self.data.get(key, "0")) + 1
        self.data[key] = str(value)
        return value

    async def expire(self, key: str, seconds: int) -> None:
        await self._record("EXPIRE", key, seconds)
        self.ttls[key] = int(seconds)

    async def ttl(self, key: str) -> int:
        await self._record("TTL", key)
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    async def exists(self, key: str) -> bool:
        await self._record("EXISTS", key)
        return key in self.data


class StubReceiptScorer:
    """Returns a fixed ReceiptOutcome and records calls."""

    def __init__(self, outcome: ReceiptOutcome):
        self.outcome = outcome
        self.calls: List[tuple] = []

    async def score(self, image_base64, brand_name, purchase_date, popup_id) -> ReceiptOutcome:
        self.calls.append((image_base64, brand_name, purchase_date, popup_id))
        return self.outcome
