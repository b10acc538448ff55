import asyncio
import itertools
from typing import Any, Dict, List, Optional

import pytest

from rtabench.models import Observation, ObservationStatus, RaceResult
from rtabench.transaction_submitter import Submission

SENDER = "0x1111111111111111111111111111111111111111"
RECIPIENT = "0x2222222222222222222222222222222222222222"
TX_HASH = "0x" + "ab" * 32


class FakeClock:
    """Simulated monotonic clock: sleeping advances time without waiting."""

    def __init__(self, start_ms: float = 1000.0):
        self.now = start_ms
        self.sleeps: List[float] = []

    def now_ms(self) -> float:
        return self.now

    def advance(self, ms: float) -> None:
        self.now += ms

    async def sleep(self, ms: float) -> None:
        target = self.now + max(ms, 0)
        self.sleeps.append(ms)
        await asyncio.sleep(0)
        self.now = max(self.now, target)

    async def wait_for_event(self, event: asyncio.Event, timeout_ms: float) -> bool:
        if event.is_set():
            return True
        target = self.now + max(timeout_ms, 0)
        await asyncio.sleep(0)
        if event.is_set():
            return True
        self.now = max(self.now, target)
        return event.is_set()


class ScriptedRpc:
    """RPC double returning scripted values; the last value repeats."""

    def __init__(self, clock: Optional[FakeClock] = None, latency_ms: float = 0,
                 counts: Optional[Dict[str, List[Any]]] = None,
                 receipts: Optional[List[Any]] = None, balance: int = 10 ** 18):
        self.clock = clock
        self.latency_ms = latency_ms
        self.counts = {tag: list(values) for tag, values in (counts or {}).items()}
        self.receipts = list(receipts or [None])
        self.balance = balance
        self.calls: List[tuple] = []
        self.closed = False

    def _next(self, values: List[Any]) -> Any:
        if self.clock is not None and self.latency_ms:
            self.clock.advance(self.latency_ms)
        value = values.pop(0) if len(values) > 1 else values[0]
        if isinstance(value, Exception):
            raise value
        return value

    async def get_transaction_count(self, address: str, tag: str = 'pending') -> int:
        self.calls.append(('count', address, tag))
        return self._next(self.counts[tag])

    async def get_balance(self, address: str, tag: str = 'pending') -> int:
        self.calls.append(('balance', address, tag))
        return self.balance

    async def get_transaction_receipt(self, tx_hash: str, tag: Optional[str] = None):
        self.calls.append(('receipt', tx_hash, tag))
        return self._next(self.receipts)

    async def close(self) -> None:
        self.closed = True


class FakeHandle:
    def __init__(self, kind: str):
        self.kind = kind
        self.subscription_id = f"0x{kind}"
        self.messages: List[tuple] = []

    @property
    def message_count(self) -> int:
        return len(self.messages)


class FakeChannel:
    """In-memory notification channel with the SubscriptionManager listener API."""

    def __init__(self, clock: Optional[FakeClock] = None):
        self.clock = clock
        self.listeners: Dict[int, tuple] = {}
        self._tokens = itertools.count(1)
        self.connected = False
        self.closed = False
        self.fail_connect: Optional[Exception] = None
        self.realtime = FakeHandle("realtime")
        self.new_heads = FakeHandle("newHeads")

    async def connect(self) -> None:
        if self.fail_connect is not None:
            raise self.fail_connect
        self.connected = True

    async def subscribe_realtime(self) -> FakeHandle:
        return self.realtime

    async def subscribe_new_heads(self) -> FakeHandle:
        return self.new_heads

    async def on_message(self, handle, callback) -> int:
        token = next(self._tokens)
        self.listeners[token] = (handle, callback)
        return token

    async def remove_listener(self, handle, token: int) -> None:
        self.listeners.pop(token, None)

    def emit(self, handle, payload: Any, received_ms: Optional[float] = None) -> None:
        if received_ms is None:
            received_ms = self.clock.now_ms()
        handle.messages.append((payload, received_ms))
        for registered, callback in list(self.listeners.values()):
            if registered is handle:
                callback(payload, received_ms)

    async def close(self) -> None:
        self.closed = True


class FakeResponse:
    """aiohttp response double"""

    def __init__(self, status=200, body=None, invalid_json=False):
        self.status = status
        self.body = body
        self.invalid_json = invalid_json

    async def json(self, content_type=None):
        if self.invalid_json:
            raise ValueError("Expecting value")
        return self.body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """aiohttp ClientSession double returning one canned response"""

    def __init__(self, response=None, error=None):
        self.response = response
        self.error = error
        self.requests = []
        self.closed = False

    def post(self, url, json=None):
        self.requests.append((url, json))
        if self.error is not None:
            raise self.error
        return self.response

    async def close(self):
        self.closed = True


def make_submission(tx_hash: str = TX_HASH, nonce: int = 5) -> Submission:
    return Submission(
        submission_id=tx_hash,
        sender_address=SENDER,
        to=RECIPIENT,
        value_wei=10 ** 15,
        nonce=nonce
    )


def race(trial_id, label=None, timeout_ms=30000, **outcomes) -> RaceResult:
    """Build a RaceResult; an int is a success time, None is a timeout"""
    observations = {}
    for name, elapsed in outcomes.items():
        name = name.replace('_', '-')
        if elapsed is None:
            observations[name] = Observation(name, ObservationStatus.TIMEOUT, float(timeout_ms))
        else:
            observations[name] = Observation(name, ObservationStatus.SUCCESS, elapsed)
    return RaceResult(
        trial_id=trial_id,
        label=label,
        action_id=None,
        baseline=None,
        timeout_ms=timeout_ms,
        observations=observations
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def channel(clock):
    return FakeChannel(clock)
