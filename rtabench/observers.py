#!/usr/bin/env python3
"""
Observation strategies
상태 변화 감지 전략 (active polling / passive subscription)

- PollingObserver: 고정 주기로 상태 조회, baseline과 달라지면 감지
- NonceObserver: eth_getTransactionCount(address, tag) 폴링
- ReceiptObserver: eth_getTransactionReceipt 폴링
- SubscriptionObserver: 공유 WebSocket 채널의 push 알림 대기
"""

from abc import ABC, abstractmethod
import asyncio
from typing import Any, Callable, Dict, List, Optional, Tuple

from rtabench.errors import ObserverError, ObserverTimeout
from rtabench.logger import setup_logger
from rtabench.models import Observation, ObservationStatus, Trial

logger = setup_logger(__name__)

DEFAULT_POLL_INTERVAL_MS = 100


def to_int(value: Any) -> Any:
    """hex 문자열(0x..)은 int로 변환, 나머지는 그대로"""
    if isinstance(value, str) and value.startswith('0x'):
        return int(value, 16)
    return value


class Observer(ABC):
    """관측 전략 기본 클래스"""

    def __init__(self, name: str):
        self.name = name

    async def attach(self, trial: Trial) -> None:
        """트리거 실행 전 호출 (streaming observer가 콜백 등록)"""

    @abstractmethod
    async def observe(self, trial: Trial, clock) -> Observation:
        """trial의 baseline 대비 변화를 deadline까지 감지"""

    async def detach(self, trial: Trial) -> None:
        """관측 종료 후 호출"""

    def timeout_observation(self, trial: Trial, **kwargs) -> Observation:
        kwargs.setdefault('error', str(ObserverTimeout(self.name, trial.timeout_ms)))
        return Observation(
            strategy=self.name,
            status=ObservationStatus.TIMEOUT,
            elapsed_ms=float(trial.timeout_ms),
            **kwargs
        )

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r})"


class PollingObserver(Observer):
    """
    고정 주기 폴링 관측자

    The first query is issued immediately. Between queries the observer
    sleeps for the cadence (never past the deadline). Query failures are
    transient: they are logged, counted and retried on the next tick.
    """

    def __init__(self, name: str, interval_ms: float = DEFAULT_POLL_INTERVAL_MS):
        super().__init__(name)
        if interval_ms <= 0:
            raise ValueError("interval_ms must be positive")
        self.interval_ms = interval_ms

    @abstractmethod
    async def query(self, trial: Trial) -> Any:
        """현재 상태 조회"""

    def has_changed(self, baseline: Any, value: Any) -> bool:
        return value != baseline

    async def observe(self, trial: Trial, clock) -> Observation:
        error_count = 0
        last_error: Optional[ObserverError] = None

        while True:
            try:
                value = await self.query(trial)
            except Exception as e:
                error_count += 1
                last_error = ObserverError(self.name, e)
                logger.warning(f"{self.name} 조회 실패, 다음 주기에 재시도: {e}")
            else:
                now = clock.now_ms()
                if self.has_changed(trial.baseline, value) and now <= trial.deadline_ms:
                    return Observation(
                        strategy=self.name,
                        status=ObservationStatus.SUCCESS,
                        elapsed_ms=trial.elapsed_since_start(now),
                        value=value,
                        error=str(last_error) if last_error else None,
                        error_count=error_count
                    )

            remaining = trial.remaining_ms(clock.now_ms())
            if remaining <= 0:
                break
            await clock.sleep(min(self.interval_ms, remaining))

        if last_error is not None:
            return self.timeout_observation(trial, error=str(last_error), error_count=error_count)
        return self.timeout_observation(trial)


class NonceObserver(PollingObserver):
    """nonce 변화 폴링 (tag: pending / latest)"""

    def __init__(self, rpc, tag: str, address: Optional[str] = None,
                 name: Optional[str] = None, interval_ms: float = DEFAULT_POLL_INTERVAL_MS):
        super().__init__(name or f"{tag}-poll", interval_ms)
        self.rpc = rpc
        self.tag = tag
        self.address = address

    async def observe(self, trial: Trial, clock) -> Observation:
        if not (self.address or trial.sender_address):
            raise ObserverError(self.name, ValueError("no address to query"))
        return await super().observe(trial, clock)

    async def query(self, trial: Trial) -> int:
        address = self.address or trial.sender_address
        return await self.rpc.get_transaction_count(address, self.tag)

    def has_changed(self, baseline: Any, value: Any) -> bool:
        return to_int(value) != to_int(baseline)


class ReceiptObserver(PollingObserver):
    """receipt 가용 여부 폴링 (baseline: None = 'no receipt yet')"""

    def __init__(self, rpc, tag: Optional[str] = None, name: str = "receipt-poll",
                 interval_ms: float = DEFAULT_POLL_INTERVAL_MS):
        super().__init__(name, interval_ms)
        self.rpc = rpc
        self.tag = tag

    async def observe(self, trial: Trial, clock) -> Observation:
        if trial.action_id is None:
            raise ObserverError(self.name, ValueError("trial has no transaction hash"))
        return await super().observe(trial, clock)

    async def query(self, trial: Trial) -> Optional[Dict]:
        return await self.rpc.get_transaction_receipt(trial.action_id, self.tag)

    def has_changed(self, baseline: Any, value: Any) -> bool:
        return value is not None and value != baseline


# Notification matchers: (payload, trial) -> bool

def match_transaction_hash(payload: Any, trial: Trial) -> bool:
    """realtime 알림의 tx hash가 trial의 tx hash와 일치하는지"""
    if not isinstance(payload, dict) or trial.action_id is None:
        return False
    target = trial.action_id.lower()
    for key in ('TxHash', 'txHash', 'hash', 'transactionHash'):
        value = payload.get(key)
        if isinstance(value, str) and value.lower() == target:
            return True
    receipt = payload.get('Receipt') or payload.get('receipt')
    if isinstance(receipt, dict):
        return match_transaction_hash(receipt, trial)
    return False


# tx hash로 식별하므로 트리거 완료 전 수신분도 유효
match_transaction_hash.identifies_submission = True


def match_any_new_head(payload: Any, trial: Trial) -> bool:
    """트리거 이후 첫 블록 헤더"""
    return isinstance(payload, dict) and 'number' in payload


match_any_new_head.identifies_submission = False


class _Detection:
    """trial별 첫 감지 기록"""

    def __init__(self, trial: Trial):
        self.trial = trial
        self.event = asyncio.Event()
        self.first: Optional[Tuple[Any, float]] = None
        self.extra: List[Any] = []
        # 트리거 완료(tx hash 확정) 전에 도착한 알림
        self.pending: List[Tuple[Any, float]] = []
        self.token: Any = None


class SubscriptionObserver(Observer):
    """
    Push 구독 관측자

    Registers a per-trial callback on the shared channel in ``attach``,
    i.e. before the trigger fires. The first matching notification fixes
    the elapsed time; later matches go to ``Observation.extra``. ``detach``
    deregisters the callback so late notifications never reach an expired
    trial.

    Matchers that do not identify the submission (e.g. block headers) only
    accept notifications received at or after ``trial.submitted_ms``.
    """

    def __init__(self, name: str, channel, handle,
                 matcher: Callable[[Any, Trial], bool] = match_transaction_hash):
        super().__init__(name)
        self.channel = channel
        self.handle = handle
        self.matcher = matcher
        self.accepts_early = getattr(matcher, 'identifies_submission', False)
        self._detections: Dict[int, _Detection] = {}

    async def attach(self, trial: Trial) -> None:
        detection = _Detection(trial)
        self._detections[trial.trial_id] = detection
        try:
            detection.token = await self.channel.on_message(
                self.handle, self._make_callback(trial.trial_id)
            )
        except Exception:
            self._detections.pop(trial.trial_id, None)
            raise

    def _make_callback(self, trial_id: int) -> Callable[[Any, float], None]:
        def callback(payload: Any, received_ms: float) -> None:
            detection = self._detections.get(trial_id)
            if detection is None:
                return
            if detection.trial.submission is None:
                detection.pending.append((payload, received_ms))
                return
            self._record(detection, payload, received_ms)
        return callback

    def _record(self, detection: _Detection, payload: Any, received_ms: float) -> None:
        trial = detection.trial
        if received_ms > trial.deadline_ms:
            return
        if (not self.accepts_early and trial.submitted_ms is not None
                and received_ms < trial.submitted_ms):
            return
        if not self.matcher(payload, trial):
            return
        if detection.first is None:
            detection.first = (payload, received_ms)
            detection.event.set()
            logger.debug(f"{self.name} 첫 감지: trial {trial.trial_id}, "
                         f"{trial.elapsed_since_start(received_ms):.0f}ms")
        else:
            detection.extra.append(payload)

    async def observe(self, trial: Trial, clock) -> Observation:
        detection = self._detections.get(trial.trial_id)
        if detection is None:
            raise ObserverError(self.name, RuntimeError("observer not attached to trial"))

        # 트리거 완료 전 수신분 재평가
        pending, detection.pending = detection.pending, []
        for payload, received_ms in pending:
            self._record(detection, payload, received_ms)

        await clock.wait_for_event(detection.event, trial.remaining_ms(clock.now_ms()))

        if detection.first is not None:
            payload, received_ms = detection.first
            return Observation(
                strategy=self.name,
                status=ObservationStatus.SUCCESS,
                elapsed_ms=trial.elapsed_since_start(received_ms),
                value=payload,
                extra=tuple(detection.extra)
            )
        return self.timeout_observation(trial, extra=tuple(detection.extra))

    async def detach(self, trial: Trial) -> None:
        detection = self._detections.pop(trial.trial_id, None)
        if detection is not None and detection.token is not None:
            await self.channel.remove_listener(self.handle, detection.token)
