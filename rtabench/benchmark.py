#!/usr/bin/env python3
"""
RTA Benchmark: RPC Polling vs WebSocket Subscriptions
X Layer RTA 엔드포인트 대상 polling / subscription 감지 지연 비교

1단계: RPC 폴링 (pending vs latest nonce)
2단계: WebSocket 구독 (realtime vs newHeads) + receipt 폴링
결과는 구조화된 BenchmarkReport로 반환하고 출력은 reporting 모듈이 담당
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from config.config import Config
from rtabench.clock import MonotonicClock
from rtabench.errors import RpcError, SubscriptionError, TriggerFailed
from rtabench.harness import BenchmarkRun, LatencyRaceHarness
from rtabench.logger import setup_logger
from rtabench.models import RaceResult, SummaryStatistics
from rtabench.observers import (
    NonceObserver,
    Observer,
    ReceiptObserver,
    SubscriptionObserver,
    match_any_new_head,
    match_transaction_hash,
)
from rtabench.rpc_client import JsonRpcClient
from rtabench.subscription_manager import SubscriptionManager
from rtabench.transaction_submitter import TransactionSubmitter, ether_to_wei

logger = setup_logger(__name__)

PENDING_POLL = 'pending-poll'
LATEST_POLL = 'latest-poll'
REALTIME_SUBSCRIPTION = 'realtime-subscription'
NEWHEADS_SUBSCRIPTION = 'newheads-subscription'
RECEIPT_POLL = 'receipt-poll'

COMPARISONS = [
    (PENDING_POLL, LATEST_POLL),
    (REALTIME_SUBSCRIPTION, RECEIPT_POLL),
]
STRATEGY_GROUPS = {
    'polling': [PENDING_POLL, LATEST_POLL, RECEIPT_POLL],
    'subscription': [REALTIME_SUBSCRIPTION, NEWHEADS_SUBSCRIPTION],
}


@dataclass
class InitialState:
    """벤치마크 시작 시점 지갑 상태"""
    address: str
    nonce: int
    balance_wei: int

    @property
    def balance_ether(self) -> float:
        return self.balance_wei / 1e18


@dataclass
class BenchmarkReport:
    """벤치마크 실행 결과"""
    initial_state: Optional[InitialState]
    run: BenchmarkRun
    summary: SummaryStatistics
    message_counts: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)

    @property
    def results(self):
        return self.run.results


class RtaBenchmark:
    """polling -> subscription 순서의 전체 벤치마크"""

    def __init__(self, cfg: Config, rpc: Optional[JsonRpcClient] = None,
                 submitter: Optional[TransactionSubmitter] = None,
                 channel: Optional[SubscriptionManager] = None,
                 harness: Optional[LatencyRaceHarness] = None, clock=None):
        self.config = cfg
        self.clock = clock or MonotonicClock()
        self.rpc = rpc or JsonRpcClient(cfg.rta_endpoint, cfg.rpc_timeout_sec)
        self.submitter = submitter or TransactionSubmitter(cfg)
        self.channel = channel or SubscriptionManager(
            cfg.ws_endpoint, ack_timeout_ms=cfg.subscription_ack_timeout_ms, clock=self.clock
        )
        self.harness = harness or LatencyRaceHarness(self.clock)

        self.run = BenchmarkRun()
        self.errors: List[str] = []
        self.message_counts: Dict[str, int] = {}
        self._tx_count = 0

    @property
    def amount_wei(self) -> int:
        return ether_to_wei(self.config.transfer_amount_ether)

    @property
    def sender_address(self) -> Optional[str]:
        return self.submitter.sender_address or self.config.public_key or None

    def _record_error(self, message: str) -> None:
        logger.error(message)
        self.errors.append(message)

    def _next_label(self) -> str:
        self._tx_count += 1
        return f"TX{self._tx_count}"

    def _send_transfer(self):
        return self.submitter.submit(self.config.test_recipient, self.amount_wei)

    async def read_initial_state(self, address: str) -> InitialState:
        """초기 nonce / 잔액 조회 (pending 기준)"""
        nonce = await self.rpc.get_transaction_count(address, 'pending')
        balance = await self.rpc.get_balance(address, 'pending')
        state = InitialState(address=address, nonce=nonce, balance_wei=balance)
        logger.info(f"✓ 초기 잔액: {state.balance_ether:.6f} ETH (nonce: {nonce})")
        return state

    async def _race(self, label: str, baseline: Any, observers: Sequence[Observer],
                    timeout_ms: int) -> Optional[RaceResult]:
        try:
            result = await self.harness.run_trial(
                baseline, self._send_transfer, observers, timeout_ms, label=label
            )
        except TriggerFailed as e:
            self.run.record_failure(label, e)
            self._record_error(f"{label} 전송 실패: {e.cause}")
            return None

        self.run.add(result)
        for name, observation in result.observations.items():
            logger.info(f"{label} {name}: {observation.status.value} {observation.elapsed_ms:.0f}ms")
        return result

    async def run_polling_phase(self, address: str) -> None:
        """RPC 폴링 테스트 (pending vs latest)"""
        for index in range(self.config.polling_trials):
            label = self._next_label()
            logger.info(f"=== {label}: RPC Polling Test (pending vs latest) ===")
            if index > 0:
                await self.clock.sleep(self.config.inter_trial_delay_ms)

            try:
                baseline = await self.rpc.get_transaction_count(address, 'pending')
            except RpcError as e:
                self._record_error(f"{label} baseline nonce 조회 실패: {e}")
                continue

            observers = [
                NonceObserver(self.rpc, 'pending', address=address, name=PENDING_POLL,
                              interval_ms=self.config.poll_interval_ms),
                NonceObserver(self.rpc, 'latest', address=address, name=LATEST_POLL,
                              interval_ms=self.config.poll_interval_ms),
            ]
            await self._race(label, baseline, observers, self.config.polling_timeout_ms)

    async def run_subscription_phase(self) -> None:
        """WebSocket 구독 테스트 (realtime / newHeads / receipt 폴링)"""
        logger.info("=== WEBSOCKET SETUP: realtime / newHeads 구독 생성 ===")
        try:
            await self.channel.connect()
            realtime = await self.channel.subscribe_realtime()
            new_heads = await self.channel.subscribe_new_heads()
        except SubscriptionError as e:
            self._record_error(f"구독 설정 실패, subscription 단계 생략: {e}")
            return

        observers = [
            SubscriptionObserver(REALTIME_SUBSCRIPTION, self.channel, realtime, match_transaction_hash),
            SubscriptionObserver(NEWHEADS_SUBSCRIPTION, self.channel, new_heads, match_any_new_head),
            ReceiptObserver(self.rpc, name=RECEIPT_POLL, interval_ms=self.config.poll_interval_ms),
        ]

        for _ in range(self.config.subscription_trials):
            label = self._next_label()
            logger.info(f"=== {label}: WebSocket Subscription Test ===")
            await self.clock.sleep(self.config.subscription_settle_ms)
            await self._race(label, None, observers, self.config.subscription_timeout_ms)

        self.message_counts = {
            'realtime': realtime.message_count,
            'newHeads': new_heads.message_count,
        }

    async def execute(self, include_subscriptions: bool = True) -> BenchmarkReport:
        """전체 벤치마크 실행, 실패가 있어도 수집된 결과로 리포트 생성"""
        initial_state = None
        try:
            address = self.sender_address
            if not address:
                self._record_error("송신 주소가 없습니다 (PRIVATE_KEY 또는 PUBLIC_KEY 필요)")
            else:
                try:
                    initial_state = await self.read_initial_state(address)
                except RpcError as e:
                    self._record_error(f"초기 상태 조회 실패: {e}")
                await self.run_polling_phase(address)

            if include_subscriptions:
                await self.run_subscription_phase()
        finally:
            await self.channel.close()
            await self.rpc.close()

        summary = self.run.summarize(compare=COMPARISONS, groups=STRATEGY_GROUPS)
        return BenchmarkReport(
            initial_state=initial_state,
            run=self.run,
            summary=summary,
            message_counts=dict(self.message_counts),
            errors=list(self.errors)
        )
