"""
Data model for the latency race harness
레이스 하네스 데이터 모델

Trial -> Observation (per strategy) -> RaceResult -> SummaryStatistics
"""

from dataclasses import dataclass, field
from enum import Enum
from types import MappingProxyType
from typing import Any, Dict, Iterator, Mapping, Optional, Tuple, Union


class ObservationStatus(Enum):
    """관측 결과 상태"""
    SUCCESS = "success"
    TIMEOUT = "timeout"   # deadline까지 변화 미감지
    ERROR = "error"       # 관측 자체가 불가능했음


@dataclass(frozen=True)
class Observation:
    """한 trial 내 한 전략의 관측 결과"""
    strategy: str
    status: ObservationStatus
    elapsed_ms: float
    value: Any = None
    error: Optional[str] = None
    error_count: int = 0
    # streaming observer의 후속 알림 (첫 감지 타이밍에는 영향 없음)
    extra: Tuple[Any, ...] = ()

    @property
    def success(self) -> bool:
        return self.status is ObservationStatus.SUCCESS


@dataclass
class Trial:
    """
    실험 1회 단위
    All observers of one trial share ``start_ms`` and ``baseline``.
    """
    trial_id: int
    baseline: Any
    start_ms: float
    timeout_ms: int
    label: Optional[str] = None
    submission: Any = None
    # 트리거 완료 시각 (submission 확정 시점)
    submitted_ms: Optional[float] = None
    observations: Dict[str, Observation] = field(default_factory=dict)

    @property
    def deadline_ms(self) -> float:
        return self.start_ms + self.timeout_ms

    @property
    def action_id(self) -> Optional[str]:
        """트리거 액션 식별자 (예: tx hash)"""
        if self.submission is None:
            return None
        submission_id = getattr(self.submission, 'submission_id', None)
        return submission_id if submission_id is not None else str(self.submission)

    @property
    def sender_address(self) -> Optional[str]:
        return getattr(self.submission, 'sender_address', None)

    def elapsed_since_start(self, now_ms: float) -> float:
        """start 기준 경과 시간, [0, timeout_ms] 범위로 제한"""
        return min(max(now_ms - self.start_ms, 0.0), float(self.timeout_ms))

    def remaining_ms(self, now_ms: float) -> float:
        return max(self.deadline_ms - now_ms, 0.0)


@dataclass(frozen=True)
class RaceResult:
    """trial 1회의 전략별 관측 결과 (읽기 전용)"""
    trial_id: int
    label: Optional[str]
    action_id: Optional[str]
    baseline: Any
    timeout_ms: int
    observations: Mapping[str, Observation] = field(default_factory=dict)

    def __post_init__(self):
        object.__setattr__(self, 'observations', MappingProxyType(dict(self.observations)))

    @classmethod
    def from_trial(cls, trial: Trial) -> 'RaceResult':
        return cls(
            trial_id=trial.trial_id,
            label=trial.label,
            action_id=trial.action_id,
            baseline=trial.baseline,
            timeout_ms=trial.timeout_ms,
            observations=trial.observations,
        )

    def __getitem__(self, strategy: str) -> Observation:
        return self.observations[strategy]

    def __contains__(self, strategy: object) -> bool:
        return strategy in self.observations

    def __iter__(self) -> Iterator[str]:
        return iter(self.observations)

    def __len__(self) -> int:
        return len(self.observations)

    def get(self, strategy: str) -> Optional[Observation]:
        return self.observations.get(strategy)

    def winner(self) -> Optional[str]:
        """가장 먼저 감지한 전략"""
        successful = [obs for obs in self.observations.values() if obs.success]
        if not successful:
            return None
        return min(successful, key=lambda obs: obs.elapsed_ms).strategy


@dataclass(frozen=True)
class AggregationSkipped:
    """성공 샘플이 0개인 전략/그룹의 'no data' 표시"""
    subject: str
    reason: str = "no successful observations"

    def __str__(self) -> str:
        return "n/a"


MeanValue = Union[float, AggregationSkipped]


@dataclass(frozen=True)
class StrategySummary:
    """전략별 집계"""
    strategy: str
    mean_ms: MeanValue
    samples: Tuple[float, ...] = ()
    successes: int = 0
    timeouts: int = 0
    errors: int = 0
    median_ms: Optional[float] = None
    min_ms: Optional[float] = None
    max_ms: Optional[float] = None
    p95_ms: Optional[float] = None

    @property
    def has_data(self) -> bool:
        return not isinstance(self.mean_ms, AggregationSkipped)

    @property
    def attempts(self) -> int:
        return self.successes + self.timeouts + self.errors


@dataclass(frozen=True)
class Improvement:
    """두 전략 간 비교: delta = mean(slower) - mean(faster)"""
    faster: str
    slower: str
    faster_mean_ms: MeanValue
    slower_mean_ms: MeanValue
    delta_ms: MeanValue
    percent: Optional[float]

    @property
    def has_data(self) -> bool:
        return not isinstance(self.delta_ms, AggregationSkipped)


@dataclass(frozen=True)
class TrialSummary:
    """trial별 요약"""
    trial_id: int
    label: Optional[str]
    winner: Optional[str]
    elapsed_ms: Mapping[str, float]
    statuses: Mapping[str, ObservationStatus]


@dataclass(frozen=True)
class SummaryStatistics:
    """여러 RaceResult에 대한 읽기 전용 집계"""
    strategies: Mapping[str, StrategySummary]
    trials: Tuple[TrialSummary, ...] = ()
    groups: Mapping[str, MeanValue] = field(default_factory=dict)
    comparisons: Tuple[Improvement, ...] = ()

    def mean(self, strategy: str) -> MeanValue:
        summary = self.strategies.get(strategy)
        if summary is None:
            return AggregationSkipped(strategy, "strategy never observed")
        return summary.mean_ms

    def comparison(self, faster: str, slower: str) -> Optional[Improvement]:
        for improvement in self.comparisons:
            if improvement.faster == faster and improvement.slower == slower:
                return improvement
        return None
