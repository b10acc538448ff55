#!/usr/bin/env python3
"""
Latency Race Harness
여러 관측 전략을 하나의 트리거에 대해 동시에 경주시키고 지연 시간을 집계

- run_trial: 공유 start 시점 기록 -> 트리거 실행 -> 관측자 동시 실행 (allSettled)
- summarize: 전략별 평균/중앙값/p95, trial별 승자, 그룹 평균, 전략 쌍 비교
- BenchmarkRun: 벤치마크 1회 실행 동안의 RaceResult 누적기
"""

import asyncio
import dataclasses
import inspect
import statistics
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from rtabench.clock import MonotonicClock
from rtabench.errors import ObserverError, TriggerFailed
from rtabench.logger import setup_logger
from rtabench.models import (
    AggregationSkipped,
    Improvement,
    MeanValue,
    Observation,
    ObservationStatus,
    RaceResult,
    StrategySummary,
    SummaryStatistics,
    Trial,
    TrialSummary,
)
from rtabench.observers import Observer

logger = setup_logger(__name__)


class LatencyRaceHarness:
    """관측 전략 레이스 하네스"""

    def __init__(self, clock=None):
        self.clock = clock or MonotonicClock()
        self._trial_counter = 0

    async def run_trial(self, baseline: Any, trigger: Callable[[], Any],
                        observers: Sequence[Observer], timeout_ms: int,
                        label: Optional[str] = None) -> RaceResult:
        """
        트리거 1회에 대한 관측 레이스 실행

        Args:
            baseline: 트리거 직전 상태 (예: nonce, receipt 없음 = None)
            trigger: 상태 변경 액션 (sync/async). 반환값이 trial의 submission
            observers: 이름이 고유한 관측자 목록
            timeout_ms: 모든 관측자가 공유하는 제한 시간

        Raises:
            TriggerFailed: 트리거 실패 시. 관측자는 실행되지 않음
        """
        observers = list(observers)
        self._validate(observers, timeout_ms)

        self._trial_counter += 1
        trial = Trial(
            trial_id=self._trial_counter,
            baseline=baseline,
            start_ms=self.clock.now_ms(),
            timeout_ms=timeout_ms,
            label=label
        )

        # streaming observer는 트리거 전에 콜백 등록
        attached: List[Observer] = []
        attach_failures: Dict[str, Observation] = {}
        for observer in observers:
            try:
                await observer.attach(trial)
            except Exception as e:
                logger.error(f"{observer.name} attach 실패: {e}")
                attach_failures[observer.name] = self._error_observation(observer, trial, e)
            else:
                attached.append(observer)

        try:
            submission = trigger()
            if inspect.isawaitable(submission):
                submission = await submission
        except Exception as e:
            logger.error(f"트리거 실패 (trial {trial.trial_id}): {e}")
            await asyncio.gather(*(self._detach(observer, trial) for observer in attached))
            raise TriggerFailed(e, RaceResult.from_trial(trial)) from e

        trial.submission = submission
        trial.submitted_ms = self.clock.now_ms()
        logger.info(f"trial {trial.trial_id} 트리거 완료: {trial.action_id}")

        results = await asyncio.gather(
            *(self._run_observer(observer, trial) for observer in attached)
        )
        by_name = {observation.strategy: observation for observation in results}
        by_name.update(attach_failures)
        for observer in observers:
            trial.observations[observer.name] = by_name[observer.name]

        return RaceResult.from_trial(trial)

    def _validate(self, observers: List[Observer], timeout_ms: int) -> None:
        if not observers:
            raise ValueError("at least one observer is required")
        names = [observer.name for observer in observers]
        if len(set(names)) != len(names):
            raise ValueError(f"observer names must be unique: {names}")
        if isinstance(timeout_ms, bool) or not isinstance(timeout_ms, int) or timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be a positive integer, got {timeout_ms!r}")

    async def _run_observer(self, observer: Observer, trial: Trial) -> Observation:
        try:
            observation = await observer.observe(trial, self.clock)
        except Exception as e:
            logger.error(f"{observer.name} 관측 오류: {e}")
            observation = self._error_observation(observer, trial, e)
        finally:
            await self._detach(observer, trial)

        if observation.strategy != observer.name:
            observation = dataclasses.replace(observation, strategy=observer.name)
        return self._clamp(observation, trial)

    async def _detach(self, observer: Observer, trial: Trial) -> None:
        try:
            await observer.detach(trial)
        except Exception as e:
            logger.warning(f"{observer.name} detach 실패: {e}")

    def _error_observation(self, observer: Observer, trial: Trial, error: Exception) -> Observation:
        cause = error.cause if isinstance(error, ObserverError) else error
        return Observation(
            strategy=observer.name,
            status=ObservationStatus.ERROR,
            elapsed_ms=trial.elapsed_since_start(self.clock.now_ms()),
            error=str(cause)
        )

    @staticmethod
    def _clamp(observation: Observation, trial: Trial) -> Observation:
        elapsed = min(max(observation.elapsed_ms, 0.0), float(trial.timeout_ms))
        if elapsed != observation.elapsed_ms:
            return dataclasses.replace(observation, elapsed_ms=elapsed)
        return observation

    def summarize(self, results: Iterable[RaceResult],
                  compare: Optional[Sequence[Tuple[str, str]]] = None,
                  groups: Optional[Mapping[str, Sequence[str]]] = None) -> SummaryStatistics:
        return summarize(results, compare=compare, groups=groups)


def _mean_or_skip(subject: str, samples: List[float]) -> MeanValue:
    if not samples:
        return AggregationSkipped(subject)
    return statistics.mean(samples)


def _summarize_strategy(strategy: str, observations: List[Observation]) -> StrategySummary:
    samples = [obs.elapsed_ms for obs in observations if obs.success]
    counts = {status: 0 for status in ObservationStatus}
    for obs in observations:
        counts[obs.status] += 1

    if not samples:
        return StrategySummary(
            strategy=strategy,
            mean_ms=AggregationSkipped(strategy),
            timeouts=counts[ObservationStatus.TIMEOUT],
            errors=counts[ObservationStatus.ERROR]
        )

    return StrategySummary(
        strategy=strategy,
        mean_ms=statistics.mean(samples),
        samples=tuple(samples),
        successes=counts[ObservationStatus.SUCCESS],
        timeouts=counts[ObservationStatus.TIMEOUT],
        errors=counts[ObservationStatus.ERROR],
        median_ms=statistics.median(samples),
        min_ms=min(samples),
        max_ms=max(samples),
        p95_ms=float(np.percentile(samples, 95))
    )


def compare_strategies(faster: str, slower: str, faster_mean: MeanValue,
                       slower_mean: MeanValue) -> Improvement:
    """delta = mean(slower) - mean(faster), percent = delta / mean(slower) * 100"""
    if isinstance(faster_mean, AggregationSkipped) or isinstance(slower_mean, AggregationSkipped):
        return Improvement(
            faster=faster,
            slower=slower,
            faster_mean_ms=faster_mean,
            slower_mean_ms=slower_mean,
            delta_ms=AggregationSkipped(f"{faster} vs {slower}", "missing mean"),
            percent=None
        )

    delta = slower_mean - faster_mean
    percent = (delta / slower_mean * 100) if slower_mean else None
    return Improvement(
        faster=faster,
        slower=slower,
        faster_mean_ms=faster_mean,
        slower_mean_ms=slower_mean,
        delta_ms=delta,
        percent=percent
    )


def summarize(results: Iterable[RaceResult],
              compare: Optional[Sequence[Tuple[str, str]]] = None,
              groups: Optional[Mapping[str, Sequence[str]]] = None) -> SummaryStatistics:
    """
    RaceResult 목록 집계

    Strategies with zero successful observations get an AggregationSkipped
    marker instead of a mean.
    """
    results = list(results)

    by_strategy: Dict[str, List[Observation]] = {}
    trials: List[TrialSummary] = []
    for result in results:
        for strategy, observation in result.observations.items():
            by_strategy.setdefault(strategy, []).append(observation)
        trials.append(TrialSummary(
            trial_id=result.trial_id,
            label=result.label,
            winner=result.winner(),
            elapsed_ms={name: obs.elapsed_ms for name, obs in result.observations.items() if obs.success},
            statuses={name: obs.status for name, obs in result.observations.items()}
        ))

    strategies = {
        strategy: _summarize_strategy(strategy, observations)
        for strategy, observations in by_strategy.items()
    }

    group_means: Dict[str, MeanValue] = {}
    for group, members in (groups or {}).items():
        samples: List[float] = []
        for member in members:
            summary = strategies.get(member)
            if summary is not None:
                samples.extend(summary.samples)
        group_means[group] = _mean_or_skip(group, samples)

    stats = SummaryStatistics(strategies=strategies, trials=tuple(trials), groups=group_means)
    comparisons = tuple(
        compare_strategies(faster, slower, stats.mean(faster), stats.mean(slower))
        for faster, slower in (compare or ())
    )
    return dataclasses.replace(stats, comparisons=comparisons)


class BenchmarkRun:
    """벤치마크 1회 실행의 RaceResult 누적기"""

    def __init__(self):
        self._results: List[RaceResult] = []
        self._failures: List[Tuple[Optional[str], TriggerFailed]] = []

    def add(self, result: RaceResult) -> None:
        self._results.append(result)

    def record_failure(self, label: Optional[str], failure: TriggerFailed) -> None:
        self._failures.append((label, failure))

    @property
    def results(self) -> Tuple[RaceResult, ...]:
        return tuple(self._results)

    @property
    def failures(self) -> Tuple[Tuple[Optional[str], TriggerFailed], ...]:
        return tuple(self._failures)

    def __len__(self) -> int:
        return len(self._results)

    def summarize(self, compare: Optional[Sequence[Tuple[str, str]]] = None,
                  groups: Optional[Mapping[str, Sequence[str]]] = None) -> SummaryStatistics:
        return summarize(self._results, compare=compare, groups=groups)
