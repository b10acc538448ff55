"""
Console rendering of benchmark results
벤치마크 결과 콘솔 출력
"""

import sys
from typing import Optional, TextIO

from rtabench.benchmark import BenchmarkReport
from rtabench.models import AggregationSkipped, Improvement, ObservationStatus, StrategySummary

COLORS = {
    'red': '\x1b[31m',
    'green': '\x1b[32m',
    'yellow': '\x1b[33m',
    'blue': '\x1b[34m',
    'cyan': '\x1b[36m',
    'reset': '\x1b[0m'
}

# 빠른 전략은 green, 느린 전략은 yellow
STRATEGY_COLORS = {
    'pending-poll': 'green',
    'realtime-subscription': 'green',
    'latest-poll': 'yellow',
    'newheads-subscription': 'yellow',
    'receipt-poll': 'cyan',
}


def format_ms(value) -> str:
    if value is None or isinstance(value, AggregationSkipped):
        return "n/a"
    return f"{value:.0f}ms"


class BenchmarkReporter:
    """BenchmarkReport 콘솔 출력기"""

    def __init__(self, stream: Optional[TextIO] = None, color: bool = True):
        self.stream = stream or sys.stdout
        self.color = color

    def _paint(self, text: str, color: Optional[str]) -> str:
        if not self.color or color is None:
            return text
        return f"{COLORS[color]}{text}{COLORS['reset']}"

    def _line(self, text: str = "", color: Optional[str] = None) -> None:
        self.stream.write(self._paint(text, color) + "\n")

    def render(self, report: BenchmarkReport) -> None:
        self._line()
        self._line("================ BENCHMARK RESULTS ================", 'blue')

        state = report.initial_state
        if state is not None:
            self._line(f"✓ Initial balance: {state.balance_ether:.6f} ETH (nonce: {state.nonce}) "
                       f"for {state.address}", 'green')

        self.render_trials(report)
        self.render_strategies(report)
        self.render_comparisons(report)

        self._line()
        self._line("WEBSOCKET SUBSCRIPTION MESSAGES:", 'cyan')
        self._line(f"Realtime messages received: {report.message_counts.get('realtime', 0)}")
        self._line(f"NewHeads messages received: {report.message_counts.get('newHeads', 0)}")

        if report.errors:
            self._line()
            self._line("ERRORS:", 'red')
            for error in report.errors:
                self._line(f"  {error}", 'red')

    def render_trials(self, report: BenchmarkReport) -> None:
        self._line()
        self._line("PER-TRIAL RESULTS:", 'cyan')
        for result in report.results:
            label = result.label or f"TX{result.trial_id}"
            for name, observation in result.observations.items():
                prefix = f"{label} {name.upper()}"
                if observation.status is ObservationStatus.SUCCESS:
                    self._line(f"{prefix}: {observation.elapsed_ms:.0f}ms",
                               STRATEGY_COLORS.get(name, 'green'))
                elif observation.status is ObservationStatus.TIMEOUT:
                    self._line(f"{prefix}: timed out after {observation.elapsed_ms:.0f}ms", 'yellow')
                else:
                    self._line(f"{prefix}: errored ({observation.error})", 'red')

        for label, failure in report.run.failures:
            self._line(f"{label}: transaction failed ({failure.cause})", 'red')

    def render_strategies(self, report: BenchmarkReport) -> None:
        self._line()
        self._line("AVERAGES:", 'cyan')
        for name, summary in report.summary.strategies.items():
            self._line(self._strategy_line(name, summary), STRATEGY_COLORS.get(name))
        for group, mean in report.summary.groups.items():
            self._line(f"{group} (all strategies): {format_ms(mean)}")

    @staticmethod
    def _strategy_line(name: str, summary: StrategySummary) -> str:
        counts = f"{summary.successes}/{summary.attempts} ok"
        if summary.timeouts:
            counts += f", {summary.timeouts} timed out"
        if summary.errors:
            counts += f", {summary.errors} errored"
        if not summary.has_data:
            return f"{name}: no data ({counts})"
        return (f"{name}: avg {format_ms(summary.mean_ms)}, median {format_ms(summary.median_ms)}, "
                f"min {format_ms(summary.min_ms)}, max {format_ms(summary.max_ms)} ({counts})")

    def render_comparisons(self, report: BenchmarkReport) -> None:
        for improvement in report.summary.comparisons:
            self._line()
            for line in self.comparison_lines(improvement):
                self._line(line, 'green' if improvement.has_data else 'yellow')

    @staticmethod
    def comparison_lines(improvement: Improvement):
        head = (f"⚡ {improvement.faster} {format_ms(improvement.faster_mean_ms)} vs "
                f"{improvement.slower} {format_ms(improvement.slower_mean_ms)}")
        if not improvement.has_data:
            return [head, "⚡ IMPROVEMENT: n/a (not enough successful observations)"]
        percent = "n/a" if improvement.percent is None else f"{improvement.percent:.1f}%"
        return [head, f"⚡ IMPROVEMENT: {improvement.delta_ms:.0f}ms faster ({percent} improvement)"]
