"""
Error taxonomy for the latency benchmark
벤치마크 에러 분류

Only TriggerFailed escapes a trial. Observer-level failures are converted
into Observation data by the harness.
"""

from typing import Any, Optional


class BenchmarkError(Exception):
    """벤치마크 기본 예외"""


class RpcError(BenchmarkError):
    """JSON-RPC 호출 실패 (전송 오류, HTTP 오류, RPC error 응답)"""

    def __init__(self, method: str, message: str, code: Optional[int] = None):
        self.method = method
        self.code = code
        detail = f"{method}: {message}"
        if code is not None:
            detail += f" (code {code})"
        super().__init__(detail)


class SubmissionError(BenchmarkError):
    """트랜잭션 전송 실패"""


class SubscriptionError(BenchmarkError):
    """WebSocket 구독 실패 (ack 미수신, error 응답, 연결 없음)"""


class TriggerFailed(BenchmarkError):
    """
    상태 변경 액션 자체가 실패함 - trial 전체 중단
    No observer runs; ``result`` is the empty RaceResult of the aborted trial.
    """

    def __init__(self, cause: BaseException, result: Any = None):
        self.cause = cause
        self.result = result
        super().__init__(f"trigger failed: {cause}")


class ObserverError(BenchmarkError):
    """개별 조회 시도 실패 (일시적, 다음 주기에 재시도)"""

    def __init__(self, strategy: str, cause: BaseException):
        self.strategy = strategy
        self.cause = cause
        super().__init__(f"{strategy}: {cause}")


class ObserverTimeout(BenchmarkError):
    """deadline까지 변화 미감지"""

    def __init__(self, strategy: str, timeout_ms: int):
        self.strategy = strategy
        self.timeout_ms = timeout_ms
        super().__init__(f"{strategy}: no change within {timeout_ms}ms")
