#!/usr/bin/env python3
"""
WebSocket Subscription Manager
공유 WebSocket 연결 위의 eth_subscribe 구독 관리

- 연결은 1회 열고 1회 닫음 (벤치마크 전체에서 공유)
- subscribe: 요청 전송 -> ack(subscription id) 대기 -> dispatch 테이블 등록
  ack 처리는 reader에서 동기적으로 이루어지므로 ack 직후 도착한 알림도 유실되지 않음
- 알림은 handle.messages에 수신 시각과 함께 기록 (최근 message_log_limit건)
"""

import asyncio
import itertools
import json
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import websockets

from rtabench.clock import MonotonicClock
from rtabench.errors import SubscriptionError
from rtabench.logger import setup_logger

logger = setup_logger(__name__)

REALTIME_PARAMS = {
    "NewHeads": False,
    "TransactionExtraInfo": True,
    "TransactionReceipt": True,
    "TransactionInnerTxs": False
}

Listener = Callable[[Any, float], None]

DEFAULT_MESSAGE_LOG_LIMIT = 1000


@dataclass
class SubscriptionHandle:
    """활성 구독 정보"""
    kind: str
    request_id: int
    subscription_id: str
    # 최근 알림만 보관, 전체 수신 수는 received로 집계
    messages: Deque[Tuple[Any, float]] = field(
        default_factory=lambda: deque(maxlen=DEFAULT_MESSAGE_LOG_LIMIT)
    )
    received: int = 0
    active: bool = True

    def record(self, result: Any, received_ms: float) -> None:
        self.messages.append((result, received_ms))
        self.received += 1

    @property
    def message_count(self) -> int:
        return self.received


class SubscriptionManager:
    """WebSocket 구독 관리자"""

    def __init__(self, ws_endpoint: str, ack_timeout_ms: int = 5000, clock=None,
                 message_log_limit: int = DEFAULT_MESSAGE_LOG_LIMIT):
        self.ws_endpoint = ws_endpoint
        self.ack_timeout_ms = ack_timeout_ms
        self.message_log_limit = message_log_limit
        self.clock = clock or MonotonicClock()

        self._ws = None
        self._reader_task: Optional[asyncio.Task] = None
        self._connected = False

        # request id -> (ack future, 구독 종류 또는 None)
        self._pending: Dict[int, Tuple[asyncio.Future, Optional[str]]] = {}
        # subscription id -> handle / listeners (dispatch 테이블)
        self._handles: Dict[str, SubscriptionHandle] = {}
        self._listeners: Dict[str, Dict[int, Listener]] = {}
        self._lock = asyncio.Lock()

        self._request_ids = itertools.count(1)
        self._tokens = itertools.count(1)

        self.stats = {
            'notifications': 0,
            'orphaned': 0,
            'parse_errors': 0,
            'callback_errors': 0
        }

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def handles(self) -> List[SubscriptionHandle]:
        return list(self._handles.values())

    async def connect(self) -> None:
        """WebSocket 연결 (1회)"""
        if self._connected:
            return
        try:
            self._ws = await websockets.connect(self.ws_endpoint, ping_interval=20, max_size=2**20)
        except Exception as e:
            raise SubscriptionError(f"WebSocket 연결 실패: {e}") from e

        self._connected = True
        self._reader_task = asyncio.create_task(self._read_loop())
        logger.info(f"✓ WebSocket 연결 완료: {self.ws_endpoint}")

    async def _read_loop(self) -> None:
        try:
            async for message in self._ws:
                self._handle_message(message)
        except websockets.exceptions.ConnectionClosed as e:
            logger.warning(f"WebSocket 연결 끊김: {e}")
        finally:
            self._connected = False
            for handle in self._handles.values():
                handle.active = False
            for future, _ in self._pending.values():
                if not future.done():
                    future.set_exception(SubscriptionError("WebSocket 연결이 종료되었습니다"))
            self._pending.clear()

    def _handle_message(self, message: Any) -> None:
        """수신 메시지 처리 (ack / 구독 알림)"""
        received_ms = self.clock.now_ms()
        try:
            data = json.loads(message)
        except (json.JSONDecodeError, TypeError) as e:
            self.stats['parse_errors'] += 1
            logger.error(f"메시지 파싱 오류: {e}")
            return

        if not isinstance(data, dict):
            self.stats['parse_errors'] += 1
            logger.error(f"알 수 없는 메시지 형식: {message!r}")
            return

        request_id = data.get('id')
        if request_id is not None and request_id in self._pending:
            self._handle_response(request_id, data)
            return

        params = data.get('params')
        if isinstance(params, dict) and 'subscription' in params:
            self._dispatch(params['subscription'], params.get('result'), received_ms)
            return

        logger.debug(f"처리되지 않은 메시지: {data}")

    def _handle_response(self, request_id: int, data: Dict) -> None:
        future, kind = self._pending.pop(request_id)
        if future.done():
            return

        if data.get('error'):
            error = data['error']
            message = error.get('message') if isinstance(error, dict) else str(error)
            future.set_exception(SubscriptionError(f"요청 {request_id} 거부: {message}"))
            return

        if kind is None:
            future.set_result(data.get('result'))
            return

        subscription_id = data.get('result')
        if not isinstance(subscription_id, str) or not subscription_id:
            future.set_exception(SubscriptionError(f"{kind} 구독 ack에 subscription id가 없습니다"))
            return

        handle = SubscriptionHandle(
            kind=kind,
            request_id=request_id,
            subscription_id=subscription_id,
            messages=deque(maxlen=self.message_log_limit)
        )
        self._handles[subscription_id] = handle
        self._listeners[subscription_id] = {}
        future.set_result(handle)

    def _dispatch(self, subscription_id: str, result: Any, received_ms: float) -> None:
        handle = self._handles.get(subscription_id)
        if handle is None:
            self.stats['orphaned'] += 1
            logger.warning(f"알 수 없는 구독 알림: {subscription_id}")
            return

        self.stats['notifications'] += 1
        handle.record(result, received_ms)
        for token, callback in list(self._listeners.get(subscription_id, {}).items()):
            try:
                callback(result, received_ms)
            except Exception as e:
                self.stats['callback_errors'] += 1
                logger.error(f"구독 콜백 오류 ({handle.kind}, listener {token}): {e}")

    async def _request(self, method: str, params: List[Any], kind: Optional[str]) -> Any:
        if not self._connected or self._ws is None:
            raise SubscriptionError("WebSocket이 연결되지 않았습니다")

        request_id = next(self._request_ids)
        future = asyncio.get_running_loop().create_future()
        self._pending[request_id] = (future, kind)
        try:
            await self._ws.send(json.dumps({
                "jsonrpc": "2.0",
                "method": method,
                "params": params,
                "id": request_id
            }))
            return await asyncio.wait_for(future, timeout=self.ack_timeout_ms / 1000.0)
        except asyncio.TimeoutError as e:
            raise SubscriptionError(f"{method} 응답 시간 초과 ({self.ack_timeout_ms}ms)") from e
        except SubscriptionError:
            raise
        except Exception as e:
            raise SubscriptionError(f"{method} 요청 실패: {e}") from e
        finally:
            self._pending.pop(request_id, None)

    async def subscribe(self, kind: str, params: Optional[Dict] = None) -> SubscriptionHandle:
        """구독 요청 후 ack를 받아야 반환 (실패 시 SubscriptionError)"""
        request_params: List[Any] = [kind] if params is None else [kind, params]
        handle = await self._request("eth_subscribe", request_params, kind)
        logger.info(f"✓ {kind} 구독 활성화: {handle.subscription_id}")
        return handle

    async def subscribe_realtime(self) -> SubscriptionHandle:
        return await self.subscribe("realtime", REALTIME_PARAMS)

    async def subscribe_new_heads(self) -> SubscriptionHandle:
        return await self.subscribe("newHeads", {})

    async def on_message(self, handle: SubscriptionHandle, callback: Listener) -> int:
        """알림 콜백 등록, 해제용 token 반환"""
        async with self._lock:
            listeners = self._listeners.get(handle.subscription_id)
            if listeners is None or not handle.active:
                raise SubscriptionError(f"{handle.kind} 구독이 활성 상태가 아닙니다")
            token = next(self._tokens)
            listeners[token] = callback
        return token

    async def remove_listener(self, handle: SubscriptionHandle, token: int) -> None:
        async with self._lock:
            self._listeners.get(handle.subscription_id, {}).pop(token, None)

    async def unsubscribe(self, handle: SubscriptionHandle) -> None:
        if not handle.active:
            return
        try:
            await self._request("eth_unsubscribe", [handle.subscription_id], None)
        except SubscriptionError as e:
            logger.warning(f"{handle.kind} 구독 해제 실패: {e}")
        async with self._lock:
            handle.active = False
            self._listeners.pop(handle.subscription_id, None)

    async def close(self) -> None:
        """연결 종료 (1회)"""
        if self._ws is None:
            return
        async with self._lock:
            for handle in self._handles.values():
                handle.active = False
            self._listeners.clear()

        try:
            await self._ws.close()
        except Exception as e:
            logger.error(f"WebSocket 연결 종료 오류: {e}")

        if self._reader_task is not None:
            if not self._reader_task.done():
                self._reader_task.cancel()
            try:
                await self._reader_task
            except asyncio.CancelledError:
                pass
        self._ws = None
        self._reader_task = None
        self._connected = False
        logger.info("WebSocket 연결 종료")
