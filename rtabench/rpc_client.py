"""
JSON-RPC client over aiohttp
상태 조회용 JSON-RPC 클라이언트 (nonce, balance, receipt)
"""

import asyncio
import random
from typing import Any, Dict, List, Optional

import aiohttp

from rtabench.errors import RpcError
from rtabench.logger import setup_logger

logger = setup_logger(__name__)


class JsonRpcClient:
    """HTTP JSON-RPC 2.0 클라이언트"""

    def __init__(self, endpoint: str, timeout_sec: float = 10.0,
                 session: Optional[aiohttp.ClientSession] = None):
        self.endpoint = endpoint
        self.timeout_sec = timeout_sec
        self._session = session
        self._owns_session = session is None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout_sec)
            )
            self._owns_session = True
        return self._session

    async def call(self, method: str, params: List[Any]) -> Any:
        """RPC 호출 후 result 반환"""
        payload = {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": random.randint(0, 9999)
        }
        session = await self._get_session()

        try:
            async with session.post(self.endpoint, json=payload) as response:
                if response.status != 200:
                    raise RpcError(method, f"HTTP {response.status}")
                body = await response.json(content_type=None)
        except RpcError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as e:
            logger.debug(f"{method} 호출 실패: {e}")
            raise RpcError(method, str(e) or type(e).__name__) from e

        if not isinstance(body, dict):
            raise RpcError(method, f"unexpected response: {body!r}")
        if body.get('error'):
            error = body['error']
            if isinstance(error, dict):
                raise RpcError(method, error.get('message', 'unknown error'), error.get('code'))
            raise RpcError(method, str(error))
        if 'result' not in body:
            raise RpcError(method, "response has no result")
        return body['result']

    @staticmethod
    def _to_quantity(method: str, result: Any) -> int:
        """hex quantity 응답을 int로 변환"""
        try:
            return int(result, 16)
        except (TypeError, ValueError) as e:
            raise RpcError(method, f"invalid quantity: {result!r}") from e

    async def get_transaction_count(self, address: str, tag: str = 'pending') -> int:
        result = await self.call("eth_getTransactionCount", [address, tag])
        return self._to_quantity("eth_getTransactionCount", result)

    async def get_balance(self, address: str, tag: str = 'pending') -> int:
        """잔액 (wei)"""
        result = await self.call("eth_getBalance", [address, tag])
        return self._to_quantity("eth_getBalance", result)

    async def get_transaction_receipt(self, tx_hash: str, tag: Optional[str] = None) -> Optional[Dict]:
        """receipt 조회, 아직 없으면 None"""
        params: List[Any] = [tx_hash] if tag is None else [tx_hash, tag]
        return await self.call("eth_getTransactionReceipt", params)

    async def close(self) -> None:
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()

    async def __aenter__(self) -> 'JsonRpcClient':
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
