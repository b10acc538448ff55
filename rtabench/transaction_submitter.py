import asyncio
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Optional, Union

from web3 import Web3
from eth_account import Account

from config.config import Config
from rtabench.errors import SubmissionError
from rtabench.logger import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class Submission:
    """전송된 트랜잭션 정보"""
    submission_id: str      # tx hash
    sender_address: str
    to: str
    value_wei: int
    nonce: int


def ether_to_wei(amount_ether: Union[float, str, Decimal]) -> int:
    return int(Web3.to_wei(Decimal(str(amount_ether)), 'ether'))


class TransactionSubmitter:
    """테스트 송금 트랜잭션 전송기 (legacy gas price)"""

    def __init__(self, cfg: Config, w3: Optional[Web3] = None):
        self.config = cfg
        self.w3 = w3 or Web3(Web3.HTTPProvider(
            cfg.rta_endpoint, request_kwargs={'timeout': cfg.rpc_timeout_sec}
        ))

        # 지갑 설정
        if cfg.private_key:
            self.account = Account.from_key(cfg.private_key)
            logger.info(f"테스트 지갑 로드 완료: {self.account.address}")
        else:
            self.account = None
            logger.warning("Private key가 설정되지 않았습니다. 트랜잭션을 보낼 수 없습니다.")

    @property
    def sender_address(self) -> Optional[str]:
        if self.account is not None:
            return self.account.address
        return self.config.public_key or None

    def build_transfer(self, to: str, amount_wei: int, nonce: int, chain_id: int) -> Dict:
        return {
            'to': Web3.to_checksum_address(to),
            'value': amount_wei,
            'nonce': nonce,
            'gas': self.config.gas_limit,
            'gasPrice': Web3.to_wei(Decimal(str(self.config.gas_price_gwei)), 'gwei'),
            'chainId': chain_id
        }

    def _submit_sync(self, to: str, amount_wei: int) -> Submission:
        if self.account is None:
            raise SubmissionError("PRIVATE_KEY가 설정되지 않았습니다")

        try:
            nonce = self.w3.eth.get_transaction_count(self.account.address, 'pending')
            chain_id = self.w3.eth.chain_id
            tx = self.build_transfer(to, amount_wei, nonce, chain_id)
            signed_tx = self.account.sign_transaction(tx)
            tx_hash = self.w3.eth.send_raw_transaction(signed_tx.raw_transaction)
        except Exception as e:
            raise SubmissionError(f"송금 실패: {e}") from e

        submission = Submission(
            submission_id=Web3.to_hex(tx_hash),
            sender_address=self.account.address,
            to=tx['to'],
            value_wei=amount_wei,
            nonce=nonce
        )
        logger.info(f"트랜잭션 전송: {submission.submission_id} (nonce {nonce})")
        return submission

    async def submit(self, to: str, amount_wei: int) -> Submission:
        """송금 전송 후 tx hash 반환 (web3 호출은 executor에서 실행)"""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._submit_sync, to, amount_wei)
