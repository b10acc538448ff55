import os
from dataclasses import dataclass
from typing import List
from dotenv import load_dotenv

load_dotenv()

@dataclass
class Config:
    # RPC 설정 (X Layer testnet RTA)
    rta_endpoint: str = os.getenv('RTA_ENDPOINT', 'https://testrpc.xlayer.tech/terigon-rta')
    ws_endpoint: str = os.getenv('WS_ENDPOINT', 'wss://testws.xlayer.tech/unlimited/abc')
    rpc_timeout_sec: float = float(os.getenv('RPC_TIMEOUT_SEC', '10'))

    # 테스트 지갑
    public_key: str = os.getenv('PUBLIC_KEY', '')
    private_key: str = os.getenv('PRIVATE_KEY', '')
    test_recipient: str = os.getenv('TEST_RECIPIENT', '')

    # 거래 설정
    transfer_amount_ether: float = float(os.getenv('TRANSFER_AMOUNT_ETHER', '0.001'))
    gas_limit: int = int(os.getenv('GAS_LIMIT', '21000'))
    gas_price_gwei: float = float(os.getenv('GAS_PRICE_GWEI', '100'))

    # 폴링 / 타임아웃 (ms)
    poll_interval_ms: int = int(os.getenv('POLL_INTERVAL_MS', '100'))
    polling_timeout_ms: int = int(os.getenv('POLLING_TIMEOUT_MS', '30000'))
    subscription_timeout_ms: int = int(os.getenv('SUBSCRIPTION_TIMEOUT_MS', '8000'))
    inter_trial_delay_ms: int = int(os.getenv('INTER_TRIAL_DELAY_MS', '3000'))
    subscription_settle_ms: int = int(os.getenv('SUBSCRIPTION_SETTLE_MS', '2000'))
    subscription_ack_timeout_ms: int = int(os.getenv('SUBSCRIPTION_ACK_TIMEOUT_MS', '5000'))

    # 벤치마크 구성
    polling_trials: int = int(os.getenv('POLLING_TRIALS', '2'))
    subscription_trials: int = int(os.getenv('SUBSCRIPTION_TRIALS', '2'))

    # 모니터링
    log_level: str = os.getenv('LOG_LEVEL', 'INFO')
    log_dir: str = os.getenv('LOG_DIR', 'logs')

    def missing_fields(self) -> List[str]:
        """트랜잭션 전송에 필요한 값 중 비어 있는 항목"""
        required = {
            'RTA_ENDPOINT': self.rta_endpoint,
            'PRIVATE_KEY': self.private_key,
            'TEST_RECIPIENT': self.test_recipient,
        }
        return [name for name, value in required.items() if not value]

    def invalid_fields(self) -> List[str]:
        """양수여야 하는 시간/가스 항목 중 0 이하인 항목"""
        positive = {
            'GAS_LIMIT': self.gas_limit,
            'POLL_INTERVAL_MS': self.poll_interval_ms,
            'POLLING_TIMEOUT_MS': self.polling_timeout_ms,
            'SUBSCRIPTION_TIMEOUT_MS': self.subscription_timeout_ms,
            'SUBSCRIPTION_ACK_TIMEOUT_MS': self.subscription_ack_timeout_ms,
            'RPC_TIMEOUT_SEC': self.rpc_timeout_sec,
        }
        invalid = [name for name, value in positive.items() if value <= 0]
        # 0은 해당 단계 생략
        if self.polling_trials < 0:
            invalid.append('POLLING_TRIALS')
        if self.subscription_trials < 0:
            invalid.append('SUBSCRIPTION_TRIALS')
        return invalid

    def validate(self) -> bool:
        """설정 유효성 검사"""
        return not self.missing_fields() and not self.invalid_fields()

# 전역 설정 인스턴스
config = Config()
