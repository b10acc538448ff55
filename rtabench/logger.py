import logging
import sys
import os
from datetime import datetime
from config.config import config

def setup_logger(name: str) -> logging.Logger:
    """로거 설정"""
    logger = logging.getLogger(name)
    logger.setLevel(getattr(logging, config.log_level.upper(), logging.INFO))

    # 핸들러가 이미 추가되었다면 그대로 반환
    if logger.handlers:
        return logger

    # 로그 디렉토리 생성
    os.makedirs(config.log_dir, exist_ok=True)

    # 콘솔 핸들러
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(logging.INFO)

    # 파일 핸들러 (일별)
    file_handler = logging.FileHandler(
        os.path.join(config.log_dir, f'rtabench_{datetime.now().strftime("%Y%m%d")}.log')
    )
    file_handler.setLevel(logging.DEBUG)

    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler.setFormatter(formatter)
    file_handler.setFormatter(formatter)

    logger.addHandler(console_handler)
    logger.addHandler(file_handler)

    return logger


def enable_debug(prefix: str = 'rtabench') -> None:
    """prefix로 시작하는 로거와 핸들러를 DEBUG로 전환"""
    for name, logger in logging.Logger.manager.loggerDict.items():
        if name.startswith(prefix) and isinstance(logger, logging.Logger):
            logger.setLevel(logging.DEBUG)
            for handler in logger.handlers:
                handler.setLevel(logging.DEBUG)
