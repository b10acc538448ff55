#!/usr/bin/env python3
"""
RTA Benchmark Runner
RPC polling vs WebSocket subscription 벤치마크 실행 스크립트
"""

import asyncio
import argparse
import dataclasses
import sys

from config.config import config
from rtabench.benchmark import RtaBenchmark
from rtabench.logger import enable_debug, setup_logger
from rtabench.reporting import BenchmarkReporter

logger = setup_logger(__name__)


def positive_int(value: str) -> int:
    """argparse type: 1 이상의 정수"""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"정수가 아닙니다: {value!r}")
    if number <= 0:
        raise argparse.ArgumentTypeError(f"양수여야 합니다: {number}")
    return number


def non_negative_int(value: str) -> int:
    """argparse type: 0 이상의 정수"""
    try:
        number = int(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"정수가 아닙니다: {value!r}")
    if number < 0:
        raise argparse.ArgumentTypeError(f"0 이상이어야 합니다: {number}")
    return number


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description='OKX X Layer RTA Benchmark: RPC Polling vs WebSocket Subscriptions')
    parser.add_argument('--polling-trials', type=non_negative_int, default=None, help='폴링 테스트 트랜잭션 수')
    parser.add_argument('--subscription-trials', type=non_negative_int, default=None, help='구독 테스트 트랜잭션 수')
    parser.add_argument('--amount-ether', type=float, default=None, help='트랜잭션당 송금액 (ETH)')
    parser.add_argument('--poll-interval-ms', type=positive_int, default=None, help='폴링 주기 (ms)')
    parser.add_argument('--timeout-ms', type=positive_int, default=None, help='폴링 trial 제한 시간 (ms)')
    parser.add_argument('--subscription-timeout-ms', type=positive_int, default=None, help='구독 trial 제한 시간 (ms)')
    parser.add_argument('--skip-subscriptions', action='store_true', help='WebSocket 구독 단계 건너뛰기')
    parser.add_argument('--no-color', action='store_true', help='색상 출력 비활성화')
    parser.add_argument('--verbose', action='store_true', help='DEBUG 로그 출력')
    return parser


def apply_overrides(args: argparse.Namespace):
    """CLI 인자로 설정 덮어쓰기 (전역 설정은 변경하지 않음)"""
    overrides = {
        'polling_trials': args.polling_trials,
        'subscription_trials': args.subscription_trials,
        'transfer_amount_ether': args.amount_ether,
        'poll_interval_ms': args.poll_interval_ms,
        'polling_timeout_ms': args.timeout_ms,
        'subscription_timeout_ms': args.subscription_timeout_ms,
    }
    return dataclasses.replace(config, **{k: v for k, v in overrides.items() if v is not None})


async def main(argv=None) -> int:
    """메인 실행 함수"""
    args = build_parser().parse_args(argv)
    if args.verbose:
        enable_debug()

    cfg = apply_overrides(args)
    missing = cfg.missing_fields()
    if missing:
        logger.error(f"필수 환경 변수가 설정되지 않았습니다: {', '.join(missing)}")
        return 2
    invalid = cfg.invalid_fields()
    if invalid:
        logger.error(f"잘못된 설정 값 (양수 필요): {', '.join(invalid)}")
        return 2

    logger.info("=== OKX X LAYER RTA BENCHMARK: RPC Polling vs WebSocket Subscriptions ===")
    benchmark = RtaBenchmark(cfg)
    report = await benchmark.execute(include_subscriptions=not args.skip_subscriptions)
    BenchmarkReporter(color=not args.no_color).render(report)
    return 0


def cli() -> None:
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("프로그램 종료")
        sys.exit(130)


if __name__ == "__main__":
    cli()
