"""
구독 지급 만료 스윕

cron/스케줄러에서 주기적으로 실행합니다. 반복/동시 실행에 안전합니다.

    python scripts/expire_grants.py [--now 2024-07-01T00:00:00+00:00] [--batch-size 500]
"""

import argparse
import logging
import os
import sys
from datetime import datetime

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from creditsync.config import settings  # noqa: E402
from creditsync.database.session import session_scope  # noqa: E402
from creditsync.logging_config import setup_logging  # noqa: E402
from creditsync.services.credit_ledger_service import CreditLedgerService  # noqa: E402
from creditsync.utils.timezone_utils import ensure_utc  # noqa: E402

logger = logging.getLogger("creditsync.scripts.expire_grants")


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description="Expire subscription credit grants")
    parser.add_argument("--now", type=datetime.fromisoformat, default=None)
    parser.add_argument("--batch-size", type=int, default=settings.EXPIRY_SWEEP_BATCH_SIZE)
    return parser.parse_args(argv)


def run(argv=None) -> int:
    args = parse_args(argv)
    with session_scope() as db:
        result = CreditLedgerService(db).expire_grants(
            now=ensure_utc(args.now), batch_size=args.batch_size
        )
    logger.info(f"Expiry sweep result: {result.model_dump()}")
    return 1 if result.failed_users else 0


if __name__ == "__main__":
    setup_logging(settings.LOG_LEVEL)
    sys.exit(run())
