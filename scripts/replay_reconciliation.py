"""Re-run entitlement steps for payments whose fulfillment failed.

Usage:
    python scripts/replay_reconciliation.py --list
    python scripts/replay_reconciliation.py --payment <payment_id>
    python scripts/replay_reconciliation.py --all-failed
"""

import argparse
import asyncio
import sys
from pathlib import Path

_root = str(Path(__file__).resolve().parent.parent)
sys.path.insert(0, _root)

from dotenv import load_dotenv  # noqa: E402
load_dotenv(Path(_root) / ".env")

from loguru import logger  # noqa: E402
from sqlalchemy import select  # noqa: E402

from billing.payments import FULFILLMENT_FAILED, STATUS_COMPLETED  # noqa: E402
from billing.reconciler import replay  # noqa: E402
from database import async_session  # noqa: E402
from database.models import Payment  # noqa: E402


async def _failed_payment_ids(session) -> list[tuple[str, str, str | None]]:
    result = await session.execute(
        select(Payment.id, Payment.external_transaction_id, Payment.fulfillment_error)
        .where(
            Payment.status == STATUS_COMPLETED,
            Payment.fulfillment_status == FULFILLMENT_FAILED,
        )
        .order_by(Payment.created_at)
    )
    return [tuple(row) for row in result.all()]


async def main(args) -> int:
    async with async_session() as session:
        if args.list:
            rows = await _failed_payment_ids(session)
            for payment_id, txn_id, error in rows:
                logger.info("{} txn={} error={}", payment_id, txn_id, error)
            logger.info("{} payment(s) awaiting replay", len(rows))
            return 0

        if args.payment:
            targets = [args.payment]
        else:
            targets = [row[0] for row in await _failed_payment_ids(session)]

        failures = 0
        for payment_id in targets:
            result = await replay(session, payment_id)
            if result.ok:
                logger.info(
                    "payment={} replayed: grants={} duplicate={}",
                    payment_id, len(result.entitlements_granted), result.duplicate,
                )
            else:
                failures += 1
                logger.error("payment={} still failing", payment_id)
        logger.info("replayed {} payment(s), {} still failing", len(targets), failures)
        return 1 if failures else 0


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Replay failed payment fulfillment")
    group = parser.add_mutually_exclusive_group(required=True)
    group.add_argument("--list", action="store_true", help="list payments awaiting replay")
    group.add_argument("--payment", help="replay one payment id")
    group.add_argument("--all-failed", action="store_true", help="replay every failed fulfillment")
    sys.exit(asyncio.run(main(parser.parse_args())))
