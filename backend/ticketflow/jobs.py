#!/usr/bin/env python3
"""
Maintenance jobs for an external scheduler (cron, Kubernetes CronJob).

    python -m ticketflow.jobs expire-orders   # cancel orders past their hold
    python -m ticketflow.jobs purge           # drop expired tokens and sessions
"""

import asyncio
import sys

from ticketflow.api.deps import get_token_issuer
from ticketflow.core.config import get_settings
from ticketflow.core.logging import get_logger, setup_logging
from ticketflow.db.session import SessionLocal
from ticketflow.services.auth_service import SessionManager
from ticketflow.services.email_service import AuthMailer, build_email_sender
from ticketflow.services.gateway_factory import get_gateway
from ticketflow.services.order_ledger import OrderLedger
from ticketflow.services.payment_service import PaymentOrchestrator
from ticketflow.services.recovery_service import CredentialRecovery
from ticketflow.services.session_store import SessionMirror, close_redis, get_redis

logger = get_logger(__name__)


async def expire_stale_orders() -> int:
    settings = get_settings()
    async with SessionLocal() as db:
        ledger = OrderLedger(db, settings=settings)
        payments = PaymentOrchestrator(db, ledger=ledger, gateway=get_gateway())
        return await payments.expire_stale_orders()


async def purge_expired_records() -> dict[str, int]:
    settings = get_settings()
    mailer = AuthMailer(build_email_sender(settings), settings)
    async with SessionLocal() as db:
        sessions = SessionManager(
            db,
            mirror=SessionMirror(await get_redis(), settings.SESSION_KEY_PREFIX),
            issuer=get_token_issuer(),
            mailer=mailer,
            settings=settings,
        )
        recovery = CredentialRecovery(db, sessions=sessions, mailer=mailer, settings=settings)
        return await recovery.purge_expired()


JOBS = {
    "expire-orders": expire_stale_orders,
    "purge": purge_expired_records,
}


async def main(job_name: str) -> None:
    setup_logging()
    try:
        result = await JOBS[job_name]()
        logger.info("job_completed", job=job_name, result=result)
    finally:
        await close_redis()


if __name__ == "__main__":
    if len(sys.argv) != 2 or sys.argv[1] not in JOBS:
        print(f"usage: python -m ticketflow.jobs {{{','.join(JOBS)}}}")
        sys.exit(2)
    asyncio.run(main(sys.argv[1]))
