# expire_sessions.py
# Usage: python scripts/expire_sessions.py
# Meant for cron: expires stale signature sessions and removes unused,
# expired pairing codes for every company.

from sqlmodel import Session

from carslab_crm.core.logging_setup import logger
from carslab_crm.db.session import engine
from carslab_crm.services.signature import SignatureService
from carslab_crm.services.tablet import TabletPairingService


def main() -> int:
    with Session(engine) as session:
        expired = SignatureService(session).expire_stale_sessions()
        removed = TabletPairingService(session).cleanup_expired_codes()
    logger.info("Maintenance finished: %s sessions expired, %s pairing codes removed", expired, removed)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
