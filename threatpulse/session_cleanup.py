"""
Delete expired session rows. Meant for cron:

  python -m threatpulse.session_cleanup

Hourly: 0 * * * * cd /path/to/threatpulse && .venv/bin/threatpulse-session-cleanup
"""

import logging
import sys

from sqlalchemy.exc import SQLAlchemyError

from threatpulse.core.database import session_scope
from threatpulse.services.accounts import purge_expired_sessions

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%SZ",
)
logger = logging.getLogger(__name__)


def main() -> int:
    """Returns the process exit code: 0 on success, 1 if the database failed."""
    try:
        with session_scope() as db:
            deleted = purge_expired_sessions(db)
    except SQLAlchemyError:
        logger.exception("Session cleanup failed")
        return 1
    logger.info("Session cleanup completed", extra={"sessions_deleted": deleted})
    return 0


if __name__ == "__main__":
    sys.exit(main())
