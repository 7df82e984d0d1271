"""
auth/maintenance.py -- Retention pruning for durable auth records.

Run periodically by the API lifespan task and on demand by `python main.py
prune`. Every step is an independent bounded DELETE; a failure in one step
is logged and the remaining steps still run.

Layer rule: no imports from api/.
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import SQLAlchemyError

from auth.rate_limit import RateLimiter
from auth.reset import PasswordResetWorkflow
from auth.sessions import SessionManager

logger = logging.getLogger("sessionguard.auth.maintenance")


def prune_expired_records(
    sessions: SessionManager,
    rate_limiter: RateLimiter,
    reset: PasswordResetWorkflow,
) -> dict[str, int]:
    """Delete expired sessions, aged-out log rows and spent reset tokens.

    Returns a per-table count of deleted rows. A table whose step failed is
    reported as -1.
    """
    counts: dict[str, int] = {}
    try:
        counts["sessions"] = sessions.prune_expired()
    except SQLAlchemyError:
        logger.exception("Pruning expired sessions failed")
        counts["sessions"] = -1
    try:
        counts.update(rate_limiter.prune())
    except SQLAlchemyError:
        logger.exception("Pruning attempt and request logs failed")
        counts["login_attempts"] = counts["reset_requests"] = -1
    try:
        counts["reset_tokens"] = reset.prune()
    except SQLAlchemyError:
        logger.exception("Pruning spent reset tokens failed")
        counts["reset_tokens"] = -1
    logger.info(
        "Pruned sessions=%d login_attempts=%d reset_requests=%d reset_tokens=%d",
        counts["sessions"],
        counts["login_attempts"],
        counts["reset_requests"],
        counts["reset_tokens"],
    )
    return counts
