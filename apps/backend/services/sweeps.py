"""Cron-triggered sweeps guarded by a Redis lock."""
from __future__ import annotations

import logging
import uuid
from typing import Callable

from redis import Redis
from sqlalchemy.orm import Session

from apps.backend.config import Settings, get_settings
from apps.backend.database import get_session_factory
from apps.backend.services.messaging import MessagingService
from apps.backend.services.reminders import ReminderService

logger = logging.getLogger(__name__)

SWEEP_NAMES = ("scheduled-messages", "retry-messages", "due-reminders", "retry-reminders")

_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
end
return 0
"""


def _lock_key(name: str) -> str:
    return f"messaging_sweep:{name}:lock"


def _close(r, owned: bool) -> None:
    if r is not None and owned:
        try:
            r.close()
        except Exception:
            logger.exception("sweep_redis_close_failed")


def sweep_callable(name: str, messaging: MessagingService, reminders: ReminderService) -> Callable[[Session], dict]:
    table = {
        "scheduled-messages": messaging.process_scheduled_messages,
        "retry-messages": messaging.retry_failed_messages,
        "due-reminders": reminders.process_due_reminders,
        "retry-reminders": reminders.retry_failed_reminders,
    }
    if name not in table:
        raise KeyError(name)
    return table[name]


def run_guarded_sweep(
    name: str,
    fn: Callable[[Session], dict],
    settings: Settings | None = None,
    session_factory=None,
    redis_client: Redis | None = None,
    db: Session | None = None,
) -> dict:
    """Single sweep under a Redis SET NX lock; row claims still hold if Redis is down."""
    s = settings or get_settings()
    key = _lock_key(name)
    token = uuid.uuid4().hex
    owned = redis_client is None
    r = None
    try:
        r = redis_client or Redis(host=s.redis_host, port=s.redis_port, socket_connect_timeout=2)
        if not r.set(key, token, nx=True, ex=max(30, int(s.sweep_lock_ttl_seconds))):
            _close(r, owned)
            return {"skipped": "lock_not_acquired"}
    except Exception:
        logger.exception("sweep_lock_unavailable sweep=%s", name)
        _close(r, owned)
        r = None
    try:
        if db is not None:
            return fn(db)
        factory = session_factory or get_session_factory()
        with factory() as sess:
            return fn(sess)
    except Exception:
        logger.exception("sweep_failed sweep=%s", name)
        return {"error": "sweep_failed"}
    finally:
        if r is not None:
            try:
                # A lock that outlived its TTL may belong to another run now.
                if not r.eval(_RELEASE_SCRIPT, 1, key, token):
                    logger.warning("sweep_lock_expired sweep=%s", name)
            except Exception:
                logger.exception("sweep_lock_release_failed sweep=%s", name)
            _close(r, owned)
