"""RQ jobs."""
import logging

logger = logging.getLogger(__name__)


def _run(sweep: str) -> dict:
    from apps.backend.config import get_settings
    from apps.backend.deps import build_services
    from apps.backend.services.sweeps import run_guarded_sweep, sweep_callable

    s = get_settings()
    services = build_services(s)
    try:
        fn = sweep_callable(sweep, services.messaging, services.reminders)
        result = run_guarded_sweep(sweep, fn, settings=s)
    finally:
        services.registry.close()
    logger.info("worker_sweep_done sweep=%s result=%s", sweep, result)
    return result


def process_scheduled_messages_job() -> dict:
    return _run("scheduled-messages")


def retry_failed_messages_job() -> dict:
    return _run("retry-messages")


def process_due_reminders_job() -> dict:
    return _run("due-reminders")


def retry_failed_reminders_job() -> dict:
    return _run("retry-reminders")


def run_all_sweeps() -> dict:
    """Scheduled sends first so fresh failures are visible to the retry sweeps."""
    return {
        "scheduled-messages": process_scheduled_messages_job(),
        "due-reminders": process_due_reminders_job(),
        "retry-messages": retry_failed_messages_job(),
        "retry-reminders": retry_failed_reminders_job(),
    }


def enqueue_all_sweeps() -> list[str]:
    """Push every sweep onto the messaging queue; returns RQ job ids."""
    from redis import Redis
    from rq import Queue

    from apps.backend.config import get_settings

    s = get_settings()
    q = Queue(s.rq_messaging_queue_name or "messaging", connection=Redis(host=s.redis_host, port=s.redis_port))
    ids = []
    for name in (
        "process_scheduled_messages_job",
        "process_due_reminders_job",
        "retry_failed_messages_job",
        "retry_failed_reminders_job",
    ):
        job = q.enqueue(f"apps.worker.jobs.{name}", job_timeout=600)
        ids.append(job.id)
    return ids
