from typing import Callable, Dict, Optional

import structlog

from .config import DEFAULT_CONFIG
from .errors import is_transient
from .models import DONE, FAILED, RETRY, Job
from .repository import config_number, mark_done, mark_failed_permanent, schedule_retry

logger = structlog.get_logger()


def backoff_seconds(attempts: int, base: float = 30, mode: str = "linear") -> float:
    """
    Delay before a failed job becomes due again.
    linear: base * attempts; exponential: base * 2^(attempts-1).
    Never decreases as attempts grow.
    """
    attempts = max(int(attempts), 1)
    if mode == "exponential":
        return base * (2 ** (attempts - 1))
    return base * attempts


def backoff_from_config(cfg: Dict[str, str], attempts: int) -> float:
    return backoff_seconds(
        attempts,
        base=config_number(cfg, "backoff_base"),
        mode=cfg.get("backoff_mode", DEFAULT_CONFIG["backoff_mode"]),
    )


def run_with_retry(
    conn,
    job: Job,
    handler: Callable[[Job], None],
    cfg: Optional[Dict[str, str]] = None,
) -> str:
    """Run one claimed job and record the outcome.

    The job arrives RUNNING with attempts already counted by the claim.
    Returns the status the job was moved to. Retries are never run here;
    a RETRY job is picked up again by a later claim.
    """
    cfg = cfg or dict(DEFAULT_CONFIG)
    log = logger.bind(job_id=job.id, job_type=job.type, attempt=job.attempts, max_attempts=job.max_attempts)
    log.info("job_started")

    try:
        handler(job)
    except Exception as e:
        message = str(e) or e.__class__.__name__

        if not is_transient(e):
            log.error("job_failed_permanent", error=message)
            mark_failed_permanent(conn, job.id, message)
            return FAILED

        if job.attempts >= job.max_attempts:
            log.error("job_attempts_exhausted", error=message)
            mark_failed_permanent(conn, job.id, message)
            return FAILED

        delay = backoff_from_config(cfg, job.attempts)
        log.warning("job_retry_scheduled", error=message, delay_seconds=delay)
        schedule_retry(conn, job.id, message, delay)
        return RETRY

    mark_done(conn, job.id)
    log.info("job_done")
    return DONE
