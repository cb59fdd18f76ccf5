import signal
import sqlite3
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from typing import Callable, Dict, Optional

import structlog

from .db import connect_db
from .handlers import handle_job
from .models import Job
from .remote import RemoteOrderClient
from .repository import claim_due, config_int, config_number, get_config
from .runner import run_with_retry

logger = structlog.get_logger()


class ActiveJobs:
    """Count of jobs a worker has dispatched and not yet finished."""

    def __init__(self):
        self._count = 0
        self._cond = threading.Condition()

    @property
    def count(self) -> int:
        with self._cond:
            return self._count

    def add(self):
        with self._cond:
            self._count += 1

    def done(self):
        with self._cond:
            self._count -= 1
            self._cond.notify_all()

    @contextmanager
    def track(self):
        self.add()
        try:
            yield
        finally:
            self.done()

    def wait_for_drain(self, timeout: Optional[float] = None) -> bool:
        """Block until no job is in flight. False if the timeout ran out first."""
        with self._cond:
            return self._cond.wait_for(lambda: self._count == 0, timeout=timeout)


def setup_signal_handlers(stop: threading.Event):
    def _handler(signum, frame):
        logger.info("shutdown_signal_received", signal=signum)
        stop.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            signal.signal(sig, _handler)
        except ValueError:
            # not on the main thread
            logger.warning("signal_handler_not_installed", signal=sig)


class Worker:
    """Polls the job table and runs due jobs on a bounded thread pool.

    Each worker owns one SQLite connection for claiming; every dispatched
    job opens its own connection, since sqlite3 connections stay on the
    thread that created them.
    """

    def __init__(
        self,
        name: str,
        client: RemoteOrderClient,
        db_path: Optional[str] = None,
        stop: Optional[threading.Event] = None,
        handler: Callable = handle_job,
    ):
        self.name = name
        self.client = client
        self.db_path = db_path
        self.stop = stop or threading.Event()
        self.handler = handler
        self.active = ActiveJobs()
        self.log = logger.bind(worker=name)

    def process_job(self, job: Job, cfg: Dict[str, str]):
        """Run one claimed job. The caller has already counted it in `active`."""
        conn = None
        try:
            conn = connect_db(self.db_path)
            run_with_retry(conn, job, lambda j: self.handler(conn, self.client, j), cfg)
        except Exception:
            # Outcome could not be recorded; the row stays RUNNING
            self.log.exception("job_outcome_not_recorded", job_id=job.id)
        finally:
            if conn is not None:
                conn.close()
            self.active.done()

    def dispatch(self, pool: ThreadPoolExecutor, job: Job, cfg: Dict[str, str]):
        # Counted from submission, so jobs still queued in the pool hold off a drain
        self.active.add()
        try:
            pool.submit(self.process_job, job, cfg)
        except Exception:
            self.active.done()
            raise

    def run_once(self, conn: sqlite3.Connection, cfg: Optional[Dict[str, str]] = None) -> int:
        """Claim one batch of due jobs and run it to completion.

        Returns the number of jobs claimed.
        """
        cfg = cfg or get_config(conn)
        batch_size = config_int(cfg, "batch_size")
        concurrency = config_int(cfg, "concurrency")

        try:
            jobs = claim_due(conn, batch_size)
        except sqlite3.Error as e:
            self.log.error("claim_failed", error=str(e))
            return 0
        if not jobs:
            return 0

        self.log.info("jobs_claimed", count=len(jobs), ids=[j.id for j in jobs])
        with ThreadPoolExecutor(
            max_workers=min(concurrency, len(jobs)),
            thread_name_prefix=self.name,
        ) as pool:
            for job in jobs:
                self.dispatch(pool, job, cfg)
        return len(jobs)

    def run(self):
        conn = connect_db(self.db_path)
        self.log.info("worker_started")
        try:
            while not self.stop.is_set():
                poll_interval = 2.0
                try:
                    cfg = get_config(conn)
                    poll_interval = config_number(cfg, "poll_interval")
                    if self.run_once(conn, cfg) == 0:
                        self.stop.wait(poll_interval)
                except Exception as e:
                    self.log.error("worker_loop_error", error=str(e))
                    self.stop.wait(poll_interval)
        finally:
            conn.close()
            self.log.info("worker_stopped")

    def shutdown(self, timeout: Optional[float] = None) -> bool:
        self.stop.set()
        drained = self.active.wait_for_drain(timeout)
        if not drained:
            self.log.warning("worker_shutdown_timeout", active_jobs=self.active.count)
        return drained


def start_workers(count: int, client: RemoteOrderClient, db_path: Optional[str] = None):
    """Start `count` worker threads and block until they are stopped."""
    stop = threading.Event()
    setup_signal_handlers(stop)

    workers = [Worker(f"worker-{i+1}", client, db_path=db_path, stop=stop) for i in range(count)]
    threads = []
    for w in workers:
        t = threading.Thread(target=w.run, name=w.name, daemon=True)
        t.start()
        threads.append(t)

    try:
        while any(t.is_alive() for t in threads):
            time.sleep(0.5)
    finally:
        stop.set()
        for w in workers:
            w.shutdown()
        for t in threads:
            t.join()
        logger.info("all_workers_stopped")
