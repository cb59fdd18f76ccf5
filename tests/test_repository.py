import threading

import pytest

from orderctl.db import connect_db
from orderctl.models import (
    PENDING, RUNNING, RETRY, DONE, FAILED, SYNC_ORDER, INVOICE_ORDER, SHIP_ORDER,
    IMPORT_ORDERS, ImportJobPayload,
)
from orderctl.repository import (
    claim_due, counts, create_import_job, enqueue_job, failed_jobs, finish_import_job,
    get_config, get_job, list_jobs, mark_done, mark_failed_permanent, reenable_job,
    schedule_retry, set_config,
)


def _job_rows(conn, job_type=SYNC_ORDER):
    return conn.execute("SELECT * FROM jobs WHERE type=?", (job_type,)).fetchall()


def test_enqueue_creates_pending_job(conn):
    job_id = enqueue_job(conn, SYNC_ORDER, 7, max_attempts=3)

    job = get_job(conn, job_id)
    assert job.status == PENDING
    assert job.attempts == 0
    assert job.max_attempts == 3
    assert job.target_id == 7
    assert job.payload == {"order_id": 7}
    assert job.next_run_at is None


def test_enqueue_uses_configured_default_max_attempts(conn):
    set_config(conn, "max_attempts_default", "4")
    job_id = enqueue_job(conn, SYNC_ORDER, 7)
    assert get_job(conn, job_id).max_attempts == 4


@pytest.mark.parametrize("status", [PENDING, RUNNING, RETRY])
def test_enqueue_is_noop_while_job_is_active(conn, status):
    job_id = enqueue_job(conn, SYNC_ORDER, 7)
    conn.execute("UPDATE jobs SET status=?, attempts=2 WHERE id=?", (status, job_id))
    conn.commit()

    assert enqueue_job(conn, SYNC_ORDER, 7) == job_id

    rows = _job_rows(conn)
    assert len(rows) == 1
    assert rows[0]["status"] == status
    assert rows[0]["attempts"] == 2


@pytest.mark.parametrize("status", [DONE, FAILED])
def test_enqueue_reenables_finished_job(conn, status):
    job_id = enqueue_job(conn, SYNC_ORDER, 7)
    conn.execute(
        "UPDATE jobs SET status=?, attempts=3, last_error='x', next_run_at='2030-01-01T00:00:00.000000Z' WHERE id=?",
        (status, job_id),
    )
    conn.commit()

    assert enqueue_job(conn, SYNC_ORDER, 7) == job_id

    rows = _job_rows(conn)
    assert len(rows) == 1
    job = get_job(conn, job_id)
    assert (job.status, job.attempts, job.last_error, job.next_run_at) == (PENDING, 0, None, None)


def test_enqueue_is_keyed_by_type_and_order(conn):
    a = enqueue_job(conn, SYNC_ORDER, 7)
    b = enqueue_job(conn, INVOICE_ORDER, 7)
    c = enqueue_job(conn, SYNC_ORDER, 8)
    assert len({a, b, c}) == 3


@pytest.mark.parametrize("job_type,order_id", [(IMPORT_ORDERS, 1), ("NOPE", 1), (SYNC_ORDER, 0), (SYNC_ORDER, "x")])
def test_enqueue_rejects_bad_input(conn, job_type, order_id):
    with pytest.raises(ValueError):
        enqueue_job(conn, job_type, order_id)


def test_claim_marks_running_and_counts_attempt(conn):
    job_id = enqueue_job(conn, SYNC_ORDER, 7)

    claimed = claim_due(conn, 10)

    assert [j.id for j in claimed] == [job_id]
    assert claimed[0].status == RUNNING
    assert claimed[0].attempts == 1
    stored = get_job(conn, job_id)
    assert stored.status == RUNNING
    assert stored.attempts == 1


def test_claim_returns_empty_list_when_nothing_due(conn):
    assert claim_due(conn, 10) == []


def test_claim_is_fifo_and_respects_limit(conn):
    ids = [enqueue_job(conn, SYNC_ORDER, n) for n in range(1, 6)]

    first = claim_due(conn, 2)
    second = claim_due(conn, 10)

    assert [j.id for j in first] == ids[:2]
    assert [j.id for j in second] == ids[2:]
    assert claim_due(conn, 10) == []


def test_claim_skips_jobs_not_yet_due(conn):
    later = enqueue_job(conn, SYNC_ORDER, 1)
    due = enqueue_job(conn, SYNC_ORDER, 2)
    schedule_retry(conn, later, "busy", 3600)
    schedule_retry(conn, due, "busy", 0)

    claimed = claim_due(conn, 10)

    assert [j.id for j in claimed] == [due]
    assert get_job(conn, later).status == RETRY


def test_claim_ignores_running_and_terminal_jobs(conn):
    running = enqueue_job(conn, SYNC_ORDER, 1)
    done = enqueue_job(conn, SYNC_ORDER, 2)
    failed = enqueue_job(conn, SYNC_ORDER, 3)
    claim_due(conn, 10)
    mark_done(conn, done)
    mark_failed_permanent(conn, failed, "bad request")

    assert claim_due(conn, 10) == []
    assert get_job(conn, running).status == RUNNING


def test_attempts_grow_by_one_per_claim(conn):
    job_id = enqueue_job(conn, SYNC_ORDER, 7, max_attempts=5)
    seen = []
    for _ in range(3):
        (job,) = claim_due(conn, 1)
        seen.append(job.attempts)
        schedule_retry(conn, job_id, "again", 0)

    assert seen == [1, 2, 3]


def test_concurrent_claimers_never_share_a_job(db_path, conn):
    ids = {enqueue_job(conn, SYNC_ORDER, n) for n in range(1, 21)}
    results = []
    errors = []
    start = threading.Barrier(8)

    def claimer():
        c = connect_db(db_path)
        try:
            start.wait()
            for _ in range(3):
                results.extend(j.id for j in claim_due(c, 1))
        except Exception as e:
            errors.append(e)
        finally:
            c.close()

    threads = [threading.Thread(target=claimer) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert len(results) == len(set(results))
    assert set(results) == ids
    assert all(row["attempts"] == 1 for row in conn.execute("SELECT attempts FROM jobs"))


def test_mark_done_clears_error(conn):
    job_id = enqueue_job(conn, SYNC_ORDER, 7)
    claim_due(conn, 1)
    schedule_retry(conn, job_id, "timeout", 0)
    claim_due(conn, 1)

    assert mark_done(conn, job_id) is True
    job = get_job(conn, job_id)
    assert job.status == DONE
    assert job.last_error is None


def test_schedule_retry_sets_future_run_time(conn):
    job_id = enqueue_job(conn, SYNC_ORDER, 7)
    claim_due(conn, 1)

    schedule_retry(conn, job_id, "Service Unavailable", 60)

    job = get_job(conn, job_id)
    assert job.status == RETRY
    assert job.last_error == "Service Unavailable"
    assert job.next_run_at > job.updated_at


def test_failed_message_is_truncated(conn):
    job_id = enqueue_job(conn, SYNC_ORDER, 7)
    mark_failed_permanent(conn, job_id, "x" * 5000)
    assert len(get_job(conn, job_id).last_error) == 1000


def test_reenable_only_touches_finished_jobs(conn):
    job_id = enqueue_job(conn, SYNC_ORDER, 7)
    assert reenable_job(conn, job_id) is False
    assert reenable_job(conn, 999) is False

    claim_due(conn, 1)
    mark_failed_permanent(conn, job_id, "No such entity")
    assert [j.id for j in failed_jobs(conn)] == [job_id]

    assert reenable_job(conn, job_id) is True
    job = get_job(conn, job_id)
    assert (job.status, job.attempts, job.last_error) == (PENDING, 0, None)
    assert failed_jobs(conn) == []


def test_import_job_is_never_claimed(conn):
    job_id = create_import_job(conn, ImportJobPayload(source="orders.json", total_orders=2))

    assert claim_due(conn, 10) == []
    assert get_job(conn, job_id).status == RUNNING

    assert finish_import_job(conn, job_id, failed_orders=1) == FAILED
    job = get_job(conn, job_id)
    assert job.status == FAILED
    assert job.last_error == "Failed orders: 1"


def test_list_jobs_filters(conn):
    enqueue_job(conn, SYNC_ORDER, 1)
    enqueue_job(conn, SYNC_ORDER, 2)
    ship = enqueue_job(conn, SHIP_ORDER, 2)

    assert [j.id for j in list_jobs(conn, job_type=SHIP_ORDER)] == [ship]
    assert {j.target_id for j in list_jobs(conn, order_id=2)} == {2}
    assert len(list_jobs(conn, status=PENDING)) == 3
    assert list_jobs(conn, status=DONE) == []
    with pytest.raises(ValueError):
        list_jobs(conn, status="LOST")


def test_counts_cover_every_status(conn):
    enqueue_job(conn, SYNC_ORDER, 1)
    done = enqueue_job(conn, SYNC_ORDER, 2)
    mark_done(conn, done)

    assert counts(conn) == {PENDING: 1, RUNNING: 0, RETRY: 0, DONE: 1, FAILED: 0}


def test_config_defaults_and_validation(conn):
    cfg = get_config(conn)
    assert cfg["backoff_mode"] == "linear"
    assert cfg["concurrency"] == "5"

    set_config(conn, "backoff_mode", "exponential")
    assert get_config(conn)["backoff_mode"] == "exponential"

    with pytest.raises(ValueError):
        set_config(conn, "backoff_mode", "random")
    with pytest.raises(ValueError):
        set_config(conn, "concurrency", "-1")
    with pytest.raises(ValueError):
        set_config(conn, "colour", "blue")
