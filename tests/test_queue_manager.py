"""Unit tests for QueueManager admission, claiming and cancellation."""

import threading

import pytest

from botfleet import (
    DuplicateOwner, JobNotFound, JobOutcome, JobRequest, JobStatus, NotCancellable,
    QueueManager, QueueShutdown, StateConflictError, ValidationError, favored_owner_policy,
)


def make_job(owner: str, priority: int = 2, enqueued_at: float = None, **kwargs) -> JobRequest:
    return JobRequest(owner_id=owner, bot_type='ping', priority=priority,
                      enqueued_at=enqueued_at, **kwargs)


@pytest.fixture
def scenario_jobs(manager):
    """A(tier=1, t=0), B(tier=2, t=1), C(tier=1, t=2) from three owners."""
    a = make_job('owner-a', priority=1, enqueued_at=0.0)
    b = make_job('owner-b', priority=2, enqueued_at=1.0)
    c = make_job('owner-c', priority=1, enqueued_at=2.0)
    for job in (a, b, c):
        manager.submit(job)
    return a, b, c


def test_claim_order_follows_tier_then_time(manager, scenario_jobs):
    a, b, c = scenario_jobs

    claimed = [manager.claim_next('w1', timeout=0) for _ in range(3)]

    assert claimed == [b, a, c]


def test_cancel_pending_changes_claim_order(manager, recorder, scenario_jobs):
    a, b, c = scenario_jobs

    assert manager.cancel(b.id) == JobStatus.CANCELLED

    assert manager.claim_next('w1', timeout=0) is a
    assert manager.claim_next('w1', timeout=0) is c
    assert recorder.wait_terminal(b.id)
    assert recorder.kinds(b.id) == ['enqueued', 'cancelled']


def test_second_submit_for_owner_is_rejected(manager):
    first = make_job('owner-a')
    manager.submit(first)

    with pytest.raises(DuplicateOwner) as exc_info:
        manager.submit(make_job('owner-a'))

    assert exc_info.value.owner_id == 'owner-a'
    assert [s.job_id for s in manager.list_queue()] == [first.id]
    assert manager.active_jobs('owner-a') == [first.id]


def test_cap_counts_in_progress_jobs(manager):
    job = make_job('owner-a')
    manager.submit(job)
    manager.claim_next('w1', timeout=0)

    with pytest.raises(DuplicateOwner):
        manager.submit(make_job('owner-a'))

    manager.report_outcome(job.id, JobOutcome.completed(), worker_id='w1')
    assert manager.submit(make_job('owner-a')) == 1


def test_owner_cap_override(dispatcher):
    manager = QueueManager(owner_cap=1, dispatcher=dispatcher, owner_caps={'vip': 2})
    manager.submit(make_job('vip'))
    manager.submit(make_job('vip'))
    with pytest.raises(DuplicateOwner):
        manager.submit(make_job('vip'))


def test_concurrent_submits_admit_exactly_one(manager):
    results = []
    lock = threading.Lock()
    barrier = threading.Barrier(20)

    def submit():
        barrier.wait()
        try:
            manager.submit(make_job('owner-a'))
            outcome = 'ok'
        except DuplicateOwner:
            outcome = 'duplicate'
        with lock:
            results.append(outcome)

    threads = [threading.Thread(target=submit) for _ in range(20)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=5)

    assert results.count('ok') == 1
    assert results.count('duplicate') == 19
    assert manager.pending_count() == 1


def test_concurrent_claims_never_share_a_job(dispatcher):
    manager = QueueManager(owner_cap=1, dispatcher=dispatcher)
    jobs = [make_job(f'owner-{i}') for i in range(50)]
    for job in jobs:
        manager.submit(job)

    claimed = []
    lock = threading.Lock()

    def claim():
        while True:
            job = manager.claim_next('w', timeout=0.05)
            if job is None:
                return
            with lock:
                claimed.append(job.id)

    threads = [threading.Thread(target=claim) for _ in range(8)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout=10)

    assert sorted(claimed) == sorted(j.id for j in jobs)
    assert len(set(claimed)) == len(claimed)


def test_submit_validation(manager):
    with pytest.raises(ValidationError):
        manager.submit(JobRequest(owner_id='', bot_type='ping'))
    with pytest.raises(ValidationError):
        manager.submit(JobRequest(owner_id='a', bot_type='ping', priority='high'))
    with pytest.raises(ValidationError):
        manager.submit(JobRequest(owner_id='a', bot_type='ping', payload=['x']))
    assert manager.pending_count() == 0


def test_job_ids_cannot_be_reused(manager):
    job = make_job('owner-a')
    manager.submit(job)
    manager.cancel(job.id)

    with pytest.raises(ValidationError):
        manager.submit(make_job('owner-b', id=job.id))


def test_events_in_order_for_completed_job(manager, recorder):
    job = make_job('owner-a')
    manager.submit(job)
    manager.claim_next('w1', timeout=0)
    manager.report_progress(job.id, 50)
    manager.report_outcome(job.id, JobOutcome.completed({'ok': True}), worker_id='w1')

    assert recorder.wait_terminal(job.id)
    assert recorder.kinds(job.id) == ['enqueued', 'started', 'progress', 'completed']
    assert recorder.terminal(job.id)[0].result == {'ok': True}


def test_outcome_reported_once(manager, recorder):
    job = make_job('owner-a')
    manager.submit(job)
    manager.claim_next('w1', timeout=0)
    manager.report_outcome(job.id, JobOutcome.failed('boom'), worker_id='w1')

    with pytest.raises(StateConflictError):
        manager.report_outcome(job.id, JobOutcome.completed(), worker_id='w1')

    assert recorder.wait_terminal(job.id)
    assert len(recorder.terminal(job.id)) == 1


def test_outcome_from_wrong_worker_is_rejected(manager):
    job = make_job('owner-a')
    manager.submit(job)
    manager.claim_next('w1', timeout=0)

    with pytest.raises(StateConflictError):
        manager.report_outcome(job.id, JobOutcome.completed(), worker_id='w2')
    manager.report_outcome(job.id, JobOutcome.completed(), worker_id='w1')


class TestCancel:
    def test_cancel_in_progress_signals_worker(self, manager, recorder):
        job = make_job('owner-a')
        manager.submit(job)
        manager.claim_next('w1', timeout=0)

        assert manager.cancel(job.id, requested_by='owner-a') == JobStatus.RUNNING
        claim = manager.get_claim(job.id)
        assert claim.cancel_requested
        # The worker reports the terminal event, not cancel()
        assert recorder.terminal(job.id) == []

        manager.report_outcome(job.id, JobOutcome.cancelled(), worker_id='w1')
        assert recorder.wait_terminal(job.id)
        assert recorder.terminal(job.id)[0].data['cancelled_by'] == 'owner-a'

    def test_cancel_non_cancellable_in_progress(self, manager):
        job = make_job('owner-a', cancellable=False)
        manager.submit(job)
        manager.claim_next('w1', timeout=0)

        with pytest.raises(NotCancellable):
            manager.cancel(job.id)

    def test_non_cancellable_pending_can_be_cancelled(self, manager):
        job = make_job('owner-a', cancellable=False)
        manager.submit(job)
        assert manager.cancel(job.id) == JobStatus.CANCELLED

    def test_cancel_by_other_owner_rejected(self, manager):
        job = make_job('owner-a')
        manager.submit(job)

        with pytest.raises(NotCancellable):
            manager.cancel(job.id, requested_by='owner-b')
        assert manager.cancel(job.id, requested_by='admin') == JobStatus.CANCELLED

    def test_cancel_unknown_job(self, manager):
        with pytest.raises(JobNotFound):
            manager.cancel('missing')

    def test_cancel_wait_returns_after_worker_reports(self, manager):
        job = make_job('owner-a')
        manager.submit(job)
        manager.claim_next('w1', timeout=0)

        def worker():
            claim = manager.get_claim(job.id)
            claim.cancel_event.wait(5)
            manager.report_outcome(job.id, JobOutcome.cancelled(), worker_id='w1')

        thread = threading.Thread(target=worker)
        thread.start()
        manager.cancel(job.id, wait=True, timeout=5)
        thread.join(timeout=5)

        assert manager.get_claim(job.id) is None
        assert manager.active_jobs('owner-a') == []


class TestQueries:
    def test_query_position(self, manager, scenario_jobs):
        a, b, c = scenario_jobs
        assert manager.query_position(b.id) == 1
        assert manager.query_position(c.id) == 3

        manager.claim_next('w1', timeout=0)
        assert manager.query_position(a.id) == 1
        with pytest.raises(JobNotFound):
            manager.query_position(b.id)

    def test_list_queue_shows_pending_then_running(self, manager, scenario_jobs):
        a, b, c = scenario_jobs
        manager.claim_next('w1', timeout=0)

        summaries = manager.list_queue()

        assert [(s.job_id, s.status, s.position) for s in summaries] == [
            (a.id, 'pending', 1),
            (c.id, 'pending', 2),
            (b.id, 'running', None),
        ]
        assert summaries[-1].worker_id == 'w1'

    def test_history_and_stats(self, manager):
        job = make_job('owner-a')
        manager.submit(job)
        manager.claim_next('w1', timeout=0)
        manager.report_outcome(job.id, JobOutcome.failed('boom', reason='timeout'), worker_id='w1')

        history = manager.get_history()
        assert history[0]['job_id'] == job.id
        assert history[0]['reason'] == 'timeout'

        stats = manager.get_stats()
        assert stats['submitted'] == 1
        assert stats['failed'] == 1
        assert stats['pending'] == 0


def test_priority_policy_boosts_favored_owner(dispatcher):
    manager = QueueManager(dispatcher=dispatcher, priority_policy=favored_owner_policy({'vip'}))
    regular = make_job('regular', priority=2, enqueued_at=0.0)
    vip = make_job('vip', priority=2, enqueued_at=5.0)
    manager.submit(regular)
    manager.submit(vip)

    assert manager.claim_next('w1', timeout=0) is vip


class TestShutdown:
    def test_shutdown_wakes_blocked_claimers(self, manager):
        errors = []

        def claim():
            try:
                manager.claim_next('w')
            except QueueShutdown as e:
                errors.append(e)

        threads = [threading.Thread(target=claim) for _ in range(4)]
        for thread in threads:
            thread.start()
        manager.shutdown()
        for thread in threads:
            thread.join(timeout=5)

        assert len(errors) == 4

    def test_shutdown_cancels_pending_once(self, manager, recorder):
        job = make_job('owner-a')
        manager.submit(job)

        manager.shutdown()
        manager.shutdown()

        assert recorder.wait_terminal(job.id)
        terminal = recorder.terminal(job.id)
        assert len(terminal) == 1
        assert terminal[0].data['reason'] == 'shutdown'
        assert manager.is_shutdown

    def test_submit_after_shutdown(self, manager):
        manager.shutdown()
        with pytest.raises(QueueShutdown):
            manager.submit(make_job('owner-a'))
