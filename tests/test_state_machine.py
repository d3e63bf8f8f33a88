"""Unit tests for BotStateMachine transitions."""

import pytest

from botfleet import BotState, BotStateMachine, StateConflictError


@pytest.fixture
def machine() -> BotStateMachine:
    return BotStateMachine('w1', failure_threshold=3, clock=lambda: 1000.0)


def run_to_running(machine: BotStateMachine, job_id: str = 'job-1'):
    machine.fire('start')
    machine.bind_job(job_id)
    machine.fire('ready')


def test_happy_path(machine):
    run_to_running(machine)
    assert machine.state == BotState.RUNNING
    assert machine.current_job == 'job-1'

    machine.fire('complete')

    assert machine.state == BotState.IDLE
    assert machine.current_job is None


def test_ready_requires_bound_job(machine):
    machine.fire('start')
    with pytest.raises(StateConflictError):
        machine.fire('ready')


def test_start_from_running_is_conflict(machine):
    run_to_running(machine)
    with pytest.raises(StateConflictError):
        machine.fire('start')


def test_bind_only_while_starting(machine):
    with pytest.raises(StateConflictError):
        machine.bind_job('job-1')
    machine.fire('start')
    machine.bind_job('job-1')
    with pytest.raises(StateConflictError):
        machine.bind_job('job-2')


def test_abort_returns_to_idle(machine):
    machine.fire('start')
    assert machine.fire('abort') == BotState.IDLE


def test_restored_resumes_bound_job(machine):
    run_to_running(machine)
    machine.fire('connection_lost')
    assert machine.state == BotState.RECONNECTING
    assert machine.current_job == 'job-1'

    assert machine.fire('restored') == BotState.RUNNING


def test_restored_without_job_goes_idle(machine):
    run_to_running(machine)
    machine.fire('connection_lost')
    machine.release_job()

    assert machine.fire('restored') == BotState.IDLE


def test_exhausted_enters_error_and_clears_job(machine):
    run_to_running(machine)
    machine.fire('connection_lost')
    machine.fire('exhausted')

    assert machine.state == BotState.ERROR
    assert machine.current_job is None


def test_error_has_no_automatic_exit(machine):
    machine.fire('error')
    for trigger in ('start', 'ready', 'complete', 'restored', 'abort'):
        with pytest.raises(StateConflictError):
            machine.fire(trigger)
    assert machine.state == BotState.ERROR


def test_reset_only_from_error(machine):
    with pytest.raises(StateConflictError):
        machine.request_reset()

    machine.record_failure('boom')
    machine.fire('error')
    machine.request_reset()
    assert machine.reset_event.is_set()

    machine.apply_reset()

    assert machine.state == BotState.IDLE
    assert machine.record.consecutive_failures == 0
    assert not machine.reset_event.is_set()


def test_stop_from_any_live_state(machine):
    run_to_running(machine)
    assert machine.fire('stop') == BotState.STOPPING
    assert machine.fire('stopped') == BotState.STOPPED
    with pytest.raises(StateConflictError):
        machine.fire('stop')


def test_stop_request_is_a_flag(machine):
    machine.request_stop(graceful=False)
    assert machine.stop_requested
    assert not machine.graceful_stop
    assert machine.state == BotState.IDLE


def test_graceful_stop_keeps_reconnect_of_bound_job(machine):
    run_to_running(machine)
    machine.request_stop(graceful=True)

    assert machine.stop_requested
    assert not machine.abort_event.is_set()

    machine.request_stop(graceful=False)
    assert machine.abort_event.is_set()


def test_graceful_stop_while_idle_aborts_waits(machine):
    machine.request_stop(graceful=True)
    assert machine.abort_event.is_set()

    # A job claimed after the stop still gets to finish its reconnect
    machine.fire('start')
    machine.bind_job('late')
    assert not machine.abort_event.is_set()


def test_forced_stop_is_not_downgraded(machine):
    run_to_running(machine)
    machine.request_stop(graceful=False)
    machine.request_stop(graceful=True)

    assert not machine.graceful_stop
    assert machine.abort_event.is_set()


def test_failure_threshold(machine):
    assert machine.record_failure('one') is False
    assert machine.record_failure('two') is False
    assert machine.record_failure('three') is True
    machine.record_success()
    assert machine.record.consecutive_failures == 0
    assert machine.record.jobs_failed == 3
    assert machine.record.jobs_completed == 1


def test_listeners_see_transitions(machine):
    seen = []
    machine.add_listener(lambda src, dst, trigger: seen.append((src.value, dst.value, trigger)))

    machine.fire('start')
    machine.fire('abort')

    assert seen == [('idle', 'starting', 'start'), ('starting', 'idle', 'abort')]


def test_can(machine):
    assert machine.can('start')
    assert machine.can('stop')
    assert not machine.can('restored')
    assert not machine.can('complete')


def test_snapshot_is_a_copy(machine):
    machine.heartbeat()
    snapshot = machine.snapshot()
    machine.fire('start')

    assert snapshot.state == BotState.IDLE
    assert snapshot.last_heartbeat == 1000.0
    assert snapshot.to_dict()['state'] == 'idle'
