"""
Tests for the LifecycleManager.

Tests validate:
- start/restart confirm through daemon status before reaching running
- graceful stop escalates to exactly one forced kill at the deadline
- a manual kill cancels the pending deadline (no second kill)
- failures: start/restart revert to stopped, an undelivered stop signal
  returns to running, kill leaves the state unchanged
- kill never waits behind a long graceful-stop or restart call
- daemon reports are applied idempotently
- commands on one container are serialized
"""

import asyncio

import httpx
import pytest

from database import ContainerDB
from errors import (
    DaemonError, DaemonUnreachable, InvalidTransition, NotFound, ValidationFailed,
)


def last_error(db, container_id):
    with db.get_session() as session:
        return session.get(ContainerDB, container_id).last_error


# ==================== start ====================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_reaches_running_after_confirmation(plane, fake_daemon, daemon, make_container, wait_until):
    container_id = make_container(daemon['id'])
    lifecycle = plane.lifecycle

    container = await lifecycle.start(container_id)

    assert container['status'] == 'starting'
    await wait_until(lambda: lifecycle.get_state(container_id) == 'running')

    actions = fake_daemon.actions()
    # Allocation set is pushed before the start command
    assert actions.index('update') < actions.index('start')
    assert 'status' in actions
    await lifecycle.shutdown()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_while_running_is_invalid(plane, fake_daemon, daemon, make_container):
    container_id = make_container(daemon['id'], status='running')

    with pytest.raises(InvalidTransition):
        await plane.lifecycle.start(container_id)

    assert fake_daemon.count('start') == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_unknown_container(plane, daemon):
    with pytest.raises(NotFound):
        await plane.lifecycle.start('00000000-0000-4000-8000-000000000000')


@pytest.mark.unit
@pytest.mark.asyncio
async def test_start_failure_reverts_to_stopped(plane, db, fake_daemon, daemon, make_container, recorded_events):
    container_id = make_container(daemon['id'])
    fake_daemon.fail('start', httpx.ConnectError("connection refused"))

    with pytest.raises(DaemonUnreachable) as exc_info:
        await plane.lifecycle.start(container_id)

    assert exc_info.value.retriable is True
    assert plane.lifecycle.get_state(container_id) == 'stopped'
    assert last_error(db, container_id)
    assert recorded_events == [
        ('container_state_changed', 'stopped', 'starting'),
        ('container_state_changed', 'starting', 'stopped'),
    ]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unconfirmed_start_falls_back_to_stopped(plane, db, fake_daemon, daemon, make_container, wait_until):
    container_id = make_container(daemon['id'])
    fake_daemon.auto_run = False

    await plane.lifecycle.start(container_id)
    await wait_until(lambda: plane.lifecycle.get_state(container_id) == 'stopped')

    assert "did not confirm start" in last_error(db, container_id)
    await plane.lifecycle.shutdown()


# ==================== graceful stop ====================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_graceful_stop_completes_without_kill(plane, fake_daemon, daemon, make_container, wait_until):
    container_id = make_container(daemon['id'], status='running', stop_command='save-all; stop')

    container = await plane.lifecycle.graceful_stop(container_id, timeout=0.5)

    assert container['status'] == 'stopping'
    assert fake_daemon.bodies('graceful-stop') == [{"stopCommand": "save-all; stop", "timeoutSecs": 1}]
    await wait_until(lambda: plane.lifecycle.get_state(container_id) == 'stopped')
    assert fake_daemon.count('kill') == 0
    assert plane.lifecycle.has_pending_stop(container_id) is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_graceful_stop_uses_default_stop_command(plane, fake_daemon, daemon, make_container):
    container_id = make_container(daemon['id'], status='running')

    await plane.lifecycle.graceful_stop(container_id, timeout=0.5)

    body = fake_daemon.bodies('graceful-stop')[0]
    assert body['stopCommand'] == plane.lifecycle.default_stop_command
    await plane.lifecycle.shutdown()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_graceful_stop_deadline_force_kills_once(plane, fake_daemon, daemon, make_container, wait_until):
    container_id = make_container(daemon['id'], status='running')
    fake_daemon.honor_stop = False

    await plane.lifecycle.graceful_stop(container_id, timeout=0.3)
    await wait_until(lambda: plane.lifecycle.get_state(container_id) == 'stopped')
    await asyncio.sleep(0.2)

    assert fake_daemon.count('kill') == 1


@pytest.mark.unit
@pytest.mark.asyncio
async def test_manual_kill_cancels_pending_deadline(plane, fake_daemon, daemon, make_container):
    """Kill at t=0.1 of a 0.5s graceful stop: exactly one kill reaches the daemon"""
    container_id = make_container(daemon['id'], status='running')
    fake_daemon.honor_stop = False

    await plane.lifecycle.graceful_stop(container_id, timeout=0.5)
    await asyncio.sleep(0.1)
    container = await plane.lifecycle.kill(container_id)

    assert container['status'] == 'stopped'
    assert plane.lifecycle.has_pending_stop(container_id) is False

    await asyncio.sleep(0.8)
    assert fake_daemon.count('kill') == 1
    assert plane.lifecycle.get_state(container_id) == 'stopped'


@pytest.mark.unit
@pytest.mark.asyncio
async def test_graceful_stop_requires_running(plane, daemon, make_container):
    container_id = make_container(daemon['id'])

    with pytest.raises(InvalidTransition):
        await plane.lifecycle.graceful_stop(container_id, timeout=1)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_graceful_stop_rejects_non_positive_timeout(plane, daemon, make_container):
    container_id = make_container(daemon['id'], status='running')

    with pytest.raises(ValidationFailed):
        await plane.lifecycle.graceful_stop(container_id, timeout=0)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_graceful_stop_delivery_failure_keeps_running(plane, fake_daemon, daemon, make_container):
    container_id = make_container(daemon['id'], status='running')
    fake_daemon.fail('graceful-stop', 500)

    with pytest.raises(DaemonError):
        await plane.lifecycle.graceful_stop(container_id, timeout=1)

    assert plane.lifecycle.get_state(container_id) == 'running'
    assert plane.lifecycle.has_pending_stop(container_id) is False


@pytest.mark.unit
@pytest.mark.asyncio
async def test_kill_does_not_wait_for_inflight_graceful_stop(plane, fake_daemon, daemon, make_container):
    """The daemon holds the graceful-stop call open for 3s; a kill at 0.2s goes through at once"""
    container_id = make_container(daemon['id'], status='running')
    fake_daemon.delays['graceful-stop'] = 3.0
    loop = asyncio.get_running_loop()

    stopping = asyncio.create_task(plane.lifecycle.graceful_stop(container_id, timeout=10))
    await asyncio.sleep(0.2)
    assert plane.lifecycle.get_state(container_id) == 'stopping'

    began = loop.time()
    container = await plane.lifecycle.kill(container_id)

    assert loop.time() - began < 1.0
    assert container['status'] == 'stopped'
    assert (await stopping)['status'] == 'stopped'
    assert plane.lifecycle.has_pending_stop(container_id) is False
    assert fake_daemon.count('kill') == 1
    # The in-flight stop call was abandoned before the daemon answered
    assert fake_daemon.count('graceful-stop') == 0


@pytest.mark.unit
@pytest.mark.asyncio
async def test_slow_graceful_stop_returns_and_deadline_escalates(plane, fake_daemon, daemon, make_container, wait_until):
    container_id = make_container(daemon['id'], status='running')
    plane.dispatcher.default_timeout = 0.25
    fake_daemon.honor_stop = False
    fake_daemon.delays['graceful-stop'] = 5.0

    container = await plane.lifecycle.graceful_stop(container_id, timeout=0.4)

    assert container['status'] == 'stopping'
    await wait_until(lambda: plane.lifecycle.get_state(container_id) == 'stopped')
    assert fake_daemon.count('kill') == 1
    assert plane.lifecycle.get_container(container_id)['last_error'] is None


# ==================== kill ====================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_kill_on_stopped_container_is_noop(plane, fake_daemon, daemon, make_container, recorded_events):
    container_id = make_container(daemon['id'])

    container = await plane.lifecycle.kill(container_id)

    assert container['status'] == 'stopped'
    assert fake_daemon.calls == []
    assert recorded_events == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_kill_failure_keeps_state_and_deadline(plane, fake_daemon, daemon, make_container, wait_until):
    container_id = make_container(daemon['id'], status='running')
    fake_daemon.honor_stop = False
    await plane.lifecycle.graceful_stop(container_id, timeout=0.3)

    fake_daemon.fail('kill', 500, times=1)
    with pytest.raises(DaemonError):
        await plane.lifecycle.kill(container_id)

    assert plane.lifecycle.get_state(container_id) == 'stopping'
    assert plane.lifecycle.has_pending_stop(container_id) is True

    # The still-armed deadline performs the forced kill
    await wait_until(lambda: plane.lifecycle.get_state(container_id) == 'stopped')
    assert fake_daemon.count('kill') == 2


@pytest.mark.unit
@pytest.mark.asyncio
async def test_kill_running_container(plane, fake_daemon, daemon, make_container):
    container_id = make_container(daemon['id'], status='running')

    container = await plane.lifecycle.kill(container_id)

    assert container['status'] == 'stopped'
    assert fake_daemon.count('kill') == 1
    assert fake_daemon.running[container_id] is False


# ==================== restart ====================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_restart_running_container(plane, fake_daemon, daemon, make_container, wait_until, recorded_events):
    container_id = make_container(daemon['id'], status='running')

    container = await plane.lifecycle.restart(container_id)

    assert container['status'] == 'starting'
    assert fake_daemon.bodies('restart') == [{"timeoutSecs": 1}]
    await wait_until(lambda: plane.lifecycle.get_state(container_id) == 'running')
    assert recorded_events == [
        ('container_state_changed', 'running', 'starting'),
        ('container_state_changed', 'starting', 'running'),
    ]
    await plane.lifecycle.shutdown()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_restart_stopped_container_starts_it(plane, fake_daemon, daemon, make_container, wait_until):
    container_id = make_container(daemon['id'])

    await plane.lifecycle.restart(container_id)

    assert fake_daemon.count('start') == 1
    assert fake_daemon.count('restart') == 0
    await wait_until(lambda: plane.lifecycle.get_state(container_id) == 'running')
    await plane.lifecycle.shutdown()


@pytest.mark.unit
@pytest.mark.asyncio
async def test_kill_does_not_wait_for_inflight_restart(plane, fake_daemon, daemon, make_container, recorded_events):
    container_id = make_container(daemon['id'], status='running')
    fake_daemon.delays['restart'] = 3.0
    loop = asyncio.get_running_loop()

    restarting = asyncio.create_task(plane.lifecycle.restart(container_id))
    await asyncio.sleep(0.2)

    began = loop.time()
    container = await plane.lifecycle.kill(container_id)

    assert loop.time() - began < 1.0
    assert container['status'] == 'stopped'
    assert (await restarting)['status'] == 'stopped'
    assert fake_daemon.count('restart') == 0
    assert recorded_events == [
        ('container_state_changed', 'running', 'starting'),
        ('container_state_changed', 'starting', 'stopped'),
    ]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_restart_failure_reverts_to_stopped(plane, fake_daemon, daemon, make_container):
    container_id = make_container(daemon['id'], status='running')
    fake_daemon.fail('restart', 500)

    with pytest.raises(DaemonError):
        await plane.lifecycle.restart(container_id)

    assert plane.lifecycle.get_state(container_id) == 'stopped'


@pytest.mark.unit
@pytest.mark.asyncio
async def test_restart_while_stopping_is_invalid(plane, daemon, make_container):
    container_id = make_container(daemon['id'], status='stopping')

    with pytest.raises(InvalidTransition):
        await plane.lifecycle.restart(container_id)


# ==================== delete ====================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_delete_running_container_is_invalid(plane, daemon, make_container):
    container_id = make_container(daemon['id'], status='running')

    with pytest.raises(InvalidTransition):
        await plane.lifecycle.delete(container_id)


@pytest.mark.unit
@pytest.mark.asyncio
async def test_delete_releases_allocations(plane, fake_daemon, daemon, allocations, make_container, recorded_events):
    container_id = make_container(daemon['id'])
    for allocation in allocations[:2]:
        plane.pool.bind(container_id, allocation['id'])

    await plane.lifecycle.delete(container_id)

    assert fake_daemon.count('remove') == 1
    with pytest.raises(NotFound):
        plane.lifecycle.get_state(container_id)
    assert len(plane.pool.list_available(daemon['id'])) == 3
    assert recorded_events == [('container_deleted', 'stopped', None)]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_delete_daemon_failure(plane, fake_daemon, daemon, make_container):
    container_id = make_container(daemon['id'])
    fake_daemon.fail('remove', 500)

    with pytest.raises(DaemonError):
        await plane.lifecycle.delete(container_id)
    assert plane.lifecycle.get_state(container_id) == 'stopped'

    await plane.lifecycle.delete(container_id, force=True)
    with pytest.raises(NotFound):
        plane.lifecycle.get_state(container_id)


# ==================== daemon reports ====================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_running_report_confirms_start(plane, daemon, make_container):
    container_id = make_container(daemon['id'], status='starting')

    assert await plane.lifecycle.handle_daemon_report(container_id, 'running') == 'running'


@pytest.mark.unit
@pytest.mark.asyncio
async def test_exit_report_stops_running_container(plane, daemon, make_container, recorded_events):
    container_id = make_container(daemon['id'], status='running')

    assert await plane.lifecycle.handle_daemon_report(container_id, 'exited') == 'stopped'
    # Repeated report changes nothing
    assert await plane.lifecycle.handle_daemon_report(container_id, 'exited') == 'stopped'
    assert recorded_events == [('container_state_changed', 'running', 'stopped')]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_crash_during_startup_records_error(plane, db, daemon, make_container):
    container_id = make_container(daemon['id'], status='starting')

    await plane.lifecycle.handle_daemon_report(container_id, 'dead', detail='OOM killed')

    assert plane.lifecycle.get_state(container_id) == 'stopped'
    assert last_error(db, container_id) == 'OOM killed'


@pytest.mark.unit
@pytest.mark.asyncio
async def test_stale_running_report_ignored(plane, daemon, make_container):
    container_id = make_container(daemon['id'])

    assert await plane.lifecycle.handle_daemon_report(container_id, 'running') == 'stopped'


@pytest.mark.unit
@pytest.mark.asyncio
async def test_unknown_report_rejected(plane, daemon, make_container):
    container_id = make_container(daemon['id'], status='running')

    with pytest.raises(ValidationFailed):
        await plane.lifecycle.handle_daemon_report(container_id, 'paused')


# ==================== ordering ====================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_full_cycle_event_sequence(plane, daemon, make_container, wait_until, recorded_events):
    container_id = make_container(daemon['id'])
    lifecycle = plane.lifecycle

    await lifecycle.start(container_id)
    await wait_until(lambda: lifecycle.get_state(container_id) == 'running')
    await lifecycle.graceful_stop(container_id, timeout=0.5)
    await wait_until(lambda: lifecycle.get_state(container_id) == 'stopped')

    assert recorded_events == [
        ('container_state_changed', 'stopped', 'starting'),
        ('container_state_changed', 'starting', 'running'),
        ('container_state_changed', 'running', 'stopping'),
        ('container_state_changed', 'stopping', 'stopped'),
    ]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_concurrent_commands_are_serialized(plane, fake_daemon, daemon, make_container):
    """start and kill issued together: kill observes the completed start"""
    container_id = make_container(daemon['id'])

    await asyncio.gather(
        plane.lifecycle.start(container_id),
        plane.lifecycle.kill(container_id),
    )

    actions = fake_daemon.actions()
    assert actions.index('start') < actions.index('kill')
    assert plane.lifecycle.get_state(container_id) == 'stopped'

    # The start confirmation was cancelled by the kill
    await asyncio.sleep(0.1)
    assert plane.lifecycle.get_state(container_id) == 'stopped'
