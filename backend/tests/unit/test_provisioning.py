"""
Tests for container provisioning and startup templates.
"""

import httpx
import pytest

from containers.provisioning import daemon_limits, validate_limits
from containers.startup import build_environment, render_startup_command, validate_variables
from errors import Conflict, DaemonError, DaemonMismatch, DaemonUnreachable, NotFound, ValidationFailed


# ==================== Startup templates ====================

@pytest.mark.unit
def test_render_startup_command():
    env = build_environment(
        {"SERVER_JARFILE": "paper.jar"},
        {"ip": "10.0.0.10", "port": 25565},
        2048,
    )

    command = render_startup_command(
        "java -Xmx{{SERVER_MEMORY}}M -jar {{ SERVER_JARFILE }} --port {{SERVER_PORT}}", env,
    )

    assert command == "java -Xmx2048M -jar paper.jar --port 25565"


@pytest.mark.unit
def test_render_reports_missing_variables():
    with pytest.raises(ValidationFailed) as exc_info:
        render_startup_command("./start --world {{WORLD}} --seed {{SEED}}", {})

    assert "SEED, WORLD" in exc_info.value.detail


@pytest.mark.unit
def test_empty_template_renders_nothing():
    assert render_startup_command(None, {}) is None
    assert render_startup_command("", {"A": "1"}) is None


@pytest.mark.unit
@pytest.mark.parametrize("variables", [{"lower": "x"}, {"1ABC": "x"}, {"OK": None}])
def test_invalid_variables(variables):
    with pytest.raises(ValidationFailed):
        validate_variables(variables)


@pytest.mark.unit
def test_variables_coerced_to_strings():
    assert validate_variables({"MAX_PLAYERS": 20}) == {"MAX_PLAYERS": "20"}


# ==================== Limits ====================

@pytest.mark.unit
@pytest.mark.parametrize("limits", [
    {'memory_limit': 0},
    {'cpu_limit': -5},
    {'disk_limit': 1.5},
    {'swap_limit': True},
    {'io_weight': 5},
    {'io_weight': 1001},
    {'gpu_limit': 1},
])
def test_invalid_limits(limits):
    with pytest.raises(ValidationFailed):
        validate_limits(limits)


@pytest.mark.unit
def test_daemon_limit_names():
    assert daemon_limits({'memory_limit': 2048, 'io_weight': 500}) == {'memory': 2048, 'ioWeight': 500}


# ==================== create ====================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_container(plane, fake_daemon, daemon, allocations):
    container = await plane.provisioner.create_container(
        name="survival",
        daemon_id=daemon['id'],
        image="ghcr.io/raptor/java:21",
        allocation_ids=[allocations[1]['id'], allocations[0]['id']],
        memory_limit=2048,
        startup_script="java -Xmx{{SERVER_MEMORY}}M -jar server.jar --port {{SERVER_PORT}}",
    )

    assert container['status'] == 'stopped'
    assert [b['allocation_id'] for b in container['allocations']] == [allocations[1]['id'], allocations[0]['id']]
    assert container['allocations'][0]['is_primary'] is True

    body = fake_daemon.bodies('create')[0]
    assert body['uuid'] == container['id']
    assert body['startupCommand'] == "java -Xmx2048M -jar server.jar --port 25566"
    assert body['environment']['SERVER_IP'] == "10.0.0.10"
    assert body['limits']['memory'] == 2048
    assert body['allocations'][0]['isPrimary'] is True
    assert body['allocations'][0]['port'] == 25566


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_container_without_allocations(plane, fake_daemon, daemon, allocations):
    container = await plane.provisioner.create_container(
        name="lobby",
        daemon_id=daemon['id'],
        image="ghcr.io/raptor/java:21",
        allocation_ids=[],
        memory_limit=512,
        startup_script="java -Xmx{{SERVER_MEMORY}}M -jar lobby.jar",
    )

    assert container['status'] == 'stopped'
    assert container['allocations'] == []
    assert plane.pool.get_primary(container['id']) is None
    assert len(plane.pool.list_available(daemon['id'])) == 3

    body = fake_daemon.bodies('create')[0]
    assert body['allocations'] == []
    assert body['startupCommand'] == "java -Xmx512M -jar lobby.jar"
    assert 'SERVER_PORT' not in body['environment']


@pytest.mark.unit
@pytest.mark.asyncio
async def test_port_placeholder_needs_an_allocation(plane, fake_daemon, daemon):
    with pytest.raises(ValidationFailed, match="SERVER_PORT"):
        await plane.provisioner.create_container(
            name="lobby", daemon_id=daemon['id'], image="ghcr.io/raptor/java:21",
            startup_script="./run.sh --port {{SERVER_PORT}}",
        )
    assert fake_daemon.calls == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_with_undefined_variable_sends_nothing(plane, fake_daemon, daemon, allocations):
    with pytest.raises(ValidationFailed):
        await plane.provisioner.create_container(
            name="modded", daemon_id=daemon['id'], image="ghcr.io/raptor/java:21",
            allocation_ids=[allocations[0]['id']], startup_script="./run.sh {{MODPACK}}",
        )

    assert fake_daemon.calls == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_rejects_io_weight_out_of_range(plane, fake_daemon, daemon, allocations):
    with pytest.raises(ValidationFailed):
        await plane.provisioner.create_container(
            name="survival", daemon_id=daemon['id'], image="ghcr.io/raptor/java:21",
            allocation_ids=[allocations[0]['id']], io_weight=5000,
        )
    assert fake_daemon.calls == []


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_with_foreign_allocation(plane, daemon, allocations):
    other = plane.registry.register(name="node-2", host="10.0.0.20", port=8443)
    foreign = plane.pool.create(other['id'], "10.0.0.20", 25565)

    with pytest.raises(DaemonMismatch):
        await plane.provisioner.create_container(
            name="survival", daemon_id=daemon['id'], image="ghcr.io/raptor/java:21",
            allocation_ids=[allocations[0]['id'], foreign['id']],
        )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_with_bound_allocation(plane, daemon, allocations, make_container):
    existing = make_container(daemon['id'])
    plane.pool.bind(existing, allocations[0]['id'])

    with pytest.raises(Conflict):
        await plane.provisioner.create_container(
            name="creative", daemon_id=daemon['id'], image="ghcr.io/raptor/java:21",
            allocation_ids=[allocations[0]['id']],
        )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_create_unknown_daemon(plane):
    with pytest.raises(NotFound):
        await plane.provisioner.create_container(
            name="survival", daemon_id="missing", image="ghcr.io/raptor/java:21",
            allocation_ids=["also-missing"],
        )


@pytest.mark.unit
@pytest.mark.asyncio
async def test_daemon_failure_persists_nothing(plane, fake_daemon, daemon, allocations):
    fake_daemon.fail('create', httpx.ConnectError("connection refused"))

    with pytest.raises(DaemonUnreachable):
        await plane.provisioner.create_container(
            name="survival", daemon_id=daemon['id'], image="ghcr.io/raptor/java:21",
            allocation_ids=[allocations[0]['id']],
        )

    assert plane.provisioner.list_containers() == []
    assert len(plane.pool.list_available(daemon['id'])) == 3


@pytest.mark.unit
@pytest.mark.asyncio
async def test_list_containers_includes_primary(plane, daemon, allocations):
    created = await plane.provisioner.create_container(
        name="survival", daemon_id=daemon['id'], image="ghcr.io/raptor/java:21",
        allocation_ids=[allocations[2]['id']],
    )

    listed = plane.provisioner.list_containers(daemon_id=daemon['id'])

    assert [c['id'] for c in listed] == [created['id']]
    assert listed[0]['primary_allocation']['port'] == 25567


# ==================== update ====================

@pytest.mark.unit
@pytest.mark.asyncio
async def test_update_resources(plane, fake_daemon, daemon, make_container):
    container_id = make_container(daemon['id'])

    container = await plane.provisioner.update_resources(container_id, memory_limit=4096, io_weight=800)

    assert container['memory_limit'] == 4096
    assert container['io_weight'] == 800
    assert fake_daemon.bodies('update') == [{'limits': {'memory': 4096, 'ioWeight': 800}}]


@pytest.mark.unit
@pytest.mark.asyncio
async def test_update_resources_rejected_by_daemon(plane, fake_daemon, daemon, make_container):
    container_id = make_container(daemon['id'])
    fake_daemon.fail('update', 500)

    with pytest.raises(DaemonError):
        await plane.provisioner.update_resources(container_id, memory_limit=4096)

    assert plane.provisioner.get_container(container_id)['memory_limit'] == 1024


@pytest.mark.unit
@pytest.mark.asyncio
async def test_update_startup_renders_with_primary(plane, fake_daemon, daemon, allocations, make_container):
    container_id = make_container(daemon['id'])
    plane.pool.bind(container_id, allocations[0]['id'])

    container = await plane.provisioner.update_startup(
        container_id,
        startup_script="./bedrock_server --port {{SERVER_PORT}} --level {{LEVEL}}",
        startup_variables={"LEVEL": "world"},
    )

    assert container['startup_variables'] == {"LEVEL": "world"}
    body = fake_daemon.bodies('update')[0]
    assert body['startupCommand'] == "./bedrock_server --port 25565 --level world"
    assert body['environment']['LEVEL'] == "world"
