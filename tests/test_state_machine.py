"""Tests for the failover run state machine"""

import asyncio
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

from cloudha.clients.device import GLOBAL_SETTINGS, SELF_IPS, TRAFFIC_GROUP_STATS, VIRTUAL_ADDRESSES
from cloudha.core.errors import (
    CloudApiError,
    DeviceError,
    LockTimeout,
    RecordNotFound,
    ReconciliationError,
    RegistryError,
)
from cloudha.core.models import DesiredConfiguration, DeviceState, FailoverRunRecord, Route, RunStatus
from cloudha.failover.state_machine import FailoverRunner, FailoverState
from cloudha.network.reconcile import NetworkReconciler
from cloudha.storage.registry import FAILOVER_NAMESPACE, FAILOVER_STATUS_KEY, FileRegistry

from .fakes import FakeDevice, device_payloads, ip_config, make_nic, route_table, swap_nics


def converged_nics():
    """Floating addresses already on the NIC of the device that owns them"""
    return [
        make_nic("f5vm-ext0", ip_config("self", "10.0.2.4", primary=True), ip_config("vip1", "10.0.2.10")),
        make_nic("f5vm-ext1", ip_config("self", "10.0.2.5", primary=True), ip_config("vip2", "10.0.2.20")),
    ]


def stamp(seconds_ago: float = 0.0) -> str:
    moment = datetime.now(timezone.utc) - timedelta(seconds=seconds_ago)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


async def read_record(registry) -> FailoverRunRecord:
    return FailoverRunRecord.model_validate(await registry.get(FAILOVER_NAMESPACE, FAILOVER_STATUS_KEY))


async def write_record(registry, record: FailoverRunRecord):
    await registry.put(FAILOVER_NAMESPACE, FAILOVER_STATUS_KEY, record.to_blob())


def swap_desired_configuration(context) -> DesiredConfiguration:
    payloads = device_payloads()
    device_state = DeviceState.from_device(
        payloads[TRAFFIC_GROUP_STATS], payloads[GLOBAL_SETTINGS],
        payloads[SELF_IPS], payloads[VIRTUAL_ADDRESSES],
    )
    disassociate, associate = NetworkReconciler(context).plan_nics(device_state, swap_nics())
    return DesiredConfiguration(disassociate=disassociate, associate=associate)


@pytest.fixture
def swapped(context):
    """Cloud where our floating address sits on the peer's NIC"""
    context.inventory.nics = swap_nics()
    context.inventory.route_tables = [
        route_table("rt1", {"f5_tg": "traffic-group-1", "f5_ha": "internal"}, [
            Route(name="default", address_prefix="10.0.1.0/24", next_hop_ip_address="10.0.3.5"),
        ]),
    ]
    return context


class TestFailoverRun:
    """A run against a clean run record"""

    async def test_successful_run(self, swapped, config):
        runner = FailoverRunner(swapped)

        result = await runner.run()

        assert result.status == RunStatus.SUCCEEDED
        assert not result.recovered
        assert len(result.plan.disassociate) == 2
        assert len(result.plan.associate) == 2
        assert len(result.plan.routes) == 1
        assert not Path(config.lock_file).exists()

        record = await read_record(swapped.registry)
        assert record.status == RunStatus.SUCCEEDED
        assert record.time_stamp is not None
        assert record.desired_configuration.is_empty()

        assert runner.history == [
            FailoverState.IDLE,
            FailoverState.ACQUIRING_LOCK,
            FailoverState.LOADING_STATUS,
            FailoverState.RUNNING,
            FailoverState.SUCCEEDED,
            FailoverState.IDLE,
        ]
        assert runner.state == FailoverState.IDLE

    async def test_first_load_bootstraps_the_record(self, context):
        record = await FailoverRunner(context).load_record()

        assert record.status is None
        assert await context.registry.get(FAILOVER_NAMESPACE, FAILOVER_STATUS_KEY) == {
            "desiredConfiguration": {"disassociate": [], "associate": []},
        }

    async def test_held_lock_times_out_without_side_effects(self, swapped, config):
        Path(config.lock_file).write_text("Currently updating failover state status\nsomeone-else\n")
        runner = FailoverRunner(swapped)

        with pytest.raises(LockTimeout):
            await runner.run()

        assert swapped.inventory.calls == []
        with pytest.raises(RecordNotFound):
            await swapped.registry.get(FAILOVER_NAMESPACE, FAILOVER_STATUS_KEY)
        assert Path(config.lock_file).exists()
        assert runner.state == FailoverState.IDLE


class TestRecovery:
    """Runs that find a previous task in the run record"""

    async def test_failed_task_is_replayed(self, context):
        desired = swap_desired_configuration(context)
        await write_record(context.registry, FailoverRunRecord(
            status=RunStatus.FAILED, time_stamp=stamp(), desired_configuration=desired,
        ))
        # the cloud already looks converged, so only the persisted plan moves anything
        runner = FailoverRunner(context)

        result = await runner.run()

        assert result.recovered
        assert FailoverState.RECOVERING in runner.history
        assert context.inventory.nic_calls() == [
            ("update_nic", "Disassociate", "f5vm-ext1"),
            ("update_nic", "Disassociate", "f5vm-ext0"),
            ("update_nic", "Associate", "f5vm-ext0"),
            ("update_nic", "Associate", "f5vm-ext1"),
        ]
        assert (await read_record(context.registry)).status == RunStatus.SUCCEEDED

    async def test_applied_moves_are_not_replayed_after_later_failure(self, swapped):
        await FailoverRunner(swapped).run()

        healthy_device = swapped.device
        swapped.device = FakeDevice(error=DeviceError("device unreachable"))
        with pytest.raises(DeviceError):
            await FailoverRunner(swapped).run()
        assert (await read_record(swapped.registry)).status == RunStatus.FAILED

        swapped.device = healthy_device
        swapped.inventory.nics = converged_nics()
        swapped.inventory.calls.clear()

        result = await FailoverRunner(swapped).run()

        assert result.recovered
        assert swapped.inventory.nic_calls() == []

    async def test_every_run_persists_its_own_plan(self, context):
        stale = swap_desired_configuration(context)
        await write_record(context.registry, FailoverRunRecord(
            status=RunStatus.SUCCEEDED, time_stamp=stamp(), desired_configuration=stale,
        ))
        context.inventory.nics = converged_nics()
        context.inventory.route_tables = [
            route_table("rt1", {"f5_tg": "traffic-group-1", "f5_ha": "internal"}, [
                Route(name="default", address_prefix="10.0.1.0/24", next_hop_ip_address="10.0.3.5"),
            ]),
        ]
        context.inventory.fail("default", CloudApiError("bad request", 400))

        with pytest.raises(ReconciliationError):
            await FailoverRunner(context).run()

        record = await read_record(context.registry)
        assert record.status == RunStatus.FAILED
        assert record.desired_configuration.is_empty()
        assert context.inventory.nic_calls() == []

    async def test_stale_running_task_is_recovered(self, swapped, config):
        await write_record(swapped.registry, FailoverRunRecord(
            status=RunStatus.RUNNING, time_stamp=stamp(config.max_running_task_seconds + 60),
        ))

        result = await FailoverRunner(swapped).run()

        assert result.recovered
        assert result.status == RunStatus.SUCCEEDED

    async def test_running_task_without_timestamp_is_recovered(self, swapped):
        await write_record(swapped.registry, FailoverRunRecord(status=RunStatus.RUNNING))

        result = await FailoverRunner(swapped).run()

        assert result.recovered

    async def test_young_running_task_recovers_after_waiting(self, swapped, config):
        config.max_running_task_seconds = 0.2
        await write_record(swapped.registry, FailoverRunRecord(status=RunStatus.RUNNING, time_stamp=stamp()))

        result = await FailoverRunner(swapped).run()

        assert result.recovered

    async def test_young_running_task_that_finishes_starts_fresh(self, swapped, config):
        config.max_running_task_seconds = 5.0
        await write_record(swapped.registry, FailoverRunRecord(status=RunStatus.RUNNING, time_stamp=stamp()))

        async def finish_other_run():
            await asyncio.sleep(0.05)
            await write_record(swapped.registry, FailoverRunRecord(status=RunStatus.SUCCEEDED, time_stamp=stamp()))

        result, _ = await asyncio.gather(FailoverRunner(swapped).run(), finish_other_run())

        assert not result.recovered
        assert result.status == RunStatus.SUCCEEDED


class FailedStatusRejectingRegistry(FileRegistry):
    """Refuses to store a FAILED run record"""

    async def put(self, namespace, key, blob):
        if blob.get("status") == RunStatus.FAILED.value:
            raise RegistryError("storage unavailable")
        await super().put(namespace, key, blob)


class TestFailure:
    """Runs that fail part way through"""

    async def test_device_error_marks_the_run_failed(self, swapped, config):
        swapped.device = FakeDevice(error=DeviceError("device unreachable"))
        runner = FailoverRunner(swapped)

        with pytest.raises(DeviceError):
            await runner.run()

        record = await read_record(swapped.registry)
        assert record.status == RunStatus.FAILED
        assert record.time_stamp is not None
        assert not Path(config.lock_file).exists()
        assert runner.history[-2:] == [FailoverState.FAILED, FailoverState.IDLE]

    async def test_failed_mutation_keeps_desired_configuration(self, swapped):
        swapped.inventory.fail("f5vm-ext0", CloudApiError("conflict", 409))

        with pytest.raises(ReconciliationError):
            await FailoverRunner(swapped).run()

        record = await read_record(swapped.registry)
        assert record.status == RunStatus.FAILED
        assert not record.desired_configuration.is_empty()

    async def test_persistence_failure_does_not_mask_the_error(self, swapped, config):
        swapped.registry = FailedStatusRejectingRegistry(config.registry_dir)
        swapped.device = FakeDevice(error=DeviceError("device unreachable"))

        with pytest.raises(DeviceError):
            await FailoverRunner(swapped).run()

        record = await read_record(swapped.registry)
        assert record.status == RunStatus.RUNNING
