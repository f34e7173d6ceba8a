"""Tests for the Azure cloud provider surface"""

import pytest

from cloudha.clients.device import FAILOVER_STATE
from cloudha.core.errors import CloudHAError, ConfigurationError
from cloudha.core.models import InstanceRecord, NodeDescriptor, NodeIp
from cloudha.provider.azure import AzureCloudProvider
from cloudha.storage.registry import INSTANCES_NAMESPACE

from .fakes import FakeDevice, FakeDeviceFactory, ip_config, make_nic, make_vm, vm_id


@pytest.fixture
def provider(context):
    return AzureCloudProvider(context)


async def registered(registry):
    return {key: InstanceRecord.model_validate(blob) for key, blob in await registry.list(INSTANCES_NAMESPACE)}


class TestRegistryOperations:
    async def test_put_instance_stamps_last_update(self, provider, registry):
        await provider.put_instance("0", InstanceRecord(instance_id="0", private_ip="10.0.1.4", is_primary=True))

        blob = await registry.get(INSTANCES_NAMESPACE, "0")
        assert blob["privateIp"] == "10.0.1.4"
        assert blob["isPrimary"] is True
        assert "lastUpdate" in blob

    async def test_primary_elected_demotes_the_others(self, provider, registry):
        await registry.put(INSTANCES_NAMESPACE, "0", InstanceRecord(instance_id="0", is_primary=True).to_blob())
        await registry.put(INSTANCES_NAMESPACE, "1", InstanceRecord(instance_id="1", is_primary=True).to_blob())
        await registry.put(INSTANCES_NAMESPACE, "2", InstanceRecord(instance_id="2").to_blob())

        await provider.primary_elected("1")

        records = await registered(registry)
        assert not records["0"].is_primary
        assert records["0"].last_update is not None
        assert records["1"].is_primary
        assert records["2"].last_update is None


class TestGetInstances:
    async def test_builds_the_instance_map(self, provider, inventory):
        inventory.instances = [make_vm("0"), make_vm("1", power="PowerState/deallocated")]
        inventory.nics = [
            make_nic("nic0", ip_config("ipconfig1", "10.0.1.4", primary=True), vm=vm_id("0")),
            make_nic("nic1", ip_config("ipconfig1", "10.0.1.5", primary=True), vm=vm_id("1")),
        ]

        instances = await provider.get_instances()

        assert sorted(instances) == ["0", "1"]
        assert instances["0"].provider_visible
        assert not instances["1"].provider_visible
        assert await provider.elect_primary(instances) == "0"

    async def test_scale_set_is_required(self, provider, config):
        config.scale_set = None

        with pytest.raises(ConfigurationError):
            await provider.get_instances()

    async def test_is_valid_primary(self, provider, context):
        context.device_factory = FakeDeviceFactory({"10.0.1.4": "bigip1.example.com"})
        instances = {"0": InstanceRecord(private_ip="10.0.1.4", hostname="bigip1.example.com")}

        assert await provider.is_valid_primary("0", instances)
        assert not await provider.is_valid_primary("9", instances)


class TestNodeLookups:
    async def test_scale_set_nodes(self, provider, inventory):
        inventory.scale_set_nodes = [NodeDescriptor(id="rg-ss0", ip=NodeIp(private="10.0.1.4"))]

        nodes = await provider.get_nodes_by_resource_id("ss", "scaleSet")

        assert [n.id for n in nodes] == ["rg-ss0"]
        assert ("list_scale_set_nodes", "ss") in inventory.calls

    async def test_tagged_nodes(self, provider, inventory):
        inventory.vms_by_tag = [NodeDescriptor(id="vmid-ext", ip=NodeIp(private="10.0.1.20"))]

        nodes = await provider.get_nodes_by_resource_id("cluster=ha", "tag")

        assert [n.id for n in nodes] == ["vmid-ext"]
        assert ("list_vms_by_tag", "cluster", "ha") in inventory.calls

    async def test_tagged_nics(self, provider, inventory):
        await provider.get_nics_by_tag("cluster=ha")
        assert ("list_nics_by_tag", "cluster", "ha") in inventory.calls

    @pytest.mark.parametrize("resource_id, resource_type", [
        ("cluster", "tag"),
        ("ss", "virtualMachine"),
    ])
    async def test_bad_lookups(self, provider, resource_id, resource_type):
        with pytest.raises(ConfigurationError):
            await provider.get_nodes_by_resource_id(resource_id, resource_type)


class TestAzureHelpers:
    async def test_tag_primary_instance(self, provider, inventory):
        inventory.scale_set_tags = {"env": "prod"}
        instances = {"0": InstanceRecord(private_ip="10.0.1.4")}

        await provider.tag_primary_instance("0", instances)

        assert inventory.scale_set_tags == {"env": "prod", "rg-primary": "10.0.1.4"}

    async def test_tag_unknown_primary(self, provider):
        with pytest.raises(CloudHAError):
            await provider.tag_primary_instance("7", {})

    @pytest.mark.parametrize("role, expected", [("PRIMARY", True), ("SECONDARY", False)])
    async def test_is_primary_device(self, provider, context, role, expected):
        context.device = FakeDevice({FAILOVER_STATE: {"nodeRole": role}})

        assert await provider.is_primary_device() is expected
