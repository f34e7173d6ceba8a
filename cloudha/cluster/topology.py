"""
Topology snapshot builder

Merges the cloud's view of the scale set with the instance registry into one
unified instance map:

- scale set VMs become base records, visible unless deallocated
- tag-selected external VMs replace internal entries with the same address
- registry records overlay the cloud records; registry-only records survive
  only while they are an unexpired primary
- stale registry-only records are garbage collected by the current primary
- missing hostnames are fetched live from each device, best effort
- duplicate entries for one physical instance are collapsed
"""

import asyncio
import logging
import re
import time
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from prometheus_client import Histogram
from pydantic import ValidationError

from ..clients.inventory import parse_tag
from ..core.context import HAContext
from ..core.errors import DeviceError, RegistryError
from ..core.logs import SILLY
from ..core.models import (
    InstanceDescriptor,
    InstanceRecord,
    NicDescriptor,
    NodeDescriptor,
    PublicIpDescriptor,
)
from ..storage.registry import INSTANCES_NAMESPACE
from .election import instance_sort_key

logger = logging.getLogger(__name__)

TOPOLOGY_BUILD_DURATION = Histogram('cloudha_topology_build_seconds', 'Topology build duration')

UUID_PATTERN = re.compile(r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$", re.IGNORECASE)

VISIBLE_PROVISIONING_STATES = ("Succeeded", "Creating")
DEALLOCATED_POWER_STATES = ("powerstate/deallocated", "powerstate/deallocating")


@dataclass
class TopologyOptions:
    """Per-call options for building the instance map"""
    instance_id: Optional[str] = None
    external_tag: Optional[str] = None


@dataclass
class CloudSnapshot:
    """Scale set inventory fetched from the cloud"""
    instances: List[InstanceDescriptor] = field(default_factory=list)
    nics: List[NicDescriptor] = field(default_factory=list)
    public_ips: List[PublicIpDescriptor] = field(default_factory=list)


@dataclass
class MergeResult:
    instances: Dict[str, InstanceRecord]
    ids_to_delete: List[str] = field(default_factory=list)
    instances_to_revoke: List[InstanceRecord] = field(default_factory=list)


def is_provider_visible(vm: InstanceDescriptor) -> bool:
    """Provisioned and not deallocated"""
    visible = vm.provisioning_state in VISIBLE_PROVISIONING_STATES
    try:
        for status in vm.statuses:
            code = status["code"].lower()
            logger.log(SILLY, f"Instance power code status: {vm.instance_id} {code}")
            if code in DEALLOCATED_POWER_STATES:
                visible = False
    except (KeyError, AttributeError, TypeError) as e:
        logger.info(f"Error reading power state for {vm.instance_id}: {e}")
    return visible


def records_from_inventory(snapshot: CloudSnapshot) -> Dict[str, InstanceRecord]:
    """One base record per scale set VM that has a NIC"""
    vms_by_id = {vm.id.lower(): vm for vm in snapshot.instances}
    public_ips = {pip.id.lower(): pip.ip_address for pip in snapshot.public_ips}

    records: Dict[str, InstanceRecord] = {}
    for nic in snapshot.nics:
        if not nic.virtual_machine_id or not nic.ip_configurations:
            continue
        vm = vms_by_id.get(nic.virtual_machine_id.lower())
        if vm is None:
            logger.debug(f"NIC {nic.name} belongs to unknown VM {nic.virtual_machine_id}")
            continue

        ip_config = nic.ip_configurations[0]
        public_ip = None
        if ip_config.public_ip_address_id:
            public_ip = public_ips.get(ip_config.public_ip_address_id.lower())

        records[vm.instance_id] = InstanceRecord(
            instance_id=vm.instance_id,
            private_ip=ip_config.private_ip_address,
            mgmt_ip=ip_config.private_ip_address,
            public_ip=public_ip,
            provider_visible=is_provider_visible(vm),
        )
    return records


def merge_topology(snapshot: CloudSnapshot,
                   registered: Dict[str, InstanceRecord],
                   options: Optional[TopologyOptions] = None,
                   external_nodes: Optional[List[NodeDescriptor]] = None,
                   expiry_seconds: float = 600.0,
                   license_pool: bool = False) -> MergeResult:
    """Merge cloud inventory, external nodes and registry records

    Pure: garbage collection and license revocation are returned, not done.
    """
    options = options or TopologyOptions()
    instances = records_from_inventory(snapshot)
    provider_ids = set(instances)

    for node in external_nodes or []:
        # external entries are keyed by vmId; drop the scale set entry for the same address
        for iid in [iid for iid, inst in instances.items() if inst.private_ip == node.ip.private]:
            del instances[iid]
        instances[node.id] = InstanceRecord(
            instance_id=node.id,
            mgmt_ip=node.ip.private,
            private_ip=node.ip.private,
            public_ip=node.ip.public,
            external=True,
            provider_visible=True,
        )
        provider_ids.add(node.id)

    current = registered.get(options.instance_id) if options.instance_id else None
    current_is_primary = bool(current and current.is_primary)
    logger.log(SILLY, f"isPrimary: {current_is_primary}")

    result = MergeResult(instances=instances)
    for iid in sorted(registered, key=instance_sort_key):
        record = registered[iid]
        if iid in provider_ids or (record.is_primary and not record.is_expired(expiry_seconds)):
            cloud_record = instances.get(iid)
            update = {"provider_visible": cloud_record.provider_visible if cloud_record else False}
            if cloud_record:
                for name in ("private_ip", "mgmt_ip", "public_ip"):
                    if getattr(record, name) is None and getattr(cloud_record, name) is not None:
                        update[name] = getattr(cloud_record, name)
                if cloud_record.external:
                    update["external"] = True
            instances[iid] = record.model_copy(update=update)
        elif current_is_primary:
            result.ids_to_delete.append(iid)
            if license_pool:
                result.instances_to_revoke.append(record)
            else:
                logger.log(SILLY, "No license pool. Not revoking any licenses.")

    return result


def dedupe_instances(instances: Dict[str, InstanceRecord]) -> Dict[str, InstanceRecord]:
    """Collapse entries that share a private IP into one

    Preference: UUID-shaped and visible, then visible, then UUID-shaped,
    then the lowest instance ID.
    """
    def rank(iid: str):
        is_uuid = bool(UUID_PATTERN.match(iid))
        visible = instances[iid].provider_visible
        return (not (is_uuid and visible), not visible, not is_uuid, instance_sort_key(iid))

    by_ip: Dict[str, List[str]] = {}
    for iid, instance in instances.items():
        if instance.private_ip:
            by_ip.setdefault(instance.private_ip, []).append(iid)

    dropped = set()
    for ip, ids in by_ip.items():
        if len(ids) > 1:
            keep = min(ids, key=rank)
            logger.debug(f"Duplicate entries for {ip}: keeping {keep}, dropping {sorted(set(ids) - {keep})}")
            dropped.update(iid for iid in ids if iid != keep)

    return {iid: inst for iid, inst in instances.items() if iid not in dropped}


class TopologyBuilder:
    """Builds the unified instance map for one provider call"""

    def __init__(self, context: HAContext):
        self.context = context
        self.config = context.config

    async def fetch_inventory(self) -> CloudSnapshot:
        scale_set = self.config.scale_set
        instances, nics, public_ips = await asyncio.gather(
            self.context.inventory.list_instances(scale_set),
            self.context.inventory.list_nics(scale_set),
            self.context.inventory.list_public_ips(scale_set),
        )
        logger.log(SILLY, f"Scale set VMs: {[vm.instance_id for vm in instances]}")
        return CloudSnapshot(instances=instances, nics=nics, public_ips=public_ips)

    async def load_registry(self) -> Dict[str, InstanceRecord]:
        registered = {}
        for key, blob in await self.context.registry.list(INSTANCES_NAMESPACE):
            try:
                registered[key] = InstanceRecord.model_validate(blob)
            except ValidationError as e:
                logger.warning(f"Ignoring unreadable registry record {key}: {e}")
        logger.log(SILLY, f"Registered instances: {list(registered)}")
        return registered

    async def _fetch_hostname(self, instance_id: str, instance: InstanceRecord) -> Optional[str]:
        host = instance.mgmt_ip or instance.private_ip
        if not host:
            return None
        logger.log(SILLY, f"No hostname for instance {instance_id}")
        device = self.context.device_factory(host)
        try:
            return await asyncio.wait_for(
                device.get_hostname(self.config.hostname_retries, self.config.hostname_retry_interval),
                timeout=self.config.hostname_timeout,
            )
        except (DeviceError, asyncio.TimeoutError) as e:
            logger.debug(f"Could not fetch hostname for {instance_id} at {host}: {e}")
            return None
        finally:
            await device.close()

    async def backfill_hostnames(self, instances: Dict[str, InstanceRecord]) -> Dict[str, InstanceRecord]:
        missing = [iid for iid, inst in instances.items() if not inst.hostname]
        hostnames = await asyncio.gather(*(self._fetch_hostname(iid, instances[iid]) for iid in missing))
        for iid, hostname in zip(missing, hostnames):
            if hostname:
                instances[iid] = instances[iid].model_copy(update={"hostname": hostname})
        return instances

    async def _collect_garbage(self, result: MergeResult):
        if result.ids_to_delete:
            logger.debug(f"Deleting non-primaries that are not known to Azure: {result.ids_to_delete}")
            try:
                await self.context.registry.delete_many(INSTANCES_NAMESPACE, result.ids_to_delete)
            except RegistryError as e:
                logger.warning(f"Failed to delete stale registry records: {e}")

        if result.instances_to_revoke:
            if self.context.license_revoker is None:
                logger.warning("License pool enabled but no license revoker configured")
            else:
                await self.context.license_revoker(result.instances_to_revoke)

    async def build(self, options: Optional[TopologyOptions] = None) -> Dict[str, InstanceRecord]:
        """Build the unified instance map"""
        options = options or TopologyOptions()
        external_tag = options.external_tag or self.config.external_tag
        start_time = time.time()

        snapshot = await self.fetch_inventory()
        external_nodes = None
        if external_tag:
            key, value = parse_tag(external_tag)
            external_nodes = await self.context.inventory.list_vms_by_tag(key, value)
            logger.debug(f"External instances for {external_tag}: {[n.id for n in external_nodes]}")

        registered = await self.load_registry()
        result = merge_topology(
            snapshot,
            registered,
            options,
            external_nodes=external_nodes,
            expiry_seconds=self.config.instance_expiry_seconds,
            license_pool=self.config.license_pool,
        )

        instances = await self.backfill_hostnames(result.instances)
        await self._collect_garbage(result)
        instances = dedupe_instances(instances)

        TOPOLOGY_BUILD_DURATION.observe(time.time() - start_time)
        logger.info(f"Topology built with {len(instances)} instances")
        return instances
