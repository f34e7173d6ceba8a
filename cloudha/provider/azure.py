"""
Azure cloud provider

Wires the topology builder, election and validation engines and the
instance registry behind the CloudProvider interface, plus the Azure-only
helpers: scale set primary tagging, tag searches and the local device's
failover role.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional

from ..clients.device import PRIMARY_STATE
from ..clients.inventory import parse_tag
from ..cluster.election import elect_primary, is_valid_primary
from ..cluster.topology import TopologyBuilder, TopologyOptions
from ..core.context import HAContext
from ..core.errors import CloudHAError, ConfigurationError
from ..core.logs import SILLY
from ..core.models import InstanceRecord, NodeDescriptor
from ..storage.registry import INSTANCES_NAMESPACE
from .base import CloudProvider

logger = logging.getLogger(__name__)

SCALE_SET_RESOURCE = "scaleSet"
TAG_RESOURCE = "tag"


class AzureCloudProvider(CloudProvider):
    """CloudProvider for BIG-IP clusters running in Azure scale sets"""

    def __init__(self, context: HAContext):
        self.context = context
        self.config = context.config
        self.topology = TopologyBuilder(context)

    async def get_instances(self, options: Optional[TopologyOptions] = None) -> Dict[str, InstanceRecord]:
        self.config.require("scale_set")
        return await self.topology.build(options)

    async def elect_primary(self, instances: Dict[str, InstanceRecord]) -> str:
        return elect_primary(instances)

    async def is_valid_primary(self, instance_id: str, instances: Dict[str, InstanceRecord]) -> bool:
        logger.log(SILLY, f"isValidPrimary {instance_id}")
        return await is_valid_primary(
            instance_id,
            instances,
            self.context.device_factory,
            max_retries=self.config.hostname_retries,
            retry_interval=self.config.hostname_retry_interval,
        )

    async def primary_elected(self, instance_id: str):
        demotions = []
        for registered_id, blob in await self.context.registry.list(INSTANCES_NAMESPACE):
            instance = InstanceRecord.model_validate(blob)
            if registered_id != instance_id and instance.is_primary:
                logger.info(f"Demoting previous primary {registered_id}")
                demotions.append(self.put_instance(registered_id, instance.model_copy(update={"is_primary": False})))
        await asyncio.gather(*demotions)

    async def put_instance(self, instance_id: str, instance: InstanceRecord):
        record = instance.model_copy(update={"last_update": datetime.now(timezone.utc)})
        logger.log(SILLY, f"putInstance: {instance_id} {record.to_blob()}")
        await self.context.registry.put(INSTANCES_NAMESPACE, instance_id, record.to_blob())

    async def get_nodes_by_resource_id(self, resource_id: str, resource_type: str) -> List[NodeDescriptor]:
        if resource_type == SCALE_SET_RESOURCE:
            return await self.context.inventory.list_scale_set_nodes(resource_id)
        if resource_type == TAG_RESOURCE:
            return await self.get_vms_by_tag(resource_id)
        raise ConfigurationError("Only resource types 'tag' and 'scaleSet' are supported")

    # Azure-only helpers

    async def tag_primary_instance(self, primary_id: str, instances: Dict[str, InstanceRecord]):
        """Record the primary's private IP in the scale set's <resourceGroup>-primary tag"""
        if primary_id not in instances:
            raise CloudHAError("Primary Instance provided not in instances dictionary")
        self.config.require("scale_set")
        tags = dict(await self.context.inventory.get_scale_set_tags(self.config.scale_set))
        tags[f"{self.config.resource_group}-primary"] = instances[primary_id].private_ip
        await self.context.inventory.update_scale_set_tags(self.config.scale_set, tags)

    async def get_vms_by_tag(self, tag: str) -> List[NodeDescriptor]:
        key, value = parse_tag(tag)
        return await self.context.inventory.list_vms_by_tag(key, value)

    async def get_nics_by_tag(self, tag: str) -> List[NodeDescriptor]:
        key, value = parse_tag(tag)
        return await self.context.inventory.list_nics_by_tag(key, value)

    async def is_primary_device(self) -> bool:
        """Whether the local device reports the PRIMARY failover role"""
        role = await self.context.device.get_failover_state()
        logger.info(f"Failover state: {role}")
        return role == PRIMARY_STATE
