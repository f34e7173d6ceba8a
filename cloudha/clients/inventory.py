"""Cloud inventory interface consumed by the topology builder and reconciler"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional, Tuple

from ..core.errors import ConfigurationError
from ..core.models import (
    InstanceDescriptor,
    NicDescriptor,
    NicUpdate,
    NodeDescriptor,
    PublicIpDescriptor,
    RouteTableDescriptor,
    RouteUpdate,
)


class CloudInventory(ABC):
    """Abstract base class for cloud inventory and network mutation"""

    @abstractmethod
    async def list_instances(self, scale_set: str) -> List[InstanceDescriptor]:
        """List the VMs of a scale set, with instance view"""
        pass

    @abstractmethod
    async def list_nics(self, scale_set: Optional[str] = None) -> List[NicDescriptor]:
        """List scale set NICs, or every NIC in the resource group when scale_set is None"""
        pass

    @abstractmethod
    async def list_public_ips(self, scale_set: Optional[str] = None) -> List[PublicIpDescriptor]:
        """List public IP addresses in the resource group, plus a scale set's instance-level ones"""
        pass

    @abstractmethod
    async def list_route_tables(self) -> List[RouteTableDescriptor]:
        """List every route table in the subscription"""
        pass

    @abstractmethod
    async def update_nic(self, update: NicUpdate):
        """Replace a NIC's IP configurations"""
        pass

    @abstractmethod
    async def update_route(self, update: RouteUpdate):
        """Create or update one route"""
        pass

    @abstractmethod
    async def list_vms_by_tag(self, key: str, value: str) -> List[NodeDescriptor]:
        """Primary NIC addresses of standalone and scale set VMs carrying a tag, labelled by vmId"""
        pass

    @abstractmethod
    async def list_nics_by_tag(self, key: str, value: str) -> List[NodeDescriptor]:
        """Primary NICs carrying a tag, or belonging to a tagged scale set"""
        pass

    @abstractmethod
    async def list_scale_set_nodes(self, scale_set: str, label_by_vm_id: bool = False) -> List[NodeDescriptor]:
        """Primary IP configuration of the primary NIC of every VM in a scale set"""
        pass

    @abstractmethod
    async def get_scale_set_tags(self, scale_set: str) -> Dict[str, str]:
        pass

    @abstractmethod
    async def update_scale_set_tags(self, scale_set: str, tags: Dict[str, str]):
        """Replace all tags on a scale set"""
        pass


def parse_tag(text: str) -> Tuple[str, str]:
    """Split a 'key=value' tag search string"""
    key, _, value = (text or "").partition("=")
    key, value = key.strip(), value.strip()
    if not key or not value:
        raise ConfigurationError("Tag with key and value must be provided")
    return key, value
