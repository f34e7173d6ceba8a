"""Cloud provider interface exposed to the HA framework"""

from abc import ABC, abstractmethod
from typing import Dict, List, Optional

from ..cluster.topology import TopologyOptions
from ..core.models import InstanceRecord, NodeDescriptor


class CloudProvider(ABC):
    """Operations the HA framework calls on a cloud provider"""

    @abstractmethod
    async def get_instances(self, options: Optional[TopologyOptions] = None) -> Dict[str, InstanceRecord]:
        """Unified instance map keyed by instance ID"""
        pass

    @abstractmethod
    async def elect_primary(self, instances: Dict[str, InstanceRecord]) -> str:
        pass

    @abstractmethod
    async def is_valid_primary(self, instance_id: str, instances: Dict[str, InstanceRecord]) -> bool:
        """Whether the candidate's live identity matches its record"""
        pass

    @abstractmethod
    async def primary_elected(self, instance_id: str):
        """Demote every other registry record marked primary"""
        pass

    @abstractmethod
    async def put_instance(self, instance_id: str, instance: InstanceRecord):
        pass

    @abstractmethod
    async def get_nodes_by_resource_id(self, resource_id: str, resource_type: str) -> List[NodeDescriptor]:
        """Nodes selected by a provider-specific resource ID and type"""
        pass
