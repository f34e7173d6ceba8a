"""
cloudha data models

Pydantic models for everything that crosses a component boundary:

- InstanceRecord: one cluster member, as stored in the instance registry
- FailoverRunRecord: the singleton run-status record used for crash recovery
- Cloud inventory descriptors (VMs, NICs, public IPs, route tables)
- Device state parsed from the local BIG-IP
- Mutation plans (NIC and route updates)

Registry records serialize with camelCase keys so records written by older
deployments (isPrimary, lastBackup, desiredConfiguration, ...) load unchanged.
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

# 1970-02-01T00:00:00Z in epoch milliseconds: "never backed up"
NEVER_BACKED_UP = 2678400000

INSTANCE_STATUS_OK = "OK"


class CamelModel(BaseModel):
    """Base model serialized with camelCase keys"""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)

    def to_blob(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, mode="json", exclude_none=True)


# Instance registry

class InstanceRecord(CamelModel):
    """Cluster member metadata"""
    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel, extra="allow")

    instance_id: Optional[str] = Field(None, description="Stable ID within the provider inventory")
    private_ip: Optional[str] = Field(None, description="Primary private address")
    mgmt_ip: Optional[str] = Field(None, description="Management address")
    public_ip: Optional[str] = None
    hostname: Optional[str] = Field(None, description="Device hostname, filled lazily")
    is_primary: bool = False
    provider_visible: bool = Field(True, description="Cloud inventory currently reports this instance")
    version_ok: bool = Field(True, description="Software version compatibility gate")
    external: bool = Field(False, description="Outside the managed scale set")
    last_backup: int = Field(NEVER_BACKED_UP, description="Epoch ms of last config sync")
    last_update: Optional[datetime] = None
    status: str = INSTANCE_STATUS_OK
    primary_status: Dict[str, Any] = Field(default_factory=dict)

    def has_running_config(self) -> bool:
        return self.last_backup != NEVER_BACKED_UP

    def is_expired(self, max_age_seconds: float, now: Optional[datetime] = None) -> bool:
        """True when the record has not been refreshed within max_age_seconds"""
        now = now or datetime.now(timezone.utc)
        if self.last_update is not None:
            last_seen = self.last_update
            if last_seen.tzinfo is None:
                last_seen = last_seen.replace(tzinfo=timezone.utc)
        elif self.has_running_config():
            last_seen = datetime.fromtimestamp(self.last_backup / 1000, tz=timezone.utc)
        else:
            return True
        return (now - last_seen).total_seconds() > max_age_seconds


# Cloud inventory

class IpConfiguration(CamelModel):
    """One IP configuration on a NIC"""
    name: str
    private_ip_address: Optional[str] = None
    private_ip_allocation_method: str = "Static"
    primary: bool = False
    public_ip_address_id: Optional[str] = None
    subnet_id: Optional[str] = None
    load_balancer_backend_address_pools: List[Dict[str, Any]] = Field(default_factory=list)


class NicDescriptor(CamelModel):
    """Network interface as reported by the cloud"""
    id: str
    name: str
    location: Optional[str] = None
    provisioning_state: str = "Succeeded"
    primary: bool = True
    virtual_machine_id: Optional[str] = None
    ip_configurations: List[IpConfiguration] = Field(default_factory=list)
    network_security_group_id: Optional[str] = None
    enable_ip_forwarding: bool = False
    tags: Dict[str, str] = Field(default_factory=dict)


class InstanceDescriptor(CamelModel):
    """Scale set VM as reported by the cloud"""
    id: str
    instance_id: str
    vm_id: Optional[str] = None
    name: Optional[str] = None
    provisioning_state: Optional[str] = None
    statuses: List[Dict[str, Any]] = Field(default_factory=list)


class PublicIpDescriptor(CamelModel):
    """Public IP address resource"""
    id: str
    name: str
    ip_address: Optional[str] = None
    ip_configuration_id: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)


class Route(CamelModel):
    name: str
    address_prefix: str
    next_hop_type: Optional[str] = None
    next_hop_ip_address: Optional[str] = None


class RouteTableDescriptor(CamelModel):
    """Route table with its routes"""
    id: str
    name: str
    location: Optional[str] = None
    tags: Dict[str, str] = Field(default_factory=dict)
    routes: List[Route] = Field(default_factory=list)


class NodeIp(CamelModel):
    private: Optional[str] = None
    public: Optional[str] = None


class NodeDescriptor(CamelModel):
    """Node found by tag or resource search"""
    id: str
    ip: NodeIp = Field(default_factory=NodeIp)


# Device state

class SelfIp(CamelModel):
    name: str
    address: str


class VirtualAddress(CamelModel):
    address: str
    traffic_group: str


class DeviceState(CamelModel):
    """Local BIG-IP view needed to reconcile the network"""
    hostname: str
    self_ips: List[SelfIp] = Field(default_factory=list)
    active_traffic_groups: List[str] = Field(default_factory=list)
    virtual_addresses: List[VirtualAddress] = Field(default_factory=list)

    @classmethod
    def from_device(cls, tg_stats: Dict[str, Any], global_settings: Dict[str, Any],
                    self_ips: List[Dict[str, Any]], virtual_addresses: List[Dict[str, Any]]) -> "DeviceState":
        """Build from raw iControl REST payloads"""
        hostname = global_settings.get("hostname", "")

        active_groups = []
        for entry in (tg_stats.get("entries") or {}).values():
            stats = entry.get("nestedStats", {}).get("entries", {})
            device_name = stats.get("deviceName", {}).get("description", "")
            failover_state = stats.get("failoverState", {}).get("description", "")
            if hostname and hostname in device_name and failover_state == "active":
                active_groups.append(stats.get("trafficGroup", {}).get("description", ""))

        return cls(
            hostname=hostname,
            self_ips=[
                SelfIp(name=item["name"], address=item["address"].split("/")[0])
                for item in self_ips
            ],
            active_traffic_groups=active_groups,
            virtual_addresses=[
                VirtualAddress(address=item["address"].split("/")[0],
                               traffic_group=item.get("trafficGroup", ""))
                for item in virtual_addresses
            ],
        )

    def active_addresses(self) -> List[str]:
        """Virtual addresses owned by a traffic group active on this device"""
        return [
            va.address for va in self.virtual_addresses
            if any(va.traffic_group and va.traffic_group in group for group in self.active_traffic_groups)
        ]

    def inactive_addresses(self) -> List[str]:
        active = set(self.active_addresses())
        return [va.address for va in self.virtual_addresses if va.address not in active]


# Mutations

class NicUpdate(CamelModel):
    """Full desired state of one NIC, applied with a single PUT"""
    action: str
    resource_group: str
    nic_name: str
    location: Optional[str] = None
    ip_configurations: List[IpConfiguration] = Field(default_factory=list)
    network_security_group_id: Optional[str] = None
    enable_ip_forwarding: bool = False
    tags: Dict[str, str] = Field(default_factory=dict)


class RouteUpdate(CamelModel):
    resource_group: str
    route_table: str
    route_name: str
    address_prefix: str
    next_hop_type: str = "VirtualAppliance"
    next_hop_ip_address: str


class DesiredConfiguration(CamelModel):
    """NIC mutations persisted before they are applied"""
    disassociate: List[NicUpdate] = Field(default_factory=list)
    associate: List[NicUpdate] = Field(default_factory=list)

    def is_empty(self) -> bool:
        return not self.disassociate and not self.associate


class NetworkMutationPlan(CamelModel):
    """Everything one run will change in the cloud"""
    disassociate: List[NicUpdate] = Field(default_factory=list)
    associate: List[NicUpdate] = Field(default_factory=list)
    routes: List[RouteUpdate] = Field(default_factory=list)

    def desired_configuration(self) -> DesiredConfiguration:
        return DesiredConfiguration(disassociate=list(self.disassociate), associate=list(self.associate))


# Failover run record

class RunStatus(str, Enum):
    """Failover run status"""
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    RUNNING = "running"


class FailoverRunRecord(CamelModel):
    """Singleton record coordinating failover runs across hosts"""
    status: Optional[RunStatus] = None
    time_stamp: Optional[str] = None
    desired_configuration: DesiredConfiguration = Field(default_factory=DesiredConfiguration)

    def age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds since the last RUNNING/FAILED transition, None if never stamped"""
        if not self.time_stamp:
            return None
        stamped = datetime.fromisoformat(self.time_stamp.replace("Z", "+00:00"))
        if stamped.tzinfo is None:
            stamped = stamped.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return (now - stamped).total_seconds()

    def is_in_progress(self) -> bool:
        return self.status in (RunStatus.RUNNING, RunStatus.FAILED)
