"""
Azure Resource Manager inventory client

Implements CloudInventory over the ARM REST API with httpx:

- scale set VMs (with instance view), NICs and public IPs
- route tables across the subscription
- NIC and route updates (PUT)
- tag searches over VMs, NICs and scale sets
- scale set tag updates

HTTP 429 surfaces as TransientCloudError so the retry combinator can back
off; every other failure surfaces as CloudApiError.
"""

import asyncio
import logging
from typing import Any, Dict, List, Optional

import httpx

from ..core.errors import CloudApiError, ResourceIdError, TransientCloudError
from ..core.logs import SILLY
from ..core.models import (
    InstanceDescriptor,
    IpConfiguration,
    NicDescriptor,
    NicUpdate,
    NodeDescriptor,
    NodeIp,
    PublicIpDescriptor,
    Route,
    RouteTableDescriptor,
    RouteUpdate,
)
from ..core.resource_id import ResourceId
from .inventory import CloudInventory

logger = logging.getLogger(__name__)

COMPUTE_API_VERSION = "2023-03-01"
NETWORK_API_VERSION = "2023-09-01"
VMSS_NETWORK_API_VERSION = "2018-10-01"

RATE_LIMITED = 429


def _id_of(ref: Optional[Dict[str, Any]]) -> Optional[str]:
    return ref.get("id") if isinstance(ref, dict) else None


def parse_ip_configuration(raw: Dict[str, Any]) -> IpConfiguration:
    props = raw.get("properties", {})
    return IpConfiguration(
        name=raw["name"],
        private_ip_address=props.get("privateIPAddress"),
        private_ip_allocation_method=props.get("privateIPAllocationMethod", "Static"),
        primary=bool(props.get("primary", False)),
        public_ip_address_id=_id_of(props.get("publicIPAddress")),
        subnet_id=_id_of(props.get("subnet")),
        load_balancer_backend_address_pools=props.get("loadBalancerBackendAddressPools") or [],
    )


def parse_nic(raw: Dict[str, Any]) -> NicDescriptor:
    props = raw.get("properties", {})
    return NicDescriptor(
        id=raw["id"],
        name=raw["name"],
        location=raw.get("location"),
        provisioning_state=props.get("provisioningState", "Succeeded"),
        primary=bool(props.get("primary", True)),
        virtual_machine_id=_id_of(props.get("virtualMachine")),
        ip_configurations=[parse_ip_configuration(c) for c in props.get("ipConfigurations", [])],
        network_security_group_id=_id_of(props.get("networkSecurityGroup")),
        enable_ip_forwarding=bool(props.get("enableIPForwarding", False)),
        tags=raw.get("tags") or {},
    )


def parse_instance(raw: Dict[str, Any]) -> InstanceDescriptor:
    props = raw.get("properties", {})
    return InstanceDescriptor(
        id=raw["id"],
        instance_id=str(raw.get("instanceId", "")),
        vm_id=props.get("vmId"),
        name=raw.get("name"),
        provisioning_state=props.get("provisioningState"),
        statuses=(props.get("instanceView") or {}).get("statuses") or [],
    )


def parse_public_ip(raw: Dict[str, Any]) -> PublicIpDescriptor:
    props = raw.get("properties", {})
    return PublicIpDescriptor(
        id=raw["id"],
        name=raw["name"],
        ip_address=props.get("ipAddress"),
        ip_configuration_id=_id_of(props.get("ipConfiguration")),
        tags=raw.get("tags") or {},
    )


def parse_route_table(raw: Dict[str, Any]) -> RouteTableDescriptor:
    props = raw.get("properties", {})
    routes = []
    for route in props.get("routes", []):
        route_props = route.get("properties", {})
        routes.append(Route(
            name=route["name"],
            address_prefix=route_props.get("addressPrefix", ""),
            next_hop_type=route_props.get("nextHopType"),
            next_hop_ip_address=route_props.get("nextHopIpAddress"),
        ))
    return RouteTableDescriptor(
        id=raw["id"],
        name=raw["name"],
        location=raw.get("location"),
        tags=raw.get("tags") or {},
        routes=routes,
    )


def nic_update_body(update: NicUpdate) -> Dict[str, Any]:
    """ARM body for a NIC PUT"""
    ip_configurations = []
    for config in update.ip_configurations:
        props: Dict[str, Any] = {
            "privateIPAllocationMethod": config.private_ip_allocation_method,
            "privateIPAddress": config.private_ip_address,
            "primary": config.primary,
        }
        if config.public_ip_address_id:
            props["publicIPAddress"] = {"id": config.public_ip_address_id}
        if config.subnet_id:
            props["subnet"] = {"id": config.subnet_id}
        if config.load_balancer_backend_address_pools:
            props["loadBalancerBackendAddressPools"] = config.load_balancer_backend_address_pools
        ip_configurations.append({"name": config.name, "properties": props})

    properties: Dict[str, Any] = {
        "ipConfigurations": ip_configurations,
        "enableIPForwarding": update.enable_ip_forwarding,
    }
    if update.network_security_group_id:
        properties["networkSecurityGroup"] = {"id": update.network_security_group_id}

    return {"location": update.location, "tags": update.tags, "properties": properties}


def route_update_body(update: RouteUpdate) -> Dict[str, Any]:
    return {
        "properties": {
            "addressPrefix": update.address_prefix,
            "nextHopType": update.next_hop_type,
            "nextHopIpAddress": update.next_hop_ip_address,
        }
    }


class AzureArmInventory(CloudInventory):
    """CloudInventory backed by the Azure Resource Manager REST API"""

    def __init__(self, subscription_id: str, resource_group: str, access_token: str,
                 endpoint: str = "https://management.azure.com", timeout: float = 60.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.subscription_id = subscription_id
        self.resource_group = resource_group
        self._client = httpx.AsyncClient(
            base_url=endpoint,
            headers={"Authorization": f"Bearer {access_token}"},
            timeout=timeout,
            transport=transport,
        )

    async def close(self):
        await self._client.aclose()

    def _group_path(self, resource_group: Optional[str] = None) -> str:
        return f"/subscriptions/{self.subscription_id}/resourceGroups/{resource_group or self.resource_group}"

    async def _request(self, method: str, url: str, api_version: Optional[str] = None,
                       **kwargs) -> Dict[str, Any]:
        """Make ARM request with error handling"""
        params = dict(kwargs.pop("params", None) or {})
        if api_version:
            params["api-version"] = api_version
        try:
            response = await self._client.request(method, url, params=params or None, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            try:
                detail = e.response.json().get("error", {}).get("message", str(e))
            except ValueError:
                detail = str(e)
            if status == RATE_LIMITED:
                raise TransientCloudError(f"ARM rate limited {method} {url}: {detail}", status)
            raise CloudApiError(f"ARM error ({status}) {method} {url}: {detail}", status)
        except httpx.RequestError as e:
            raise CloudApiError(f"ARM request failed {method} {url}: {e}")

        if not response.content:
            return {}
        data = response.json()
        logger.log(SILLY, f"{method} {url}: {data}")
        return data

    async def _list(self, url: str, api_version: str, params: Optional[Dict[str, Any]] = None) -> List[Dict[str, Any]]:
        """GET a collection, following nextLink pages"""
        data = await self._request("GET", url, api_version, params=params)
        items = list(data.get("value", []))
        next_link = data.get("nextLink")
        while next_link:
            data = await self._request("GET", next_link)
            items.extend(data.get("value", []))
            next_link = data.get("nextLink")
        return items

    # Inventory

    async def list_instances(self, scale_set: str) -> List[InstanceDescriptor]:
        url = f"{self._group_path()}/providers/Microsoft.Compute/virtualMachineScaleSets/{scale_set}/virtualMachines"
        raw = await self._list(url, COMPUTE_API_VERSION, params={"$expand": "instanceView"})
        return [parse_instance(vm) for vm in raw]

    async def list_nics(self, scale_set: Optional[str] = None) -> List[NicDescriptor]:
        if scale_set:
            url = (f"{self._group_path()}/providers/Microsoft.Compute/virtualMachineScaleSets/"
                   f"{scale_set}/networkInterfaces")
            raw = await self._list(url, VMSS_NETWORK_API_VERSION)
        else:
            raw = await self._list(f"{self._group_path()}/providers/Microsoft.Network/networkInterfaces",
                                   NETWORK_API_VERSION)
        return [parse_nic(nic) for nic in raw]

    async def list_public_ips(self, scale_set: Optional[str] = None) -> List[PublicIpDescriptor]:
        raw = await self._list(f"{self._group_path()}/providers/Microsoft.Network/publicIPAddresses",
                               NETWORK_API_VERSION)
        if scale_set:
            url = (f"{self._group_path()}/providers/Microsoft.Compute/virtualMachineScaleSets/"
                   f"{scale_set}/publicIPAddresses")
            raw.extend(await self._list(url, VMSS_NETWORK_API_VERSION))
        return [parse_public_ip(pip) for pip in raw]

    async def list_route_tables(self) -> List[RouteTableDescriptor]:
        raw = await self._list(f"/subscriptions/{self.subscription_id}/providers/Microsoft.Network/routeTables",
                               NETWORK_API_VERSION)
        return [parse_route_table(table) for table in raw]

    # Mutations

    async def update_nic(self, update: NicUpdate):
        url = f"{self._group_path(update.resource_group)}/providers/Microsoft.Network/networkInterfaces/{update.nic_name}"
        logger.info(f"{update.action} NIC: {update.nic_name}")
        await self._request("PUT", url, NETWORK_API_VERSION, json=nic_update_body(update))
        logger.info(f"{update.action} NIC successful: {update.nic_name}")

    async def update_route(self, update: RouteUpdate):
        url = (f"{self._group_path(update.resource_group)}/providers/Microsoft.Network/routeTables/"
               f"{update.route_table}/routes/{update.route_name}")
        logger.info(f"Updating route: {update.route_name}")
        await self._request("PUT", url, NETWORK_API_VERSION, json=route_update_body(update))
        logger.info(f"Update route successful: {update.route_name}")

    # Tag and resource searches

    async def _public_ip_address(self, public_ip_id: Optional[str]) -> Optional[str]:
        if not public_ip_id:
            return None
        api_version = (VMSS_NETWORK_API_VERSION if "/virtualmachinescalesets/" in public_ip_id.lower()
                       else NETWORK_API_VERSION)
        data = await self._request("GET", public_ip_id, api_version)
        return data.get("properties", {}).get("ipAddress")

    async def _primary_node(self, nic: NicDescriptor, label: str) -> Optional[NodeDescriptor]:
        for config in nic.ip_configurations:
            if config.primary:
                public_ip = await self._public_ip_address(config.public_ip_address_id)
                return NodeDescriptor(id=label, ip=NodeIp(private=config.private_ip_address, public=public_ip))
        return None

    async def _tagged_scale_sets(self, key: str, value: str) -> List[str]:
        raw = await self._list(f"{self._group_path()}/providers/Microsoft.Compute/virtualMachineScaleSets",
                               COMPUTE_API_VERSION)
        logger.log(SILLY, f"virtualMachineScaleSets.list results: {raw}")
        return [ss["name"] for ss in raw if (ss.get("tags") or {}).get(key) == value]

    async def list_scale_set_nodes(self, scale_set: str, label_by_vm_id: bool = False) -> List[NodeDescriptor]:
        vm_ids: Dict[str, str] = {}
        if label_by_vm_id:
            for vm in await self.list_instances(scale_set):
                if vm.vm_id:
                    vm_ids[vm.id.lower()] = vm.vm_id

        nodes = []
        for nic in await self.list_nics(scale_set):
            if not nic.primary:
                continue
            for config in nic.ip_configurations:
                if not config.primary:
                    continue
                try:
                    vm_index = ResourceId.parse(nic.id).child("virtualMachines") or ""
                except ResourceIdError:
                    vm_index = ""
                label = f"{self.resource_group}-{scale_set}{vm_index}"
                if label_by_vm_id and nic.virtual_machine_id:
                    label = vm_ids.get(nic.virtual_machine_id.lower(), label)
                nodes.append(NodeDescriptor(id=label, ip=NodeIp(private=config.private_ip_address)))
        return nodes

    async def list_vms_by_tag(self, key: str, value: str) -> List[NodeDescriptor]:
        logger.debug(f"Getting vms with tag {key}={value}")
        raw = await self._list(f"{self._group_path()}/providers/Microsoft.Compute/virtualMachines",
                               COMPUTE_API_VERSION)

        lookups = []
        for vm in raw:
            if (vm.get("tags") or {}).get(key) != value:
                continue
            props = vm.get("properties", {})
            for ref in (props.get("networkProfile") or {}).get("networkInterfaces", []):
                ref_props = ref.get("properties") or {}
                if ref_props.get("primary", True):
                    lookups.append((ref["id"], props.get("vmId") or vm["name"]))

        async def lookup(nic_id: str, label: str) -> Optional[NodeDescriptor]:
            nic = parse_nic(await self._request("GET", nic_id, NETWORK_API_VERSION))
            return await self._primary_node(nic, label)

        nodes = [node for node in await asyncio.gather(*(lookup(n, l) for n, l in lookups)) if node]
        for scale_set in await self._tagged_scale_sets(key, value):
            nodes.extend(await self.list_scale_set_nodes(scale_set, label_by_vm_id=True))
        return nodes

    async def list_nics_by_tag(self, key: str, value: str) -> List[NodeDescriptor]:
        nodes = []
        for nic in await self.list_nics():
            if nic.primary and nic.tags.get(key) == value:
                resource_group = ResourceId.parse(nic.id).resource_group
                node = await self._primary_node(nic, f"{resource_group}-{nic.name}")
                if node:
                    nodes.append(node)
        for scale_set in await self._tagged_scale_sets(key, value):
            nodes.extend(await self.list_scale_set_nodes(scale_set))
        return nodes

    async def get_scale_set_tags(self, scale_set: str) -> Dict[str, str]:
        url = f"{self._group_path()}/providers/Microsoft.Compute/virtualMachineScaleSets/{scale_set}"
        data = await self._request("GET", url, COMPUTE_API_VERSION)
        tags = data.get("tags") or {}
        logger.log(SILLY, f"Scale Set tags: {tags}")
        return tags

    async def update_scale_set_tags(self, scale_set: str, tags: Dict[str, str]):
        url = f"{self._group_path()}/providers/Microsoft.Compute/virtualMachineScaleSets/{scale_set}"
        await self._request("PATCH", url, COMPUTE_API_VERSION, json={"tags": tags})
