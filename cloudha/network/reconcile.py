"""
Network reconciliation

Points cloud networking at the device that just went active:

- Routes: every managed route in a route table tagged for one of our
  active traffic groups gets this device's self IP as its next hop
- NICs: floating IP configurations owned by an active traffic group move
  from the peer's NIC onto ours, and configurations of inactive groups go
  back to the peer
- Orphaned public IPs tagged with an active private address are attached
  to our NIC

NIC mutations are applied as two batches. Every disassociation completes
before any association starts, since an IP configuration can only live on
one NIC at a time.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set, Tuple

from prometheus_client import Counter

from ..core.context import HAContext
from ..core.errors import CloudHAError, ReconciliationError
from ..core.logs import SILLY
from ..core.models import (
    DeviceState,
    IpConfiguration,
    NetworkMutationPlan,
    NicDescriptor,
    NicUpdate,
    PublicIpDescriptor,
    RouteTableDescriptor,
    RouteUpdate,
)
from ..core.resource_id import ResourceId
from ..core.retry import retry

logger = logging.getLogger(__name__)

CLOUD_MUTATIONS = Counter(
    'cloudha_cloud_mutations_total', 'Cloud network mutations', ['kind', 'outcome']
)

VIRTUAL_APPLIANCE = "VirtualAppliance"
DISASSOCIATE = "Disassociate"
ASSOCIATE = "Associate"


def _nic_update(nic: NicDescriptor, action: str, ip_configurations: List[IpConfiguration]) -> NicUpdate:
    return NicUpdate(
        action=action,
        resource_group=ResourceId.parse(nic.id).resource_group,
        nic_name=nic.name,
        location=nic.location,
        ip_configurations=ip_configurations,
        network_security_group_id=nic.network_security_group_id,
        enable_ip_forwarding=nic.enable_ip_forwarding,
        tags=nic.tags,
    )


def _addresses(nic: NicDescriptor) -> Set[str]:
    return {c.private_ip_address for c in nic.ip_configurations if c.private_ip_address}


def _is_pair(mine: NicDescriptor, theirs: NicDescriptor) -> bool:
    """NICs of the two devices share a name up to the last character"""
    return mine.name != theirs.name and mine.name[:-1] == theirs.name[:-1]


class _NicLedger:
    """Tracks what each NIC loses and gains while a plan is computed"""

    def __init__(self, nics: List[NicDescriptor]):
        self.nics: Dict[str, NicDescriptor] = {nic.id: nic for nic in nics}
        self.final: Dict[str, List[IpConfiguration]] = {
            nic.id: list(nic.ip_configurations) for nic in nics
        }
        self.lost: Dict[str, Set[str]] = {}
        self.gained: List[str] = []

    def move(self, source: NicDescriptor, target: NicDescriptor, configs: List[IpConfiguration]):
        if not configs:
            return
        names = {c.name for c in configs}
        self.final[source.id] = [c for c in self.final[source.id] if c.name not in names]
        self.final[target.id] = self.final[target.id] + [c.model_copy() for c in configs]
        self.lost.setdefault(source.id, set()).update(names)
        self.mark_gained(target.id)

    def mark_gained(self, nic_id: str):
        if nic_id not in self.gained:
            self.gained.append(nic_id)

    def updates(self) -> Tuple[List[NicUpdate], List[NicUpdate]]:
        disassociate = []
        for nic_id, names in self.lost.items():
            nic = self.nics[nic_id]
            remaining = [c for c in nic.ip_configurations if c.name not in names]
            disassociate.append(_nic_update(nic, DISASSOCIATE, remaining))
        associate = [_nic_update(self.nics[nic_id], ASSOCIATE, self.final[nic_id]) for nic_id in self.gained]
        return disassociate, associate


class NetworkReconciler:
    """Plans and applies route and NIC changes for the locally active traffic groups"""

    def __init__(self, context: HAContext):
        self.context = context
        self.config = context.config

    # Planning

    def plan_routes(self, device: DeviceState, route_tables: List[RouteTableDescriptor]) -> List[RouteUpdate]:
        """Managed routes in tables owned by an active traffic group, pointed at our self IP"""
        managed = set(self.config.managed_routes)
        updates: Dict[Tuple[str, str, str], RouteUpdate] = {}

        for self_ip in device.self_ips:
            for table in route_tables:
                group_tag = table.tags.get(self.config.ownership_tag_key)
                self_ip_tag = table.tags.get(self.config.self_ip_tag_key)
                if not group_tag or not self_ip_tag or self_ip_tag not in self_ip.name:
                    continue
                if not any(group_tag in group for group in device.active_traffic_groups):
                    continue

                resource_group = ResourceId.parse(table.id).resource_group
                for route in table.routes:
                    if route.address_prefix not in managed:
                        continue
                    key = (resource_group, table.name, route.name)
                    if key in updates:
                        continue
                    if route.next_hop_type == VIRTUAL_APPLIANCE and route.next_hop_ip_address == self_ip.address:
                        logger.debug(f"Route {table.name}/{route.name} already points at {self_ip.address}")
                        continue
                    updates[key] = RouteUpdate(
                        resource_group=resource_group,
                        route_table=table.name,
                        route_name=route.name,
                        address_prefix=route.address_prefix,
                        next_hop_type=VIRTUAL_APPLIANCE,
                        next_hop_ip_address=self_ip.address,
                    )

        return list(updates.values())

    def plan_nics(self, device: DeviceState, nics: List[NicDescriptor],
                  public_ips: Optional[List[PublicIpDescriptor]] = None) -> Tuple[List[NicUpdate], List[NicUpdate]]:
        """Disassociate and associate batches moving floating addresses onto our NICs"""
        if not device.virtual_addresses:
            logger.error("No virtual addresses exist, create them prior to failover.")

        self_addresses = {s.address for s in device.self_ips}
        active = set(device.active_addresses())
        inactive = set(device.inactive_addresses())
        label = self.config.unique_label.lower()

        labelled = [
            nic for nic in nics
            if label in nic.name.lower() and nic.provisioning_state == "Succeeded"
        ]
        my_nics = [nic for nic in labelled if _addresses(nic) & self_addresses]
        my_ids = {nic.id for nic in my_nics}
        their_nics = [nic for nic in labelled if _addresses(nic) & active and nic.id not in my_ids]
        logger.log(SILLY, f"My NICs: {[n.name for n in my_nics]}, their NICs: {[n.name for n in their_nics]}")

        if not my_nics or not their_nics:
            logger.debug("Could not determine network interfaces to pair")

        ledger = _NicLedger(labelled)
        for mine in my_nics:
            for theirs in their_nics:
                if not _is_pair(mine, theirs):
                    continue
                ledger.move(theirs, mine, [
                    c for c in theirs.ip_configurations
                    if c.private_ip_address in active and not c.primary
                ])
                ledger.move(mine, theirs, [
                    c for c in mine.ip_configurations
                    if c.private_ip_address in inactive and not c.primary
                ])
                break

        if public_ips:
            self._plan_orphaned_public_ips(ledger, my_nics, nics, public_ips, active)

        return ledger.updates()

    def _plan_orphaned_public_ips(self, ledger: _NicLedger, my_nics: List[NicDescriptor],
                                  all_nics: List[NicDescriptor], public_ips: List[PublicIpDescriptor],
                                  active: Set[str]):
        if not my_nics:
            return
        known_addresses = set()
        for nic in all_nics:
            known_addresses |= _addresses(nic)

        for pip in public_ips:
            if pip.ip_configuration_id:
                continue
            target = pip.tags.get(self.config.private_ip_tag_key)
            if not target or target not in active:
                continue
            subnet_name = pip.tags.get(self.config.subnet_tag_key)

            attached = False
            for nic in my_nics:
                configs = ledger.final[nic.id]
                for index, config in enumerate(configs):
                    if config.private_ip_address == target:
                        configs[index] = config.model_copy(update={"public_ip_address_id": pip.id})
                        ledger.mark_gained(nic.id)
                        attached = True
                        break
                if attached:
                    break
            if attached:
                logger.info(f"Attaching public IP {pip.name} to {target}")
                continue

            if target in known_addresses:
                logger.warning(f"Public IP {pip.name} targets {target}, which belongs to an unpaired NIC")
                continue

            nic, primary = self._nic_for_subnet(my_nics, ledger, subnet_name)
            if nic is None:
                logger.warning(f"No NIC on subnet {subnet_name} for public IP {pip.name}")
                continue
            subnet_id = primary.subnet_id
            if subnet_name and subnet_id:
                subnet_id = str(ResourceId.parse(subnet_id).with_leaf_name(subnet_name))
            ledger.final[nic.id].append(IpConfiguration(
                name=f"{pip.name}-ipconfig",
                private_ip_address=target,
                private_ip_allocation_method="Static",
                primary=False,
                public_ip_address_id=pip.id,
                subnet_id=subnet_id,
            ))
            ledger.mark_gained(nic.id)
            logger.info(f"Adding IP configuration for public IP {pip.name} ({target}) to {nic.name}")

    @staticmethod
    def _nic_for_subnet(my_nics: List[NicDescriptor], ledger: _NicLedger, subnet_name: Optional[str]):
        """Our NIC whose primary configuration sits on subnet_name, or the first of ours"""
        fallback = None
        for nic in sorted(my_nics, key=lambda n: n.name):
            primary = next((c for c in ledger.final[nic.id] if c.primary), None)
            if primary is None:
                continue
            if fallback is None:
                fallback = (nic, primary)
            if subnet_name and primary.subnet_id and ResourceId.parse(primary.subnet_id).leaf_name == subnet_name:
                return nic, primary
        return fallback if fallback else (None, None)

    def plan(self, device: DeviceState, route_tables: List[RouteTableDescriptor], nics: List[NicDescriptor],
             public_ips: Optional[List[PublicIpDescriptor]] = None) -> NetworkMutationPlan:
        disassociate, associate = self.plan_nics(device, nics, public_ips)
        routes = self.plan_routes(device, route_tables)
        logger.info(f"Planned {len(disassociate)} disassociations, {len(associate)} associations, "
                    f"{len(routes)} route updates")
        return NetworkMutationPlan(disassociate=disassociate, associate=associate, routes=routes)

    # Applying

    async def _mutate(self, kind: str, description: str, fn) -> Optional[BaseException]:
        try:
            await retry(
                fn,
                max_retries=self.config.mutation_retries,
                interval=self.config.mutation_retry_interval,
                description=description,
            )
        except CloudHAError as e:
            logger.error(f"{description} error: {e}")
            CLOUD_MUTATIONS.labels(kind=kind, outcome="failure").inc()
            return e
        CLOUD_MUTATIONS.labels(kind=kind, outcome="success").inc()
        return None

    async def _apply_batch(self, kind: str, updates: List[NicUpdate]) -> List[BaseException]:
        results = await asyncio.gather(*(
            self._mutate(kind, f"{update.action} NIC {update.nic_name}",
                         lambda update=update: self.context.inventory.update_nic(update))
            for update in updates
        ))
        return [e for e in results if e is not None]

    async def apply_nics(self, disassociate: List[NicUpdate], associate: List[NicUpdate]) -> List[BaseException]:
        errors = await self._apply_batch("disassociate", disassociate)
        if errors:
            logger.error("Disassociate NICs failed, not associating")
            return errors
        if disassociate:
            logger.info("Disassociate NICs successful.")
        errors = await self._apply_batch("associate", associate)
        if associate and not errors:
            logger.info("Associate NICs successful.")
        return errors

    async def apply_routes(self, routes: List[RouteUpdate]) -> List[BaseException]:
        results = await asyncio.gather(*(
            self._mutate("route", f"Update route {route.route_table}/{route.route_name}",
                         lambda route=route: self.context.inventory.update_route(route))
            for route in routes
        ))
        return [e for e in results if e is not None]

    async def apply(self, plan: NetworkMutationPlan):
        """Apply routes and NIC batches; raise ReconciliationError if anything failed"""
        route_errors, nic_errors = await asyncio.gather(
            self.apply_routes(plan.routes),
            self.apply_nics(plan.disassociate, plan.associate),
        )
        errors = route_errors + nic_errors
        if errors:
            total = len(plan.routes) + len(plan.disassociate) + len(plan.associate)
            raise ReconciliationError(f"{len(errors)} of {total} cloud mutations failed", errors)
