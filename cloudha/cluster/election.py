"""
Primary election and validation

Election is a pure function over the unified instance map:

1. Only instances with versionOk and providerVisible are candidates
2. An external candidate with the numerically lowest private IP wins outright
3. Otherwise the lowest instance ID wins
4. If the winner has never synced its configuration but some candidate has,
   the lowest-IP candidate with a running configuration wins instead

Every comparison ends on the instance ID key, so the winner never depends
on map iteration order.
"""

import ipaddress
import logging
from typing import Callable, Dict, Optional, Tuple

from prometheus_client import Counter

from ..clients.device import DeviceClient
from ..core.errors import NoEligiblePrimary, NoInstances
from ..core.logs import SILLY
from ..core.models import InstanceRecord

logger = logging.getLogger(__name__)

ELECTIONS = Counter('cloudha_elections_total', 'Primary elections', ['outcome'])
VALIDATIONS = Counter('cloudha_primary_validations_total', 'Primary validations', ['result'])


def ip_to_number(ip: str) -> int:
    """Dotted quad as an unsigned 32-bit integer"""
    return int(ipaddress.IPv4Address(ip))


def _ip_key(ip: Optional[str]) -> Tuple[int, int]:
    # unparseable or missing addresses sort after every real one
    try:
        return (0, ip_to_number(ip))
    except (ipaddress.AddressValueError, ValueError, TypeError):
        return (1, 0)


def instance_sort_key(instance_id: str) -> Tuple[int, int, str]:
    """All-digit IDs compare numerically and sort before any other ID"""
    if instance_id.isdigit():
        return (0, int(instance_id), "")
    return (1, 0, instance_id)


def is_eligible(instance: InstanceRecord) -> bool:
    return instance.version_ok and instance.provider_visible


def elect_primary(instances: Dict[str, InstanceRecord]) -> str:
    """Pick the primary's instance ID"""
    if not instances:
        ELECTIONS.labels(outcome="no_instances").inc()
        raise NoInstances("No instances")

    candidates = {iid: inst for iid, inst in instances.items() if is_eligible(inst)}
    if not candidates:
        ELECTIONS.labels(outcome="no_eligible").inc()
        raise NoEligiblePrimary("No possible primary found")

    def by_ip(iid: str):
        return (_ip_key(candidates[iid].private_ip), instance_sort_key(iid))

    external = [iid for iid, inst in candidates.items() if inst.external]
    if external:
        primary_id = min(external, key=by_ip)
    else:
        primary_id = min(candidates, key=instance_sort_key)

    with_running_config = [iid for iid, inst in candidates.items() if inst.has_running_config()]
    if with_running_config and primary_id not in with_running_config:
        logger.log(SILLY, f"electPrimary: {primary_id} has no running config, taking lowest with running config")
        primary_id = min(with_running_config, key=by_ip)

    ELECTIONS.labels(outcome="elected").inc()
    logger.debug(f"Elected primary: {primary_id}")
    return primary_id


async def is_valid_primary(instance_id: str, instances: Dict[str, InstanceRecord],
                           device_factory: Callable[[str], DeviceClient],
                           max_retries: int = 3, retry_interval: float = 0.3) -> bool:
    """Compare a candidate's live hostname with the hostname on record"""
    possible_primary = instances.get(instance_id)
    if possible_primary is None:
        logger.warning(f"Primary not valid: {instance_id} is not in the instance map")
        VALIDATIONS.labels(result="missing").inc()
        return False

    host = possible_primary.mgmt_ip or possible_primary.private_ip
    device = device_factory(host)
    try:
        actual_hostname = await device.get_hostname(max_retries, retry_interval)
    finally:
        await device.close()

    logger.log(SILLY, f"possiblePrimary.hostname: {possible_primary.hostname}, actualHostname: {actual_hostname}")
    if possible_primary.hostname != actual_hostname:
        logger.debug(f"Primary not valid: hostname of possible primary ({possible_primary.hostname}) "
                     f"does not match actual hostname ({actual_hostname})")
        VALIDATIONS.labels(result="mismatch").inc()
        return False

    VALIDATIONS.labels(result="valid").inc()
    return True
