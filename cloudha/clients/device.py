"""
BIG-IP device client

Thin async wrapper over the iControl REST API. cloudha only ever reads from
the device: traffic-group stats, global settings, self IPs, virtual
addresses and the failover state.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Optional

import httpx

from ..core.errors import DeviceError
from ..core.logs import SILLY
from ..core.retry import retry

logger = logging.getLogger(__name__)

GLOBAL_SETTINGS = "/tm/sys/global-settings"
TRAFFIC_GROUP_STATS = "/tm/cm/traffic-group/stats"
SELF_IPS = "/tm/net/self"
VIRTUAL_ADDRESSES = "/tm/ltm/virtual-address"
FAILOVER_STATE = "/shared/failover-state"

PRIMARY_STATE = "PRIMARY"


class DeviceClient(ABC):
    """Read-only device API"""

    @abstractmethod
    async def list(self, path: str, max_retries: int = 0, retry_interval: float = 0.0) -> Any:
        """GET a resource; collections resolve to their items list"""
        pass

    async def get_hostname(self, max_retries: int = 0, retry_interval: float = 0.0) -> Optional[str]:
        settings = await self.list(GLOBAL_SETTINGS, max_retries, retry_interval)
        return settings.get("hostname") if isinstance(settings, dict) else None

    async def get_failover_state(self) -> Optional[str]:
        """nodeRole of this device, e.g. PRIMARY or SECONDARY"""
        state = await self.list(FAILOVER_STATE)
        if not isinstance(state, dict):
            raise DeviceError("Failed to retrieve failover state")
        return state.get("nodeRole")

    async def close(self):
        pass


class BigIpClient(DeviceClient):
    """iControl REST client over httpx"""

    def __init__(self, host: str, user: str, password: Optional[str], port: int = 443,
                 timeout: float = 30.0, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.host = host
        self.port = port
        self.user = user
        self._client = httpx.AsyncClient(
            base_url=f"https://{host}:{port}/mgmt",
            auth=(user, password or ""),
            timeout=timeout,
            verify=False,
            transport=transport,
        )

    async def close(self):
        await self._client.aclose()

    async def _get(self, path: str) -> Any:
        try:
            response = await self._client.get(path)
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            raise DeviceError(f"Device API error ({e.response.status_code}) for {path} on {self.host}",
                              e.response.status_code)
        except httpx.RequestError as e:
            raise DeviceError(f"Device request to {self.host} failed: {e}")
        except ValueError as e:
            raise DeviceError(f"Device returned invalid JSON for {path}: {e}")

        logger.log(SILLY, f"{self.host} {path}: {data}")
        if isinstance(data, dict) and str(data.get("kind", "")).endswith("collectionstate"):
            return data.get("items", [])
        return data

    async def list(self, path: str, max_retries: int = 0, retry_interval: float = 0.0) -> Any:
        return await retry(
            lambda: self._get(path),
            max_retries=max_retries,
            interval=retry_interval,
            retry_on=(DeviceError,),
            description=f"GET {path} on {self.host}",
        )


def bigip_factory(user: str, password: Optional[str], port: int = 443, timeout: float = 30.0):
    """Factory building a BigIpClient for a remote management address"""
    def factory(host: str) -> BigIpClient:
        return BigIpClient(host, user, password, port=port, timeout=timeout)
    return factory


async def fetch_device_snapshot(device: DeviceClient):
    """Fetch the four payloads the reconciler needs, concurrently"""
    return await asyncio.gather(
        device.list(TRAFFIC_GROUP_STATS),
        device.list(GLOBAL_SETTINGS),
        device.list(SELF_IPS),
        device.list(VIRTUAL_ADDRESSES),
    )
