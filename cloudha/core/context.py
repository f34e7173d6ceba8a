"""
Execution context

HAContext carries every collaborator a failover or election pass needs. It
is built once per process and handed to each component, so no component
reaches for module-level client handles.
"""

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from .config import Config
from .errors import ConfigurationError

if TYPE_CHECKING:
    from ..clients.device import DeviceClient
    from ..clients.inventory import CloudInventory
    from ..storage.registry import Registry

logger = logging.getLogger(__name__)

LicenseRevoker = Callable[[list], Awaitable[None]]


@dataclass
class HAContext:
    """Collaborators shared by the topology, election, reconcile and failover components"""
    config: Config
    inventory: "CloudInventory"
    registry: "Registry"
    device: "DeviceClient"
    device_factory: Callable[[str], "DeviceClient"]
    license_revoker: Optional[LicenseRevoker] = None

    @classmethod
    def from_config(cls, config: Config, license_revoker: Optional[LicenseRevoker] = None) -> "HAContext":
        """Build the Azure inventory, registry and BIG-IP clients described by config"""
        from ..clients.azure_arm import AzureArmInventory
        from ..clients.device import BigIpClient, bigip_factory
        from ..storage import BlobRegistry, FileRegistry

        config.require("subscription_id", "resource_group", "access_token")
        if config.storage_url:
            registry = BlobRegistry(config.storage_url, config.storage_sas)
        elif config.registry_dir:
            registry = FileRegistry(config.registry_dir)
        else:
            raise ConfigurationError("Either storage_url or registry_dir must be configured")

        inventory = AzureArmInventory(
            config.subscription_id,
            config.resource_group,
            config.access_token,
            endpoint=config.arm_endpoint,
            timeout=config.arm_timeout,
        )
        device = BigIpClient(
            config.device_host,
            config.device_user,
            config.device_password,
            port=config.device_port,
            timeout=config.device_timeout,
        )
        logger.debug(f"Context built for {config.subscription_id}/{config.resource_group}")
        return cls(
            config=config,
            inventory=inventory,
            registry=registry,
            device=device,
            device_factory=bigip_factory(config.device_user, config.device_password,
                                         port=config.device_port, timeout=config.hostname_timeout),
            license_revoker=license_revoker,
        )

    async def close(self):
        await self.device.close()
        await self.registry.close()
        close = getattr(self.inventory, "close", None)
        if close is not None:
            await close()
