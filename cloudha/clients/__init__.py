"""Cloud inventory and BIG-IP device clients"""

from .azure_arm import AzureArmInventory
from .device import BigIpClient, DeviceClient, bigip_factory
from .inventory import CloudInventory

__all__ = ["CloudInventory", "AzureArmInventory", "DeviceClient", "BigIpClient", "bigip_factory"]
