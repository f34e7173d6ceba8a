"""Cloud provider interface and the Azure implementation"""

from .azure import AzureCloudProvider
from .base import CloudProvider

__all__ = ["CloudProvider", "AzureCloudProvider"]
