"""
cloudha

BIG-IP high-availability cluster failover for Azure
"""

from .cluster import TopologyBuilder, TopologyOptions, elect_primary, is_valid_primary
from .core import Config, HAContext, InstanceRecord
from .failover import FailoverRunner
from .network import NetworkReconciler
from .provider import AzureCloudProvider, CloudProvider

__version__ = "1.0.0"
__author__ = "F5 Cloud Solutions"

__all__ = [
    "Config", "HAContext", "InstanceRecord",
    "TopologyBuilder", "TopologyOptions", "elect_primary", "is_valid_primary",
    "NetworkReconciler", "FailoverRunner",
    "CloudProvider", "AzureCloudProvider"
]
