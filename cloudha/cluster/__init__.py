"""Topology building, primary election and validation"""

from .election import elect_primary, instance_sort_key, ip_to_number, is_valid_primary
from .topology import TopologyBuilder, TopologyOptions, dedupe_instances, merge_topology

__all__ = [
    "TopologyBuilder",
    "TopologyOptions",
    "merge_topology",
    "dedupe_instances",
    "elect_primary",
    "is_valid_primary",
    "ip_to_number",
    "instance_sort_key",
]
