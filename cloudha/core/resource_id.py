"""
Structured Azure resource identifiers

ARM identifiers look like

    /subscriptions/{sub}/resourceGroups/{group}/providers/{namespace}/{type}/{name}[/{childType}/{childName}...]

ResourceId parses that shape once into named fields so callers never index
into a split string.
"""

from dataclasses import dataclass, field, replace
from typing import Optional, Tuple

from .errors import ResourceIdError


@dataclass(frozen=True)
class ResourceId:
    """Parsed ARM resource identifier"""
    subscription: str
    resource_group: str
    namespace: str
    type: str
    name: str
    children: Tuple[Tuple[str, str], ...] = field(default_factory=tuple)

    @classmethod
    def parse(cls, text: str) -> "ResourceId":
        if not text:
            raise ResourceIdError("Empty resource ID")

        parts = [part for part in text.strip().split("/") if part]
        if (len(parts) < 8 or parts[0].lower() != "subscriptions"
                or parts[2].lower() != "resourcegroups" or parts[4].lower() != "providers"):
            raise ResourceIdError(f"Not an ARM resource ID: {text}")

        tail = parts[8:]
        if len(tail) % 2:
            raise ResourceIdError(f"Unpaired child segment in resource ID: {text}")

        return cls(
            subscription=parts[1],
            resource_group=parts[3],
            namespace=parts[5],
            type=parts[6],
            name=parts[7],
            children=tuple(zip(tail[0::2], tail[1::2])),
        )

    @property
    def leaf_name(self) -> str:
        """Name of the deepest resource in the ID"""
        return self.children[-1][1] if self.children else self.name

    def child(self, child_type: str) -> Optional[str]:
        """Name of the child segment of the given type, case-insensitive"""
        for seg_type, seg_name in self.children:
            if seg_type.lower() == child_type.lower():
                return seg_name
        return None

    def with_leaf_name(self, name: str) -> "ResourceId":
        """Sibling resource with the same parents and a different leaf name"""
        if self.children:
            children = self.children[:-1] + ((self.children[-1][0], name),)
            return replace(self, children=children)
        return replace(self, name=name)

    def __str__(self) -> str:
        text = (f"/subscriptions/{self.subscription}/resourceGroups/{self.resource_group}"
                f"/providers/{self.namespace}/{self.type}/{self.name}")
        for seg_type, seg_name in self.children:
            text += f"/{seg_type}/{seg_name}"
        return text
