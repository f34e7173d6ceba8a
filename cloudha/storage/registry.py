"""
Instance registry storage

Durable key/value storage for cluster member records and the failover run
record. Keys live in namespaces:

- instances: one InstanceRecord blob per instance ID
- failover: the singleton FailoverRunRecord under "statusdb"

Backends implement the Registry interface; FileRegistry keeps JSON files on
local disk and is what tests and single-host deployments use.
"""

import asyncio
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict, Iterable, List, Tuple

from prometheus_client import Counter

from ..core.errors import RecordNotFound, RegistryError

logger = logging.getLogger(__name__)

INSTANCES_NAMESPACE = "instances"
FAILOVER_NAMESPACE = "failover"
FAILOVER_STATUS_KEY = "statusdb"

REGISTRY_OPERATIONS = Counter(
    'cloudha_registry_operations_total', 'Registry operations', ['backend', 'operation']
)


class Registry(ABC):
    """Abstract base class for registry backends"""

    backend_name = "abstract"

    @abstractmethod
    async def list(self, namespace: str) -> List[Tuple[str, Dict[str, Any]]]:
        """All (key, blob) pairs in a namespace"""
        pass

    @abstractmethod
    async def get(self, namespace: str, key: str) -> Dict[str, Any]:
        """Read one blob, raising RecordNotFound if absent"""
        pass

    @abstractmethod
    async def put(self, namespace: str, key: str, blob: Dict[str, Any]):
        pass

    @abstractmethod
    async def delete(self, namespace: str, key: str):
        """Delete one blob; deleting a missing key is not an error"""
        pass

    async def delete_many(self, namespace: str, keys: Iterable[str]):
        keys = list(keys)
        if keys:
            logger.debug(f"Deleting {len(keys)} records from {namespace}: {keys}")
            await asyncio.gather(*(self.delete(namespace, key) for key in keys))

    async def close(self):
        pass


class FileRegistry(Registry):
    """Registry of JSON files under <root>/<namespace>/<key>.json"""

    backend_name = "file"

    def __init__(self, root: str):
        self.root = Path(root)

    def _path(self, namespace: str, key: str) -> Path:
        if "/" in key or key in ("", ".", ".."):
            raise RegistryError(f"Invalid registry key: {key!r}")
        return self.root / namespace / f"{key}.json"

    def _read(self, path: Path) -> Dict[str, Any]:
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            raise RecordNotFound(f"{path.parent.name}/{path.stem} not found")
        except (OSError, ValueError) as e:
            raise RegistryError(f"Failed to read {path}: {e}")

    def _list(self, namespace: str) -> List[Tuple[str, Dict[str, Any]]]:
        directory = self.root / namespace
        if not directory.is_dir():
            return []
        records = []
        for path in sorted(directory.glob("*.json")):
            try:
                records.append((path.stem, self._read(path)))
            except RecordNotFound:
                # removed between glob and read
                continue
        return records

    def _write(self, path: Path, blob: Dict[str, Any]):
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=".", suffix=".tmp")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(blob, f, indent=2, sort_keys=True)
                os.replace(tmp, path)
            except BaseException:
                if os.path.exists(tmp):
                    os.unlink(tmp)
                raise
        except OSError as e:
            raise RegistryError(f"Failed to write {path}: {e}")

    def _unlink(self, path: Path):
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise RegistryError(f"Failed to delete {path}: {e}")

    async def list(self, namespace: str) -> List[Tuple[str, Dict[str, Any]]]:
        REGISTRY_OPERATIONS.labels(backend=self.backend_name, operation="list").inc()
        return await asyncio.to_thread(self._list, namespace)

    async def get(self, namespace: str, key: str) -> Dict[str, Any]:
        REGISTRY_OPERATIONS.labels(backend=self.backend_name, operation="get").inc()
        return await asyncio.to_thread(self._read, self._path(namespace, key))

    async def put(self, namespace: str, key: str, blob: Dict[str, Any]):
        REGISTRY_OPERATIONS.labels(backend=self.backend_name, operation="put").inc()
        await asyncio.to_thread(self._write, self._path(namespace, key), blob)

    async def delete(self, namespace: str, key: str):
        REGISTRY_OPERATIONS.labels(backend=self.backend_name, operation="delete").inc()
        await asyncio.to_thread(self._unlink, self._path(namespace, key))
