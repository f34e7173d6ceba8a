"""
Azure Blob Storage registry backend

Stores each namespace as a blob container and each record as a JSON block
blob, authenticated with a SAS token. Containers are created on first use.
"""

import asyncio
import json
import logging
import xml.etree.ElementTree as ET
from typing import Any, Dict, List, Optional, Set, Tuple
from urllib.parse import parse_qsl

import httpx

from ..core.errors import RecordNotFound, RegistryError
from ..core.logs import SILLY
from .registry import REGISTRY_OPERATIONS, Registry

logger = logging.getLogger(__name__)

STORAGE_API_VERSION = "2021-08-06"


class BlobRegistry(Registry):
    """Registry backed by Azure Blob Storage containers"""

    backend_name = "blob"

    def __init__(self, account_url: str, sas_token: Optional[str] = None, timeout: float = 30.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.account_url = account_url.rstrip("/")
        self._sas = dict(parse_qsl((sas_token or "").lstrip("?")))
        self._client = httpx.AsyncClient(
            base_url=self.account_url,
            headers={"x-ms-version": STORAGE_API_VERSION},
            timeout=timeout,
            transport=transport,
        )
        self._containers: Set[str] = set()
        self._container_lock = asyncio.Lock()

    async def close(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, params: Optional[Dict[str, str]] = None,
                       **kwargs) -> httpx.Response:
        query = dict(self._sas)
        query.update(params or {})
        try:
            return await self._client.request(method, path, params=query, **kwargs)
        except httpx.RequestError as e:
            raise RegistryError(f"Blob storage request failed {method} {path}: {e}")

    def _raise_for(self, response: httpx.Response, what: str):
        if response.status_code >= 400:
            raise RegistryError(f"Blob storage error ({response.status_code}) {what}: {response.text[:200]}")

    async def _ensure_container(self, namespace: str):
        if namespace in self._containers:
            return
        async with self._container_lock:
            if namespace in self._containers:
                return
            response = await self._request("PUT", f"/{namespace}", params={"restype": "container"})
            # 409: ContainerAlreadyExists
            if response.status_code not in (201, 409):
                self._raise_for(response, f"creating container {namespace}")
            logger.debug(f"Container ready: {namespace}")
            self._containers.add(namespace)

    async def _list_names(self, namespace: str) -> List[str]:
        names: List[str] = []
        marker = None
        while True:
            params = {"restype": "container", "comp": "list"}
            if marker:
                params["marker"] = marker
            response = await self._request("GET", f"/{namespace}", params=params)
            self._raise_for(response, f"listing {namespace}")
            try:
                root = ET.fromstring(response.content)
            except ET.ParseError as e:
                raise RegistryError(f"Invalid blob listing for {namespace}: {e}")
            names.extend(node.text for node in root.iter("Name") if node.text)
            marker = root.findtext("NextMarker")
            if not marker:
                return names

    async def list(self, namespace: str) -> List[Tuple[str, Dict[str, Any]]]:
        REGISTRY_OPERATIONS.labels(backend=self.backend_name, operation="list").inc()
        await self._ensure_container(namespace)
        names = await self._list_names(namespace)
        logger.log(SILLY, f"Blobs in {namespace}: {names}")

        async def fetch(name: str) -> Optional[Tuple[str, Dict[str, Any]]]:
            try:
                return name, await self.get(namespace, name)
            except RecordNotFound:
                return None

        return [entry for entry in await asyncio.gather(*(fetch(n) for n in names)) if entry]

    async def get(self, namespace: str, key: str) -> Dict[str, Any]:
        REGISTRY_OPERATIONS.labels(backend=self.backend_name, operation="get").inc()
        await self._ensure_container(namespace)
        response = await self._request("GET", f"/{namespace}/{key}")
        if response.status_code == 404:
            raise RecordNotFound(f"{namespace}/{key} not found")
        self._raise_for(response, f"reading {namespace}/{key}")
        try:
            return response.json()
        except ValueError as e:
            raise RegistryError(f"Invalid JSON in {namespace}/{key}: {e}")

    async def put(self, namespace: str, key: str, blob: Dict[str, Any]):
        REGISTRY_OPERATIONS.labels(backend=self.backend_name, operation="put").inc()
        await self._ensure_container(namespace)
        response = await self._request(
            "PUT", f"/{namespace}/{key}",
            content=json.dumps(blob).encode("utf-8"),
            headers={"x-ms-blob-type": "BlockBlob", "Content-Type": "application/json"},
        )
        self._raise_for(response, f"writing {namespace}/{key}")

    async def delete(self, namespace: str, key: str):
        REGISTRY_OPERATIONS.labels(backend=self.backend_name, operation="delete").inc()
        await self._ensure_container(namespace)
        response = await self._request("DELETE", f"/{namespace}/{key}")
        if response.status_code != 404:
            self._raise_for(response, f"deleting {namespace}/{key}")
