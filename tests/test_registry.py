"""Tests for the registry backends"""

import json
from typing import Dict
from xml.sax.saxutils import escape

import httpx
import pytest

from cloudha.core.errors import RecordNotFound, RegistryError
from cloudha.storage.blob import BlobRegistry
from cloudha.storage.registry import INSTANCES_NAMESPACE, FileRegistry


class TestFileRegistry:
    """JSON files on local disk"""

    @pytest.fixture
    def registry(self, tmp_path):
        return FileRegistry(str(tmp_path / "registry"))

    async def test_put_get_list_delete(self, registry):
        await registry.put(INSTANCES_NAMESPACE, "1", {"privateIp": "10.0.1.5"})
        await registry.put(INSTANCES_NAMESPACE, "0", {"privateIp": "10.0.1.4"})

        assert await registry.get(INSTANCES_NAMESPACE, "0") == {"privateIp": "10.0.1.4"}
        assert await registry.list(INSTANCES_NAMESPACE) == [
            ("0", {"privateIp": "10.0.1.4"}),
            ("1", {"privateIp": "10.0.1.5"}),
        ]

        await registry.delete(INSTANCES_NAMESPACE, "0")
        assert [key for key, _ in await registry.list(INSTANCES_NAMESPACE)] == ["1"]

    async def test_put_overwrites(self, registry):
        await registry.put(INSTANCES_NAMESPACE, "0", {"isPrimary": False})
        await registry.put(INSTANCES_NAMESPACE, "0", {"isPrimary": True})

        assert await registry.get(INSTANCES_NAMESPACE, "0") == {"isPrimary": True}

    async def test_missing_key(self, registry):
        with pytest.raises(RecordNotFound):
            await registry.get(INSTANCES_NAMESPACE, "missing")

    async def test_empty_namespace_lists_nothing(self, registry):
        assert await registry.list("nothing-here") == []

    async def test_delete_is_idempotent(self, registry):
        await registry.delete(INSTANCES_NAMESPACE, "missing")
        await registry.delete_many(INSTANCES_NAMESPACE, ["a", "b"])

    async def test_delete_many(self, registry):
        for key in ("a", "b", "c"):
            await registry.put(INSTANCES_NAMESPACE, key, {})

        await registry.delete_many(INSTANCES_NAMESPACE, ["a", "c"])

        assert [key for key, _ in await registry.list(INSTANCES_NAMESPACE)] == ["b"]

    async def test_corrupt_record(self, registry, tmp_path):
        path = tmp_path / "registry" / INSTANCES_NAMESPACE / "0.json"
        path.parent.mkdir(parents=True)
        path.write_text("{not json")

        with pytest.raises(RegistryError):
            await registry.get(INSTANCES_NAMESPACE, "0")

    @pytest.mark.parametrize("key", ["", "..", "a/b"])
    async def test_invalid_keys(self, registry, key):
        with pytest.raises(RegistryError):
            await registry.put(INSTANCES_NAMESPACE, key, {})


class FakeBlobService:
    """Minimal Blob service: containers, block blobs and paged listings"""

    def __init__(self, page_size: int = 1):
        self.containers: Dict[str, Dict[str, bytes]] = {}
        self.page_size = page_size
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        params = request.url.params
        parts = request.url.path.strip("/").split("/", 1)
        container = parts[0]
        name = parts[1] if len(parts) > 1 else None

        if params.get("sig") != "secret":
            return httpx.Response(403, text="AuthenticationFailed")

        if name is None and request.method == "PUT":
            if container in self.containers:
                return httpx.Response(409, text="ContainerAlreadyExists")
            self.containers[container] = {}
            return httpx.Response(201)

        blobs = self.containers.get(container)
        if blobs is None:
            return httpx.Response(404, text="ContainerNotFound")

        if name is None and params.get("comp") == "list":
            names = sorted(blobs)
            start = int(params.get("marker", "0"))
            page = names[start:start + self.page_size]
            next_marker = str(start + self.page_size) if start + self.page_size < len(names) else ""
            body = "".join(f"<Blob><Name>{escape(n)}</Name></Blob>" for n in page)
            xml = (f'<?xml version="1.0" encoding="utf-8"?><EnumerationResults>'
                   f"<Blobs>{body}</Blobs><NextMarker>{next_marker}</NextMarker></EnumerationResults>")
            return httpx.Response(200, content=xml.encode("utf-8"))

        if request.method == "PUT":
            assert request.headers["x-ms-blob-type"] == "BlockBlob"
            blobs[name] = request.content
            return httpx.Response(201)
        if request.method == "GET":
            if name not in blobs:
                return httpx.Response(404, text="BlobNotFound")
            return httpx.Response(200, content=blobs[name])
        if request.method == "DELETE":
            if name not in blobs:
                return httpx.Response(404, text="BlobNotFound")
            del blobs[name]
            return httpx.Response(202)
        return httpx.Response(400)


class TestBlobRegistry:
    """Blob storage over a mocked HTTP transport"""

    @pytest.fixture
    def service(self):
        return FakeBlobService()

    @pytest.fixture
    async def registry(self, service):
        registry = BlobRegistry("https://acct.blob.core.windows.net/", "?sv=2021&sig=secret",
                                transport=httpx.MockTransport(service))
        yield registry
        await registry.close()

    async def test_put_get_list_delete(self, registry, service):
        await registry.put(INSTANCES_NAMESPACE, "0", {"privateIp": "10.0.1.4"})
        await registry.put(INSTANCES_NAMESPACE, "1", {"privateIp": "10.0.1.5"})
        await registry.put(INSTANCES_NAMESPACE, "2", {"privateIp": "10.0.1.6"})

        assert json.loads(service.containers[INSTANCES_NAMESPACE]["0"]) == {"privateIp": "10.0.1.4"}
        assert await registry.get(INSTANCES_NAMESPACE, "1") == {"privateIp": "10.0.1.5"}
        assert sorted(key for key, _ in await registry.list(INSTANCES_NAMESPACE)) == ["0", "1", "2"]

        await registry.delete(INSTANCES_NAMESPACE, "1")
        assert sorted(key for key, _ in await registry.list(INSTANCES_NAMESPACE)) == ["0", "2"]

    async def test_container_is_created_once(self, registry, service):
        await registry.put(INSTANCES_NAMESPACE, "0", {})
        await registry.put(INSTANCES_NAMESPACE, "1", {})

        creates = [r for r in service.requests if r.method == "PUT" and r.url.params.get("restype") == "container"]
        assert len(creates) == 1

    async def test_existing_container_is_accepted(self, registry, service):
        service.containers[INSTANCES_NAMESPACE] = {"0": b"{}"}

        assert await registry.list(INSTANCES_NAMESPACE) == [("0", {})]

    async def test_missing_blob(self, registry):
        with pytest.raises(RecordNotFound):
            await registry.get(INSTANCES_NAMESPACE, "missing")
        await registry.delete(INSTANCES_NAMESPACE, "missing")

    async def test_requests_carry_sas_and_version(self, registry, service):
        await registry.put(INSTANCES_NAMESPACE, "0", {})

        for request in service.requests:
            assert request.url.params["sv"] == "2021"
            assert request.headers["x-ms-version"] == "2021-08-06"

    async def test_auth_failure_is_a_registry_error(self, service):
        registry = BlobRegistry("https://acct.blob.core.windows.net", "sig=wrong",
                                transport=httpx.MockTransport(service))
        try:
            with pytest.raises(RegistryError):
                await registry.put(INSTANCES_NAMESPACE, "0", {})
        finally:
            await registry.close()
