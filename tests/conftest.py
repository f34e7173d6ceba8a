"""Shared pytest fixtures"""

import pytest

from cloudha.core.config import Config
from cloudha.core.context import HAContext
from cloudha.storage.registry import FileRegistry

from .fakes import RG, SCALE_SET, SUB, FakeDevice, FakeDeviceFactory, FakeInventory, device_payloads


@pytest.fixture
def config(tmp_path):
    """Config with fast timings and everything local to tmp_path"""
    return Config(
        subscription_id=SUB,
        resource_group=RG,
        scale_set=SCALE_SET,
        unique_label="f5vm",
        registry_dir=str(tmp_path / "registry"),
        managed_routes=["10.0.1.0/24", "10.0.4.0/24"],
        managed_routes_file=str(tmp_path / "managedRoutes"),
        lock_file=str(tmp_path / "failoverState"),
        lock_attempts=3,
        lock_interval=0.01,
        status_poll_interval=0.01,
        mutation_retries=1,
        mutation_retry_interval=0.0,
        hostname_retries=0,
        hostname_retry_interval=0.0,
        hostname_timeout=1.0,
        log_file=None,
    )


@pytest.fixture
def registry(config):
    return FileRegistry(config.registry_dir)


@pytest.fixture
def inventory():
    return FakeInventory()


@pytest.fixture
def device():
    return FakeDevice(device_payloads())


@pytest.fixture
def device_factory():
    return FakeDeviceFactory()


@pytest.fixture
def context(config, inventory, registry, device, device_factory):
    return HAContext(
        config=config,
        inventory=inventory,
        registry=registry,
        device=device,
        device_factory=device_factory,
    )
