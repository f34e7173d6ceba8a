"""
cloudha configuration

Settings come from, in increasing precedence: defaults, a YAML file,
CLOUDHA_* environment variables and explicit overrides (CLI options).
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_FILE = "/config/cloud/cloudha.yaml"
DEFAULT_MANAGED_ROUTES_FILE = "/config/cloud/managedRoutes"
ENV_PREFIX = "CLOUDHA_"


class Config(BaseModel):
    """Runtime configuration"""

    # Azure
    subscription_id: Optional[str] = None
    resource_group: Optional[str] = None
    scale_set: Optional[str] = None
    unique_label: str = ""
    access_token: Optional[str] = None
    arm_endpoint: str = "https://management.azure.com"
    arm_timeout: float = 60.0

    # Registry
    storage_url: Optional[str] = None
    storage_sas: Optional[str] = None
    registry_dir: Optional[str] = None

    # Local device
    device_host: str = "localhost"
    device_port: int = 443
    device_user: str = "admin"
    device_password: Optional[str] = None
    device_timeout: float = 30.0

    # Routes and tags
    managed_routes: List[str] = Field(default_factory=list)
    managed_routes_file: str = DEFAULT_MANAGED_ROUTES_FILE
    ownership_tag_key: str = "f5_tg"
    self_ip_tag_key: str = "f5_ha"
    private_ip_tag_key: str = "f5_privateIp"
    subnet_tag_key: str = "f5_privateIpSubnet"
    external_tag: Optional[str] = None

    # Failover run
    lock_file: str = "/config/cloud/failoverState"
    lock_attempts: int = 30
    lock_interval: float = 1.0
    max_running_task_seconds: float = 300.0
    status_poll_interval: float = 5.0
    mutation_retries: int = 4
    mutation_retry_interval: float = 15.0

    # Topology
    hostname_retries: int = 3
    hostname_retry_interval: float = 0.3
    hostname_timeout: float = 10.0
    instance_expiry_seconds: float = 600.0
    license_pool: bool = False

    # Logging
    log_level: str = "info"
    log_file: Optional[str] = "/var/log/cloud/azure/failover.log"

    @field_validator("managed_routes", mode="before")
    @classmethod
    def _split_routes(cls, value: Any) -> Any:
        if isinstance(value, str):
            return parse_route_list(value)
        return value

    @classmethod
    def load(cls, path: Optional[str] = None, overrides: Optional[Dict[str, Any]] = None,
             environ: Optional[Dict[str, str]] = None) -> "Config":
        """Load configuration from file, environment and overrides"""
        data: Dict[str, Any] = {}

        config_path = Path(path or DEFAULT_CONFIG_FILE)
        if config_path.exists():
            try:
                with open(config_path) as f:
                    loaded = yaml.safe_load(f) or {}
            except (OSError, yaml.YAMLError) as e:
                raise ConfigurationError(f"Failed to load config {config_path}: {e}")
            if not isinstance(loaded, dict):
                raise ConfigurationError(f"Config {config_path} must be a mapping")
            data.update(loaded)
        elif path:
            raise ConfigurationError(f"Config file not found: {path}")

        environ = os.environ if environ is None else environ
        for name in cls.model_fields:
            env_value = environ.get(f"{ENV_PREFIX}{name.upper()}")
            if env_value is not None:
                data[name] = env_value

        data.update({k: v for k, v in (overrides or {}).items() if v is not None})

        try:
            config = cls(**data)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}")

        if not config.managed_routes:
            config.managed_routes = read_managed_routes(config.managed_routes_file)
        return config

    def require(self, *names: str):
        """Raise ConfigurationError unless every named setting is set"""
        missing = [name for name in names if not getattr(self, name)]
        if missing:
            raise ConfigurationError(f"Missing required configuration: {', '.join(missing)}")


def parse_route_list(text: str) -> List[str]:
    """Split a comma-separated prefix list, ignoring line breaks"""
    cleaned = text.replace("\r", "").replace("\n", "")
    return [prefix.strip() for prefix in cleaned.split(",") if prefix.strip()]


def read_managed_routes(path: str) -> List[str]:
    """Read the legacy managed-routes file, empty if absent"""
    routes_path = Path(path)
    if not routes_path.exists():
        logger.info("Managed routes file not found")
        return []
    logger.debug(f"Managed routes file found: {routes_path}")
    return parse_route_list(routes_path.read_text(encoding="utf-8"))
