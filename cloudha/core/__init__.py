"""Core building blocks: configuration, context, errors, models and retry helpers"""

from .config import Config
from .context import HAContext
from .errors import (
    CloudApiError,
    CloudHAError,
    ConfigurationError,
    DeviceError,
    LockTimeout,
    NoEligiblePrimary,
    NoInstances,
    ReconciliationError,
    RecordNotFound,
    RegistryError,
    ResourceIdError,
    TransientCloudError,
)
from .models import FailoverRunRecord, InstanceRecord, NetworkMutationPlan, RunStatus
from .resource_id import ResourceId
from .retry import poll_until, retry

__all__ = [
    "Config",
    "HAContext",
    "CloudHAError",
    "ConfigurationError",
    "NoInstances",
    "NoEligiblePrimary",
    "CloudApiError",
    "TransientCloudError",
    "DeviceError",
    "RegistryError",
    "RecordNotFound",
    "LockTimeout",
    "ResourceIdError",
    "ReconciliationError",
    "InstanceRecord",
    "FailoverRunRecord",
    "NetworkMutationPlan",
    "RunStatus",
    "ResourceId",
    "retry",
    "poll_until",
]
