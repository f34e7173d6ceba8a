"""
cloudha error taxonomy

Every failure a failover or election pass can surface maps to one of these
classes. HTTP clients translate transport and status errors into them at the
client boundary so the engines never see httpx exceptions.
"""

from typing import List, Optional


class CloudHAError(Exception):
    """Base exception for cloudha"""
    pass


class ConfigurationError(CloudHAError):
    """Missing or invalid configuration, raised before any cloud call"""
    pass


class NoInstances(CloudHAError):
    """Election was asked to pick from an empty instance map"""
    pass


class NoEligiblePrimary(CloudHAError):
    """No instance passed the eligibility filter"""
    pass


class CloudApiError(CloudHAError):
    """Cloud API error"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class TransientCloudError(CloudApiError):
    """Rate-limit class cloud API error, safe to retry"""
    pass


class DeviceError(CloudHAError):
    """BIG-IP device API error"""
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class RegistryError(CloudHAError):
    """Registry read or write failed"""
    pass


class RecordNotFound(RegistryError):
    """Registry key does not exist"""
    pass


class LockTimeout(CloudHAError):
    """Local failover lock could not be acquired in time"""
    pass


class ResourceIdError(CloudHAError):
    """Resource identifier does not have the expected shape"""
    pass


class ReconciliationError(CloudHAError):
    """One or more cloud mutations in a batch failed"""
    def __init__(self, message: str, errors: Optional[List[BaseException]] = None):
        super().__init__(message)
        self.errors = errors or []
