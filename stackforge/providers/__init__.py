"""
Stackforge - Providers Package

Provider interface and implementations for the cloud resource-management API.
The factory allows swapping between the fake (simulation) and AWS providers.
"""

from stackforge.providers.base import CloudProvider, ProviderFactory, ProviderResult
from stackforge.providers.fake_cloud import FakeCloudProvider
from stackforge.providers.aws import AwsProvider

__all__ = [
    "AwsProvider",
    "CloudProvider",
    "FakeCloudProvider",
    "ProviderFactory",
    "ProviderResult",
]
