"""
Stackforge - Cloud Provider Interface

Defines the abstract interface every cloud provider must implement.
The engine only issues typed create/read/update/delete requests through
this interface and interprets their responses.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


@dataclass
class ProviderResult:
    """Identity and readable attributes of a provisioned resource."""
    physical_id: str
    attributes: Dict[str, Any] = field(default_factory=dict)


class CloudProvider(ABC):
    """
    Abstract base class for cloud providers.

    Implementations raise TransientProviderError for conditions worth
    retrying and FatalProviderError for everything else.
    """

    def __init__(self, region: str, account_id: Optional[str] = None):
        """
        Initialize provider for a region.

        Args:
            region: Region all resources are created in
            account_id: Account identifier, looked up by providers that can
        """
        self.region = region
        self.account_id = account_id or "123456789012"

    @property
    def partition(self) -> str:
        if self.region.startswith("cn-"):
            return "aws-cn"
        if self.region.startswith("us-gov-"):
            return "aws-us-gov"
        return "aws"

    @property
    def url_suffix(self) -> str:
        return "amazonaws.com.cn" if self.partition == "aws-cn" else "amazonaws.com"

    @abstractmethod
    def create_resource(
        self,
        resource_type: str,
        logical_id: str,
        properties: Dict[str, Any],
        idempotency_token: str,
    ) -> str:
        """
        Create a resource.

        Retrying with the same idempotency token must not create a second
        resource.

        Args:
            resource_type: Type tag (e.g. AWS::EC2::VPC)
            logical_id: Template name of the resource, used for naming
            properties: Fully rendered properties
            idempotency_token: Client-supplied deduplication token

        Returns:
            Physical identifier of the resource
        """
        pass

    @abstractmethod
    def read_resource(self, resource_type: str, physical_id: str) -> ProviderResult:
        """
        Read a resource's attributes.

        Raises TransientProviderError while a freshly created resource is
        not yet visible.
        """
        pass

    @abstractmethod
    def update_resource(
        self,
        resource_type: str,
        physical_id: str,
        properties: Dict[str, Any],
        previous_properties: Dict[str, Any],
    ) -> str:
        """
        Update a resource in place.

        Returns:
            Physical identifier (unchanged for in-place updates)
        """
        pass

    @abstractmethod
    def delete_resource(self, resource_type: str, physical_id: str) -> None:
        """Delete a resource. Deleting an absent resource is not an error."""
        pass

    @abstractmethod
    def resolve_parameter(self, path: str) -> str:
        """Look up a value in the provider's parameter store."""
        pass

    @abstractmethod
    def availability_zones(self) -> List[str]:
        """Availability zones of the provider's region."""
        pass


class ProviderFactory:
    """
    Factory for creating cloud providers.

    Usage:
        provider = ProviderFactory.create("fake", region="us-east-1")
    """

    _providers: Dict[str, type] = {}

    @classmethod
    def register(cls, provider_type: str, provider_class: type) -> None:
        """Register a provider type."""
        cls._providers[provider_type] = provider_class

    @classmethod
    def create(
        cls,
        provider_type: str,
        region: str,
        account_id: Optional[str] = None,
        **kwargs,
    ) -> CloudProvider:
        """
        Create a provider instance.

        Raises:
            ValueError: If provider type is not registered
        """
        if provider_type not in cls._providers:
            raise ValueError(
                f"Unknown provider type: {provider_type}. "
                f"Available: {list(cls._providers.keys())}"
            )
        return cls._providers[provider_type](region, account_id, **kwargs)

    @classmethod
    def available_providers(cls) -> List[str]:
        """Get list of available provider types."""
        return list(cls._providers.keys())
