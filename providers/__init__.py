"""
providers/__init__.py

Public API for the providers package.

Usage:
    from providers import get_provider
    provider = get_provider("aws", region="eu-west-1")   # returns AWSProvider
"""

from typing import Dict, Type

from .base import (
    CloudProvider,
    ImageFilter,
    ImageInfo,
    InstanceDetails,
    InstanceHandle,
    InstanceSpec,
    KeyMaterial,
    ProviderError,
    ProviderTimeout,
    ResourceUsage,
    SecurityGroupInfo,
    SecurityRule,
)
from .aws_provider import AWSProvider

# Registry: add new providers here, nothing else needs to change
_PROVIDERS: Dict[str, Type[CloudProvider]] = {
    "aws": AWSProvider,
}


def get_provider(name: str, region: str) -> CloudProvider:
    """
    Factory function. Returns a provider instance bound to `region`.

    Raises:
        ValueError: if the provider name is not registered.
    """
    key = name.lower().strip()
    provider_class = _PROVIDERS.get(key)
    if not provider_class:
        supported = ", ".join(_PROVIDERS.keys())
        raise ValueError(
            f"Unknown provider '{name}'. Supported providers: {supported}"
        )
    return provider_class(region)


__all__ = [
    "get_provider",
    "AWSProvider",
    "CloudProvider",
    "ImageFilter",
    "ImageInfo",
    "InstanceDetails",
    "InstanceHandle",
    "InstanceSpec",
    "KeyMaterial",
    "ProviderError",
    "ProviderTimeout",
    "ResourceUsage",
    "SecurityGroupInfo",
    "SecurityRule",
]
