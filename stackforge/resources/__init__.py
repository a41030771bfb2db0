"""
Stackforge - Resource Types Package

Importing this package registers every supported resource type.
"""

from stackforge.resources.base import ResourceHandler, ResourceTypeRegistry
from stackforge.resources import compute, load_balancing, network

__all__ = [
    "ResourceHandler",
    "ResourceTypeRegistry",
    "compute",
    "load_balancing",
    "network",
]
