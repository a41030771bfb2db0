"""
Stackforge - Resource Handler Interface

Defines the handler interface and registry for supported resource types.
Every type tag a template may use must have a registered handler.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional, Type
import logging

logger = logging.getLogger(__name__)


class ResourceHandler:
    """
    Engine-side knowledge about one resource type.

    Handlers know which properties a type requires, which it accepts and
    which attributes `Fn::GetAtt` may read from it. They never talk to the
    provider themselves.
    """

    # Handler metadata (override in subclasses)
    TYPE_NAME: str = ""
    KIND: str = "network"
    REQUIRED_PROPERTIES: List[str] = []
    OPTIONAL_PROPERTIES: List[str] = []
    ATTRIBUTES: List[str] = []

    def validate(self, properties: Dict[str, Any]) -> List[str]:
        """
        Validate rendered resource properties.

        Args:
            properties: Properties with every reference already rendered

        Returns:
            List of validation errors (empty if valid)
        """
        errors = []
        known = set(self.REQUIRED_PROPERTIES) | set(self.OPTIONAL_PROPERTIES) | {"Tags"}

        for name in self.REQUIRED_PROPERTIES:
            if properties.get(name) in (None, "", []):
                errors.append(f"{self.TYPE_NAME} requires property '{name}'")

        for name in properties:
            if name not in known:
                errors.append(f"{self.TYPE_NAME} does not support property '{name}'")

        tags = properties.get("Tags")
        if tags is not None:
            if not isinstance(tags, list) or not all(
                isinstance(t, dict) and "Key" in t and "Value" in t for t in tags
            ):
                errors.append("Tags must be a list of {Key, Value} mappings")

        errors.extend(self.validate_values(properties))
        return errors

    def validate_values(self, properties: Dict[str, Any]) -> List[str]:
        """Type-specific value checks. Override in subclasses."""
        return []

    def has_attribute(self, attribute: str) -> bool:
        return attribute in self.ATTRIBUTES


class ResourceTypeRegistry:
    """
    Registry for managing supported resource types.

    Usage:
        ResourceTypeRegistry.register(VpcHandler)
        handler = ResourceTypeRegistry.get("AWS::EC2::VPC")
    """

    _handlers: Dict[str, Type[ResourceHandler]] = {}

    @classmethod
    def register(cls, handler_class: Type[ResourceHandler]) -> Type[ResourceHandler]:
        """Register a handler class. Usable as a class decorator."""
        cls._handlers[handler_class.TYPE_NAME] = handler_class
        logger.debug(f"Registered resource type: {handler_class.TYPE_NAME}")
        return handler_class

    @classmethod
    def get(cls, type_name: str) -> Optional[ResourceHandler]:
        """Get handler instance by type tag."""
        handler_class = cls._handlers.get(type_name)
        if handler_class:
            return handler_class()
        return None

    @classmethod
    def is_known(cls, type_name: str) -> bool:
        return type_name in cls._handlers

    @classmethod
    def available(cls) -> List[str]:
        """Get list of supported type tags."""
        return sorted(cls._handlers.keys())

    @classmethod
    def by_kind(cls, kind: str) -> List[str]:
        return sorted(
            name for name, handler in cls._handlers.items() if handler.KIND == kind
        )
