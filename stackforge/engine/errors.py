"""
Stackforge - Error Taxonomy

Static errors (raised before any provider call) derive from TemplateError.
Provider errors are split into transient (retried by the executor) and
fatal (abort the failing resource and everything depending on it).
"""

from __future__ import annotations
from typing import List, Optional, Sequence


class StackforgeError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(self.message)


# =============================================================================
# STATIC (PRE-EXECUTION) ERRORS
# =============================================================================

class TemplateError(StackforgeError):
    """A template that cannot be provisioned as written."""

    def __init__(
        self,
        message: str,
        node: Optional[str] = None,
        errors: Optional[List[str]] = None,
    ):
        self.node = node
        self.errors = errors or [message]
        super().__init__(message)


class MalformedTemplate(TemplateError):
    """Syntax error or structurally invalid document."""


class UnknownResourceType(TemplateError):
    """A resource declares a type tag no handler is registered for."""

    def __init__(self, resource_type: str, node: str):
        self.resource_type = resource_type
        super().__init__(
            f"Resource '{node}' has unknown type '{resource_type}'",
            node=node,
        )


class InvalidParameterValue(TemplateError):
    """A parameter value is missing or violates its declared constraints."""


class UnresolvedReference(TemplateError):
    """A reference names no resource, parameter, mapping or export."""

    def __init__(self, reference: str, node: Optional[str] = None, detail: str = ""):
        self.reference = reference
        where = f" in '{node}'" if node else ""
        message = f"Unresolved reference '{reference}'{where}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, node=node)


class CyclicDependency(TemplateError):
    """The dependency relation between resources contains a cycle."""

    def __init__(self, cycle: Sequence[str]):
        self.cycle = list(cycle)
        super().__init__(
            f"Circular dependency between resources: {' -> '.join(self.cycle)}",
            node=self.cycle[0] if self.cycle else None,
        )


# =============================================================================
# PROVIDER ERRORS
# =============================================================================

class ProviderError(StackforgeError):
    """Error returned by the cloud provider."""

    def __init__(self, message: str, code: Optional[str] = None):
        self.code = code
        super().__init__(message)


class TransientProviderError(ProviderError):
    """Rate limiting, throttling or eventual-consistency lookup miss."""


class FatalProviderError(ProviderError):
    """Invalid property, quota exceeded or any other non-retryable error."""


# =============================================================================
# STACK OPERATION ERRORS
# =============================================================================

class StackOperationError(StackforgeError):
    """A stack operation was refused (export in use, operation in flight)."""
