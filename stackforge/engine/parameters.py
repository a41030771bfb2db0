"""
Stackforge - Parameter Binding

Merges supplied parameter values with declared defaults and checks them
against the declared constraints before any reference is resolved.
"""

from __future__ import annotations
from typing import Any, Dict, List, Optional
import logging
import re

from stackforge.engine.errors import InvalidParameterValue, ProviderError
from stackforge.models import ParameterBinding, Template
from stackforge.providers.base import CloudProvider

logger = logging.getLogger(__name__)

NUMBER_PATTERN = re.compile(r"^-?\d+(\.\d+)?$")


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str) and NUMBER_PATTERN.match(value.strip()):
        return float(value)
    return None


def _check_value(binding: ParameterBinding, value: Any) -> List[str]:
    """Constraint checks for a single (non-list) value."""
    errors = []
    name = binding.name

    if binding.type in ("Number", "List<Number>"):
        number = _as_number(value)
        if number is None:
            return [f"Parameter '{name}' must be a number, got '{value}'"]
        if binding.min_value is not None and number < binding.min_value:
            errors.append(f"Parameter '{name}' must be at least {binding.min_value}")
        if binding.max_value is not None and number > binding.max_value:
            errors.append(f"Parameter '{name}' must be at most {binding.max_value}")
    else:
        text = str(value)
        if binding.min_length is not None and len(text) < binding.min_length:
            errors.append(f"Parameter '{name}' must be at least {binding.min_length} characters")
        if binding.max_length is not None and len(text) > binding.max_length:
            errors.append(f"Parameter '{name}' must be at most {binding.max_length} characters")
        if binding.allowed_pattern and not re.fullmatch(binding.allowed_pattern, text):
            errors.append(
                f"Parameter '{name}' must match pattern {binding.allowed_pattern}"
            )

    if binding.allowed_values is not None:
        allowed = [str(v) for v in binding.allowed_values]
        if str(value) not in allowed:
            errors.append(
                f"Parameter '{name}' must be one of {allowed}, got '{value}'"
            )
    return errors


def bind_parameters(
    template: Template,
    supplied: Optional[Dict[str, Any]],
    provider: Optional[CloudProvider] = None,
) -> Dict[str, Any]:
    """
    Produce the final parameter values for a template.

    Args:
        template: Parsed template
        supplied: Caller-supplied values by parameter name
        provider: Used to resolve parameter-store typed parameters

    Returns:
        Parameter values by name. List parameters become lists; values of
        parameter-store typed parameters are looked up through the provider.

    Raises:
        InvalidParameterValue: If any value is missing or invalid
    """
    supplied = supplied or {}
    errors: List[str] = []
    values: Dict[str, Any] = {}

    for name in supplied:
        if name not in template.parameters:
            errors.append(f"Parameter '{name}' is not declared by the template")

    for name, binding in template.parameters.items():
        if name in supplied:
            raw = supplied[name]
        elif binding.default is not None:
            raw = binding.default
        else:
            errors.append(f"Parameter '{name}' requires a value")
            continue

        if binding.is_list:
            items = raw if isinstance(raw, list) else [
                item.strip() for item in str(raw).split(",")
            ]
            for item in items:
                errors.extend(_check_value(binding, item))
            values[name] = [str(item) for item in items]
            continue

        if isinstance(raw, (dict, list)):
            errors.append(f"Parameter '{name}' must be a scalar value")
            continue

        errors.extend(_check_value(binding, raw))
        values[name] = str(raw)

    if errors:
        raise InvalidParameterValue(
            f"Parameter validation failed: {errors[0]}", errors=errors
        )

    for name, binding in template.parameters.items():
        if not binding.is_parameter_store_path:
            continue
        if provider is None:
            raise InvalidParameterValue(
                f"Parameter '{name}' needs a provider to resolve '{values[name]}'",
                node=name,
            )
        try:
            values[name] = provider.resolve_parameter(values[name])
        except ProviderError as e:
            raise InvalidParameterValue(
                f"Parameter '{name}' could not be resolved: {e.message}", node=name
            )
        logger.debug(f"Resolved parameter-store value for {name}")

    return values
