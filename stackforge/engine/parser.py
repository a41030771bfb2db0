"""
Stackforge - Template Parser

Parses and validates template documents (YAML or JSON).
Transforms the raw document into a Template of resource nodes,
parameter bindings, mappings and outputs.
"""

from __future__ import annotations
from typing import Any, Dict, List, Tuple
import logging
import re
import yaml
from pydantic import ValidationError

from stackforge.engine.errors import MalformedTemplate, TemplateError, UnknownResourceType
from stackforge.models import OutputDefinition, ParameterBinding, ResourceNode, Template
from stackforge.resources import ResourceTypeRegistry

logger = logging.getLogger(__name__)

LOGICAL_ID_PATTERN = re.compile(r"^[A-Za-z0-9]+$")

# Short-form tags whose long form is "Fn::<Name>"
FN_TAGS = [
    "Base64", "FindInMap", "GetAZs", "ImportValue", "Join",
    "Select", "Split", "Sub", "Cidr", "GetAtt",
]


class TemplateLoader(yaml.SafeLoader):
    """SafeLoader that understands the short-form intrinsic function tags."""


def _construct_node(loader: yaml.SafeLoader, node: yaml.Node) -> Any:
    if isinstance(node, yaml.ScalarNode):
        return loader.construct_scalar(node)
    if isinstance(node, yaml.SequenceNode):
        return loader.construct_sequence(node, deep=True)
    return loader.construct_mapping(node, deep=True)


def _construct_ref(loader: yaml.SafeLoader, node: yaml.Node) -> Dict[str, Any]:
    return {"Ref": _construct_node(loader, node)}


def _construct_get_att(loader: yaml.SafeLoader, node: yaml.Node) -> Dict[str, Any]:
    value = _construct_node(loader, node)
    if isinstance(value, str):
        value = value.split(".", 1)
    return {"Fn::GetAtt": value}


def _fn_constructor(name: str):
    def construct(loader: yaml.SafeLoader, node: yaml.Node) -> Dict[str, Any]:
        return {f"Fn::{name}": _construct_node(loader, node)}
    return construct


TemplateLoader.add_constructor("!Ref", _construct_ref)
for _name in FN_TAGS:
    if _name != "GetAtt":
        TemplateLoader.add_constructor(f"!{_name}", _fn_constructor(_name))
TemplateLoader.add_constructor("!GetAtt", _construct_get_att)


class TemplateParser:
    """
    Parser for declarative infrastructure templates.

    Responsibilities:
    - Parse YAML/JSON content, including short-form intrinsic tags
    - Validate the document structure
    - Reject resource types without a registered handler
    - Transform to domain model (Template)
    """

    FORMAT_VERSION = "2010-09-09"

    # Top-level sections understood by the engine
    SUPPORTED_SECTIONS = [
        "AWSTemplateFormatVersion",
        "Description",
        "Metadata",
        "Parameters",
        "Mappings",
        "Resources",
        "Outputs",
    ]

    # Known but not implemented
    UNSUPPORTED_SECTIONS = ["Conditions", "Transform", "Rules"]

    RESOURCE_KEYS = [
        "Type",
        "Properties",
        "DependsOn",
        "DeletionPolicy",
        "UpdateReplacePolicy",
        "Metadata",
    ]

    PARAMETER_KEYS = {
        "Type": "type",
        "Default": "default",
        "AllowedValues": "allowed_values",
        "Description": "description",
        "AllowedPattern": "allowed_pattern",
        "MinLength": "min_length",
        "MaxLength": "max_length",
        "MinValue": "min_value",
        "MaxValue": "max_value",
        "NoEcho": "no_echo",
        "ConstraintDescription": None,
    }

    def __init__(self):
        """Initialize parser."""
        self.logger = logging.getLogger(__name__)

    def parse(self, content: str) -> Template:
        """
        Parse template content into a Template.

        Args:
            content: Template document string

        Returns:
            Validated Template

        Raises:
            MalformedTemplate: If the document is not valid
            UnknownResourceType: If a resource type has no handler
        """
        # Step 1: Parse document syntax
        raw = self._parse_document(content)

        # Step 2: Validate structure
        errors = self._validate_structure(raw)
        if errors:
            node, first = errors[0]
            raise MalformedTemplate(
                f"Template validation failed: {first}",
                node=node,
                errors=[message for _, message in errors],
            )

        # Step 3: Check resource types
        for logical_id, resource in raw["Resources"].items():
            if not ResourceTypeRegistry.is_known(resource["Type"]):
                raise UnknownResourceType(resource["Type"], node=logical_id)

        # Step 4: Transform to domain model
        try:
            template = self._transform_to_model(raw)
        except ValidationError as e:
            messages = [f"{err['loc']}: {err['msg']}" for err in e.errors()]
            raise MalformedTemplate("Model validation failed", errors=messages)

        self.logger.info(
            f"Parsed template: {len(template.resources)} resources, "
            f"{len(template.parameters)} parameters, {len(template.outputs)} outputs"
        )
        return template

    def _parse_document(self, content: str) -> Dict[str, Any]:
        """
        Parse document string to dictionary.

        Raises:
            MalformedTemplate: If the syntax is invalid
        """
        try:
            document = yaml.load(content, Loader=TemplateLoader)
        except yaml.YAMLError as e:
            mark = getattr(e, "problem_mark", None)
            node = f"line {mark.line + 1}" if mark is not None else None
            raise MalformedTemplate(f"Template syntax error: {e}", node=node)

        if document is None:
            raise MalformedTemplate("Empty template")
        if not isinstance(document, dict):
            raise MalformedTemplate("Template must be a mapping")
        return document

    def _validate_structure(self, raw: Dict[str, Any]) -> List[Tuple[str, str]]:
        """
        Validate template structure.

        Returns:
            List of (offending node, message) pairs
        """
        errors: List[Tuple[str, str]] = []

        for section in raw:
            if section in self.UNSUPPORTED_SECTIONS:
                errors.append((section, f"Section '{section}' is not supported"))
            elif section not in self.SUPPORTED_SECTIONS:
                errors.append((section, f"Unknown top-level section '{section}'"))

        version = raw.get("AWSTemplateFormatVersion")
        if version is not None and str(version) != self.FORMAT_VERSION:
            errors.append((
                "AWSTemplateFormatVersion",
                f"Unsupported format version '{version}'",
            ))

        resources = raw.get("Resources")
        if resources is None:
            errors.append(("Resources", "Missing required section: 'Resources'"))
        elif not isinstance(resources, dict) or not resources:
            errors.append(("Resources", "Section 'Resources' must be a non-empty mapping"))
        else:
            for logical_id, resource in resources.items():
                errors.extend(self._validate_resource(str(logical_id), resource))

        for section in ("Parameters", "Mappings", "Outputs"):
            if section in raw and not isinstance(raw[section], dict):
                errors.append((section, f"Section '{section}' must be a mapping"))

        if isinstance(raw.get("Parameters"), dict):
            for name, parameter in raw["Parameters"].items():
                if not isinstance(parameter, dict):
                    errors.append((name, f"Parameter '{name}' must be a mapping"))
                    continue
                if "Type" not in parameter:
                    errors.append((name, f"Parameter '{name}' requires 'Type'"))
                for key in parameter:
                    if key not in self.PARAMETER_KEYS:
                        errors.append((name, f"Parameter '{name}' has unknown key '{key}'"))
                allowed = parameter.get("AllowedValues")
                if allowed is not None and not isinstance(allowed, list):
                    errors.append((name, f"Parameter '{name}': AllowedValues must be a list"))
                if isinstance(resources, dict) and name in resources:
                    errors.append((name, f"'{name}' is both a parameter and a resource"))

        if isinstance(raw.get("Mappings"), dict):
            for name, mapping in raw["Mappings"].items():
                if not isinstance(mapping, dict) or not all(
                    isinstance(v, dict) for v in mapping.values()
                ):
                    errors.append((name, f"Mapping '{name}' must be a two-level mapping"))

        if isinstance(raw.get("Outputs"), dict):
            for name, output in raw["Outputs"].items():
                if not isinstance(output, dict) or "Value" not in output:
                    errors.append((name, f"Output '{name}' requires 'Value'"))
                    continue
                export = output.get("Export")
                if export is not None and (not isinstance(export, dict) or "Name" not in export):
                    errors.append((name, f"Output '{name}': Export requires 'Name'"))

        return errors

    def _validate_resource(self, logical_id: str, resource: Any) -> List[Tuple[str, str]]:
        errors: List[Tuple[str, str]] = []

        if not LOGICAL_ID_PATTERN.match(logical_id):
            errors.append((logical_id, f"Logical id '{logical_id}' must be alphanumeric"))
        if not isinstance(resource, dict):
            return errors + [(logical_id, f"Resource '{logical_id}' must be a mapping")]

        if "Condition" in resource:
            errors.append((logical_id, f"Resource '{logical_id}': Condition is not supported"))
        for key in resource:
            if key not in self.RESOURCE_KEYS and key != "Condition":
                errors.append((logical_id, f"Resource '{logical_id}' has unknown key '{key}'"))

        if not isinstance(resource.get("Type"), str):
            errors.append((logical_id, f"Resource '{logical_id}' requires a string 'Type'"))

        properties = resource.get("Properties")
        if properties is not None and not isinstance(properties, dict):
            errors.append((logical_id, f"Resource '{logical_id}': Properties must be a mapping"))

        depends_on = resource.get("DependsOn")
        if depends_on is not None:
            names = depends_on if isinstance(depends_on, list) else [depends_on]
            if not all(isinstance(n, str) for n in names):
                errors.append((
                    logical_id,
                    f"Resource '{logical_id}': DependsOn must be a string or list of strings",
                ))

        policy = resource.get("DeletionPolicy")
        if policy is not None and policy not in ("Delete", "Retain"):
            errors.append((logical_id, f"Resource '{logical_id}': unsupported DeletionPolicy"))

        return errors

    def _transform_to_model(self, raw: Dict[str, Any]) -> Template:
        """Transform the validated dictionary into a Template."""
        parameters = {
            name: self._parameter_binding(name, spec)
            for name, spec in (raw.get("Parameters") or {}).items()
        }

        resources = {}
        for index, (logical_id, resource) in enumerate(raw["Resources"].items()):
            depends_on = resource.get("DependsOn") or []
            if isinstance(depends_on, str):
                depends_on = [depends_on]
            resources[logical_id] = ResourceNode(
                logical_id=logical_id,
                type=resource["Type"],
                properties=resource.get("Properties") or {},
                declaration_index=index,
                depends_on=tuple(depends_on),
                deletion_policy=resource.get("DeletionPolicy", "Delete"),
            )

        outputs = {}
        for name, output in (raw.get("Outputs") or {}).items():
            export = output.get("Export") or {}
            outputs[name] = OutputDefinition(
                name=name,
                value=output["Value"],
                description=output.get("Description"),
                export_name=export.get("Name"),
            )

        version = raw.get("AWSTemplateFormatVersion")
        return Template(
            format_version=str(version) if version is not None else None,
            description=raw.get("Description"),
            parameters=parameters,
            mappings=raw.get("Mappings") or {},
            resources=resources,
            outputs=outputs,
        )

    def _parameter_binding(self, name: str, spec: Dict[str, Any]) -> ParameterBinding:
        fields: Dict[str, Any] = {"name": name}
        for key, field_name in self.PARAMETER_KEYS.items():
            if field_name and key in spec:
                fields[field_name] = spec[key]
        if isinstance(fields.get("no_echo"), str):
            fields["no_echo"] = fields["no_echo"].lower() == "true"
        return ParameterBinding(**fields)

    def parse_file(self, file_path: str) -> Template:
        """
        Parse template from file.

        Raises:
            MalformedTemplate: If file cannot be read or parsed
        """
        try:
            with open(file_path, "r", encoding="utf-8") as f:
                content = f.read()
        except IOError as e:
            raise MalformedTemplate(f"Cannot read file: {str(e)}", node=file_path)

        return self.parse(content)

    def validate_only(self, content: str) -> Tuple[bool, List[str]]:
        """
        Validate a template without returning the model.

        Returns:
            Tuple of (is_valid, error_list)
        """
        try:
            self.parse(content)
            return True, []
        except TemplateError as e:
            return False, e.errors


# Singleton instance
parser = TemplateParser()


def get_parser() -> TemplateParser:
    """Get parser instance."""
    return parser
