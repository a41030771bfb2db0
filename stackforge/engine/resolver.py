"""
Stackforge - Reference Resolver

Walks every resource's properties in a single eager pass, replacing
intrinsic references with parameter values or pointers to the target
resources, and builds the explicit dependency graph.

Pointers (ResourceRef) and functions over them (Intrinsic) stay in the
resolved properties until the executor renders them with the physical ids
and attributes of already-created resources.
"""

from __future__ import annotations
import base64
import ipaddress
import itertools
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple
import logging

from stackforge.engine.errors import CyclicDependency, MalformedTemplate, UnresolvedReference
from stackforge.models import DependencyGraph, OutputDefinition, ResourceNode, Template
from stackforge.resources import ResourceTypeRegistry

logger = logging.getLogger(__name__)

SUB_VARIABLE = re.compile(r"\$\{([^}]*)\}")


class _NoValue:
    """Marker for AWS::NoValue; the enclosing key or item is dropped."""

    def __repr__(self) -> str:
        return "NO_VALUE"


NO_VALUE = _NoValue()


@dataclass(frozen=True)
class ResourceRef:
    """Pointer to a resource's physical id, or to one of its attributes."""
    logical_id: str
    attribute: Optional[str] = None

    def __str__(self) -> str:
        if self.attribute:
            return f"{self.logical_id}.{self.attribute}"
        return self.logical_id


@dataclass(frozen=True)
class Intrinsic:
    """An intrinsic function whose arguments contain resource pointers."""
    name: str
    args: Tuple[Any, ...] = field(default_factory=tuple)


# =============================================================================
# FUNCTION EVALUATION
# =============================================================================

def _contains_pointer(value: Any) -> bool:
    if isinstance(value, (ResourceRef, Intrinsic)):
        return True
    if isinstance(value, dict):
        return any(_contains_pointer(v) for v in value.values())
    if isinstance(value, (list, tuple)):
        return any(_contains_pointer(v) for v in value)
    return False


def _partition_of(region: str) -> str:
    if region.startswith("cn-"):
        return "aws-cn"
    if region.startswith("us-gov-"):
        return "aws-us-gov"
    return "aws"


def _as_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _apply(name: str, args: Tuple[Any, ...]) -> Any:
    """Evaluate an intrinsic function over concrete arguments."""
    if name == "Fn::Base64":
        return base64.b64encode(_as_text(args[0]).encode("utf-8")).decode("ascii")
    if name == "Fn::Join":
        delimiter, values = args
        return _as_text(delimiter).join(_as_text(v) for v in values if v is not NO_VALUE)
    if name == "Fn::Select":
        index, values = args
        try:
            return list(values)[int(index)]
        except (IndexError, ValueError, TypeError):
            raise MalformedTemplate(f"Fn::Select index {index} is out of range")
    if name == "Fn::Split":
        delimiter, source = args
        return _as_text(source).split(_as_text(delimiter))
    if name == "Fn::Cidr":
        block, count, bits = args
        try:
            network = ipaddress.ip_network(_as_text(block), strict=False)
            count = int(count)
            new_prefix = network.max_prefixlen - int(bits)
            subnets = list(itertools.islice(network.subnets(new_prefix=new_prefix), count))
        except (TypeError, ValueError) as e:
            raise MalformedTemplate(f"Fn::Cidr cannot split {block}: {e}")
        if count < 1 or len(subnets) < count:
            raise MalformedTemplate(
                f"Fn::Cidr cannot carve {count} /{new_prefix} blocks out of {network}"
            )
        return [str(subnet) for subnet in subnets]
    raise MalformedTemplate(f"Unsupported intrinsic function '{name}'")


def render(value: Any, created: Mapping[str, Any]) -> Any:
    """
    Turn resolved properties into concrete values.

    Args:
        value: Resolved value (may contain ResourceRef / Intrinsic)
        created: Logical id -> object with `physical_id` and `attributes`

    Returns:
        The value with every pointer replaced and NO_VALUE entries dropped

    Raises:
        UnresolvedReference: If a pointer targets a resource not in `created`
    """
    if isinstance(value, ResourceRef):
        target = created.get(value.logical_id)
        if target is None or target.physical_id is None:
            raise UnresolvedReference(str(value), detail="target has not been created")
        if value.attribute is None:
            return target.physical_id
        if value.attribute not in target.attributes:
            raise UnresolvedReference(str(value), detail="attribute not reported by provider")
        return target.attributes[value.attribute]
    if isinstance(value, Intrinsic):
        return _apply(value.name, tuple(render(arg, created) for arg in value.args))
    if isinstance(value, dict):
        rendered = {k: render(v, created) for k, v in value.items()}
        return {k: v for k, v in rendered.items() if v is not NO_VALUE}
    if isinstance(value, (list, tuple)):
        rendered_items = [render(v, created) for v in value]
        return [v for v in rendered_items if v is not NO_VALUE]
    return value


def references_in(value: Any) -> Set[str]:
    """Logical ids of every resource a resolved value points at."""
    if isinstance(value, ResourceRef):
        return {value.logical_id}
    if isinstance(value, Intrinsic):
        return set().union(*(references_in(a) for a in value.args)) if value.args else set()
    if isinstance(value, dict):
        return set().union(*(references_in(v) for v in value.values())) if value else set()
    if isinstance(value, (list, tuple)):
        return set().union(*(references_in(v) for v in value)) if value else set()
    return set()


# =============================================================================
# RESOLVER
# =============================================================================

@dataclass
class _Scope:
    template: Template
    parameters: Dict[str, Any]
    pseudo: Dict[str, Any]
    exports: Mapping[str, Any]
    availability_zones: List[str]
    node: str
    imports: Set[str] = field(default_factory=set)


class ReferenceResolver:
    """
    Resolves intrinsic references and builds the dependency graph.

    Responsibilities:
    - Substitute parameter, pseudo-parameter, mapping and export values
    - Replace resource references with pointers and record the edges
    - Validate DependsOn targets and GetAtt attribute names
    - Reject reference cycles before anything is provisioned
    """

    def __init__(self):
        """Initialize resolver."""
        self.logger = logging.getLogger(__name__)

    def resolve(
        self,
        template: Template,
        parameters: Dict[str, Any],
        stack_name: str,
        region: str = "us-east-1",
        account_id: str = "123456789012",
        exports: Optional[Mapping[str, Any]] = None,
        availability_zones: Optional[List[str]] = None,
        partition: Optional[str] = None,
        url_suffix: Optional[str] = None,
    ) -> DependencyGraph:
        """
        Resolve a parsed template into a dependency graph.

        Args:
            template: Parsed template
            parameters: Bound parameter values (see bind_parameters)
            stack_name: Name of the stack being provisioned
            region: Region for AWS::Region and Fn::GetAZs
            account_id: Value of AWS::AccountId
            exports: Values exported by other stacks, by export name
            availability_zones: Zones returned by Fn::GetAZs
            partition: Value of AWS::Partition, derived from the region if omitted
            url_suffix: Value of AWS::URLSuffix, derived from the partition if omitted

        Returns:
            Acyclic DependencyGraph with resolved nodes and outputs

        Raises:
            UnresolvedReference: If a name cannot be resolved
            CyclicDependency: If the dependency relation has a cycle
        """
        partition = partition or _partition_of(region)
        url_suffix = url_suffix or (
            "amazonaws.com.cn" if partition == "aws-cn" else "amazonaws.com"
        )
        pseudo = {
            "AWS::Region": region,
            "AWS::AccountId": account_id,
            "AWS::StackName": stack_name,
            "AWS::StackId": (
                f"arn:{partition}:cloudformation:{region}:{account_id}:stack/{stack_name}"
            ),
            "AWS::Partition": partition,
            "AWS::URLSuffix": url_suffix,
            "AWS::NoValue": NO_VALUE,
        }
        zones = availability_zones or [f"{region}{s}" for s in ("a", "b", "c")]
        imports: Set[str] = set()

        nodes: Dict[str, ResourceNode] = {}
        for logical_id, node in template.resources.items():
            scope = _Scope(template, parameters, pseudo, exports or {}, zones, logical_id)
            properties = self._resolve_value(node.properties, scope)
            dependencies = set(references_in(properties))

            for name in node.depends_on:
                if name not in template.resources:
                    raise UnresolvedReference(name, node=logical_id, detail="DependsOn target")
                dependencies.add(name)

            if logical_id in dependencies:
                raise CyclicDependency([logical_id, logical_id])

            imports |= scope.imports
            nodes[logical_id] = node.model_copy(
                update={"properties": properties, "dependencies": frozenset(dependencies)}
            )

        cycle = self.find_cycle(nodes)
        if cycle:
            raise CyclicDependency(cycle)

        outputs: Dict[str, OutputDefinition] = {}
        for name, output in template.outputs.items():
            scope = _Scope(template, parameters, pseudo, exports or {}, zones, f"Outputs.{name}")
            export_name = None
            if output.export_name is not None:
                export_name = self._resolve_value(output.export_name, scope)
                if _contains_pointer(export_name):
                    raise MalformedTemplate(
                        f"Export name of output '{name}' may not reference resources",
                        node=name,
                    )
            outputs[name] = output.model_copy(
                update={
                    "value": self._resolve_value(output.value, scope),
                    "export_name": export_name,
                }
            )
            imports |= scope.imports

        graph = DependencyGraph(nodes=nodes, outputs=outputs, imports=sorted(imports))
        self.logger.info(
            f"Resolved {len(nodes)} resources with {len(graph.edges())} dependency edges"
        )
        return graph

    @staticmethod
    def find_cycle(nodes: Mapping[str, ResourceNode]) -> Optional[List[str]]:
        """
        Find a dependency cycle, if any.

        Returns:
            The cycle as a path that starts and ends with the same name,
            or None when the graph is acyclic
        """
        WHITE, GREY, BLACK = 0, 1, 2
        color = {name: WHITE for name in nodes}
        path: List[str] = []

        def visit(name: str) -> Optional[List[str]]:
            color[name] = GREY
            path.append(name)
            for dep in sorted(nodes[name].dependencies, key=lambda d: nodes[d].declaration_index):
                if color[dep] == GREY:
                    return path[path.index(dep):] + [dep]
                if color[dep] == WHITE:
                    found = visit(dep)
                    if found:
                        return found
            path.pop()
            color[name] = BLACK
            return None

        for name in nodes:
            if color[name] == WHITE:
                found = visit(name)
                if found:
                    return found
        return None

    # =========================================================================
    # VALUE RESOLUTION
    # =========================================================================

    def _resolve_value(self, value: Any, scope: _Scope) -> Any:
        if isinstance(value, dict):
            if len(value) == 1:
                key = next(iter(value))
                if key == "Ref" or key.startswith("Fn::"):
                    return self._resolve_intrinsic(key, value[key], scope)
                if key == "Condition":
                    raise MalformedTemplate("Conditions are not supported", node=scope.node)
            resolved = {k: self._resolve_value(v, scope) for k, v in value.items()}
            return {k: v for k, v in resolved.items() if v is not NO_VALUE}
        if isinstance(value, list):
            items = [self._resolve_value(v, scope) for v in value]
            return [v for v in items if v is not NO_VALUE]
        return value

    def _resolve_intrinsic(self, name: str, args: Any, scope: _Scope) -> Any:
        if name == "Ref":
            return self._resolve_ref(args, scope)
        if name == "Fn::GetAtt":
            return self._resolve_get_att(args, scope)
        if name == "Fn::Sub":
            return self._resolve_sub(args, scope)
        if name == "Fn::FindInMap":
            return self._resolve_find_in_map(args, scope)
        if name == "Fn::ImportValue":
            return self._resolve_import(args, scope)
        if name == "Fn::GetAZs":
            return list(scope.availability_zones)

        arity = {"Fn::Base64": 1, "Fn::Join": 2, "Fn::Select": 2, "Fn::Split": 2, "Fn::Cidr": 3}
        if name not in arity:
            raise MalformedTemplate(
                f"Unsupported intrinsic function '{name}'", node=scope.node
            )
        resolved = self._resolve_value(args, scope)
        if arity[name] == 1:
            resolved_args: Tuple[Any, ...] = (resolved,)
        elif isinstance(resolved, list) and len(resolved) == arity[name]:
            resolved_args = tuple(resolved)
        else:
            raise MalformedTemplate(
                f"{name} expects {arity[name]} arguments", node=scope.node
            )

        if _contains_pointer(resolved_args):
            return Intrinsic(name, resolved_args)
        return _apply(name, resolved_args)

    def _resolve_ref(self, target: Any, scope: _Scope) -> Any:
        if not isinstance(target, str):
            raise MalformedTemplate("Ref expects a name", node=scope.node)
        if target in scope.parameters:
            return scope.parameters[target]
        if target in scope.pseudo:
            return scope.pseudo[target]
        if target in scope.template.resources:
            return ResourceRef(target)
        raise UnresolvedReference(target, node=scope.node)

    def _resolve_get_att(self, args: Any, scope: _Scope) -> ResourceRef:
        if isinstance(args, str):
            args = args.split(".", 1)
        if not isinstance(args, list) or len(args) != 2:
            raise MalformedTemplate("Fn::GetAtt expects [resource, attribute]", node=scope.node)
        logical_id, attribute = args
        if not isinstance(attribute, str):
            attribute = self._resolve_value(attribute, scope)
        reference = f"{logical_id}.{attribute}"
        node = scope.template.resources.get(logical_id)
        if node is None:
            raise UnresolvedReference(reference, node=scope.node)
        handler = ResourceTypeRegistry.get(node.type)
        if handler is None or not handler.has_attribute(str(attribute)):
            raise UnresolvedReference(
                reference, node=scope.node, detail=f"{node.type} has no such attribute"
            )
        return ResourceRef(logical_id, str(attribute))

    def _resolve_sub(self, args: Any, scope: _Scope) -> Any:
        if isinstance(args, str):
            text, variables = args, {}
        elif isinstance(args, list) and len(args) == 2 and isinstance(args[1], dict):
            text, variables = args[0], args[1]
        else:
            raise MalformedTemplate("Fn::Sub expects a string or [string, mapping]", node=scope.node)
        if not isinstance(text, str):
            raise MalformedTemplate("Fn::Sub template must be a string", node=scope.node)

        local = {k: self._resolve_value(v, scope) for k, v in variables.items()}
        parts: List[Any] = []
        position = 0
        for match in SUB_VARIABLE.finditer(text):
            parts.append(text[position:match.start()])
            position = match.end()
            expression = match.group(1).strip()

            if expression.startswith("!"):
                parts.append("${" + expression[1:] + "}")
            elif expression in local:
                parts.append(local[expression])
            elif expression in scope.parameters:
                value = scope.parameters[expression]
                parts.append(",".join(value) if isinstance(value, list) else value)
            elif expression in scope.pseudo:
                parts.append(scope.pseudo[expression])
            elif expression in scope.template.resources:
                parts.append(ResourceRef(expression))
            elif "." in expression:
                parts.append(self._resolve_get_att(expression.split(".", 1), scope))
            else:
                raise UnresolvedReference(expression, node=scope.node)
        parts.append(text[position:])

        parts = [p for p in parts if p != "" and p is not NO_VALUE]
        if _contains_pointer(parts):
            return Intrinsic("Fn::Join", ("", tuple(parts)))
        return "".join(_as_text(p) for p in parts)

    def _resolve_find_in_map(self, args: Any, scope: _Scope) -> Any:
        resolved = self._resolve_value(args, scope)
        if not isinstance(resolved, list) or len(resolved) != 3:
            raise MalformedTemplate("Fn::FindInMap expects three arguments", node=scope.node)
        if _contains_pointer(resolved):
            raise MalformedTemplate(
                "Fn::FindInMap arguments may not reference resources", node=scope.node
            )
        map_name, top_key, second_key = (str(a) for a in resolved)
        try:
            return scope.template.mappings[map_name][top_key][second_key]
        except KeyError:
            raise UnresolvedReference(
                f"{map_name}.{top_key}.{second_key}", node=scope.node, detail="mapping entry"
            )

    def _resolve_import(self, args: Any, scope: _Scope) -> Any:
        export_name = self._resolve_value(args, scope)
        if not isinstance(export_name, str):
            raise MalformedTemplate(
                "Fn::ImportValue expects a name that does not reference resources",
                node=scope.node,
            )
        if export_name not in scope.exports:
            raise UnresolvedReference(export_name, node=scope.node, detail="no such export")
        scope.imports.add(export_name)
        return scope.exports[export_name]


# Singleton instance
resolver = ReferenceResolver()


def get_resolver() -> ReferenceResolver:
    """Get resolver instance."""
    return resolver
