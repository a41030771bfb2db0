"""
Stackforge - Domain Models

Defines the Pydantic models for parsed templates, the dependency graph,
execution plans, persisted stack state and API payloads. These models form
the core data structures that flow from the parser through the executor.
"""

from __future__ import annotations
from datetime import datetime
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set, Tuple
from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# ENUMS
# =============================================================================

class ResourceStatus(str, Enum):
    """Lifecycle status of a single resource (owned by the executor)."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    CREATED = "created"
    FAILED = "failed"
    DELETED = "deleted"


class StackStatus(str, Enum):
    """Overall status of a stack operation."""
    CREATED = "created"
    PLANNING = "planning"
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"
    DELETE_IN_PROGRESS = "delete_in_progress"
    DELETED = "deleted"


# =============================================================================
# TEMPLATE MODEL (YAML -> Domain Model)
# =============================================================================

class ParameterBinding(BaseModel):
    """Declared template parameter. Validated before reference resolution."""
    name: str
    type: str = Field(default="String", description="Declared parameter type")
    default: Optional[Any] = None
    allowed_values: Optional[List[Any]] = None
    description: Optional[str] = None
    allowed_pattern: Optional[str] = None
    min_length: Optional[int] = None
    max_length: Optional[int] = None
    min_value: Optional[float] = None
    max_value: Optional[float] = None
    no_echo: bool = False

    @property
    def is_parameter_store_path(self) -> bool:
        return self.type.startswith("AWS::SSM::Parameter::Value<")

    @property
    def is_list(self) -> bool:
        return self.type == "CommaDelimitedList" or self.type.startswith("List<")


class ResourceNode(BaseModel):
    """
    A single resource declaration.

    `depends_on` holds the explicit DependsOn names from the template;
    `dependencies` is the full set once the resolver has added the
    references it discovered in the properties.
    """
    model_config = ConfigDict(frozen=True)

    logical_id: str
    type: str
    properties: Dict[str, Any] = Field(default_factory=dict)
    declaration_index: int = 0
    depends_on: Tuple[str, ...] = ()
    dependencies: FrozenSet[str] = Field(default_factory=frozenset)
    deletion_policy: str = "Delete"


class OutputDefinition(BaseModel):
    """Template output, optionally exported under a name."""
    model_config = ConfigDict(frozen=True)

    name: str
    value: Any
    description: Optional[str] = None
    export_name: Optional[Any] = None


class Template(BaseModel):
    """
    Parsed template - the desired infrastructure state.

    Resources are kept in declaration order; the scheduler relies on that
    order to break ties deterministically.
    """
    format_version: Optional[str] = None
    description: Optional[str] = None
    parameters: Dict[str, ParameterBinding] = Field(default_factory=dict)
    mappings: Dict[str, Dict[str, Dict[str, Any]]] = Field(default_factory=dict)
    resources: Dict[str, ResourceNode] = Field(default_factory=dict)
    outputs: Dict[str, OutputDefinition] = Field(default_factory=dict)


class DependencyGraph(BaseModel):
    """
    Resolved resources and their "must exist before" edges.

    Invariant: acyclic. The resolver refuses to build a graph with a cycle.
    """
    nodes: Dict[str, ResourceNode] = Field(default_factory=dict)
    outputs: Dict[str, OutputDefinition] = Field(default_factory=dict)
    imports: List[str] = Field(default_factory=list)

    def dependencies_of(self, logical_id: str) -> Set[str]:
        return set(self.nodes[logical_id].dependencies)

    def dependents_of(self, logical_id: str) -> Set[str]:
        return {
            name for name, node in self.nodes.items()
            if logical_id in node.dependencies
        }

    def transitive_dependents(self, logical_id: str) -> Set[str]:
        """All resources that directly or indirectly depend on `logical_id`."""
        found: Set[str] = set()
        frontier = [logical_id]
        while frontier:
            current = frontier.pop()
            for dependent in self.dependents_of(current):
                if dependent not in found:
                    found.add(dependent)
                    frontier.append(dependent)
        return found

    def edges(self) -> List[Tuple[str, str]]:
        """Edges as (dependency, dependent) pairs in declaration order."""
        return [
            (dep, name)
            for name, node in self.nodes.items()
            for dep in sorted(node.dependencies)
        ]


# =============================================================================
# EXECUTION MODELS
# =============================================================================

class ExecutionPlan(BaseModel):
    """Planned provisioning sequence for a stack."""
    stack_name: str
    created_at: datetime = Field(default_factory=datetime.utcnow)
    creation_order: List[str] = Field(default_factory=list)
    deletion_order: List[str] = Field(default_factory=list)
    waves: List[List[str]] = Field(default_factory=list)
    edges: List[Tuple[str, str]] = Field(default_factory=list)
    total_resources: int = 0


class ResourceState(BaseModel):
    """Persisted state of one provisioned resource."""
    logical_id: str
    type: str
    status: ResourceStatus = ResourceStatus.PENDING
    physical_id: Optional[str] = None
    attributes: Dict[str, Any] = Field(default_factory=dict)
    properties: Dict[str, Any] = Field(default_factory=dict)
    properties_hash: Optional[str] = None
    idempotency_token: Optional[str] = None
    deletion_policy: str = "Delete"
    attempts: int = 0
    error_message: Optional[str] = None
    updated_at: Optional[datetime] = None


class StackState(BaseModel):
    """Last-known-good state of a stack, as written by the executor."""
    stack_name: str
    stack_id: str
    status: StackStatus = StackStatus.CREATED
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: Optional[datetime] = None
    parameters: Dict[str, Any] = Field(default_factory=dict)
    resources: Dict[str, ResourceState] = Field(default_factory=dict)
    creation_order: List[str] = Field(default_factory=list)
    edges: List[Tuple[str, str]] = Field(default_factory=list)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    exports: Dict[str, Any] = Field(default_factory=dict)
    imports: List[str] = Field(default_factory=list)


class ApplyResult(BaseModel):
    """Partial-completion summary of an apply, rollback or destroy."""
    stack_name: str
    status: StackStatus
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_seconds: float = 0.0

    created: List[str] = Field(default_factory=list)
    updated: List[str] = Field(default_factory=list)
    unchanged: List[str] = Field(default_factory=list)
    failed: List[str] = Field(default_factory=list)
    skipped: List[str] = Field(default_factory=list)
    deleted: List[str] = Field(default_factory=list)

    outputs: Dict[str, Any] = Field(default_factory=dict)
    errors: Dict[str, str] = Field(default_factory=dict)
    provider_calls: int = 0


# =============================================================================
# API MODELS
# =============================================================================

class StackApplyRequest(BaseModel):
    """Request to create or update a stack."""
    stack_name: str = Field(..., pattern=r"^[A-Za-z][A-Za-z0-9-]{0,127}$")
    template_body: str = Field(..., description="Template document (YAML or JSON)")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    dry_run: bool = Field(default=False, description="Validate and plan without provisioning")
    rollback_on_failure: bool = Field(default=False)


class StackApplyResponse(BaseModel):
    """Response after submitting a stack operation."""
    stack_name: str
    status: StackStatus
    message: str
    plan: Optional[ExecutionPlan] = None


class StackStatusResponse(BaseModel):
    """Response for stack status query."""
    stack_name: str
    status: StackStatus
    progress_percent: float = 0.0
    current_resource: Optional[str] = None
    result: Optional[ApplyResult] = None
    state: Optional[StackState] = None


class ValidateRequest(BaseModel):
    template_body: str


class ValidateResponse(BaseModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    parameters: List[ParameterBinding] = Field(default_factory=list)
    resources: Dict[str, str] = Field(default_factory=dict)


class ErrorResponse(BaseModel):
    """Standard error response."""
    error: str
    detail: Optional[str] = None
    errors: List[str] = Field(default_factory=list)
