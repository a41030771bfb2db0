"""
Stackforge - Provisioning Executor

Provisions a resolved dependency graph against a cloud provider.
Independent resources run concurrently on a bounded worker pool, transient
provider errors are retried with exponential backoff, and the stack state
is written after every provider-call completion.
"""

from __future__ import annotations
import hashlib
import json
import threading
import uuid
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple
import logging

from tenacity import (
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from stackforge.engine.errors import (
    FatalProviderError,
    ProviderError,
    StackOperationError,
    TemplateError,
    TransientProviderError,
)
from stackforge.engine.resolver import render
from stackforge.engine.scheduler import DependencyScheduler
from stackforge.models import (
    ApplyResult,
    DependencyGraph,
    ResourceNode,
    ResourceState,
    ResourceStatus,
    StackState,
    StackStatus,
)
from stackforge.providers.base import CloudProvider
from stackforge.resources import ResourceTypeRegistry
from stackforge.storage import StateStore

logger = logging.getLogger(__name__)

TOKEN_NAMESPACE = uuid.UUID("6f1c1d0e-6a55-4c8e-9a43-3b1f0f4e2d7a")


def properties_hash(properties: Dict[str, Any]) -> str:
    """Stable hash of rendered properties."""
    encoded = json.dumps(properties, sort_keys=True, default=str).encode("utf-8")
    return hashlib.sha256(encoded).hexdigest()


def idempotency_token(stack_id: str, logical_id: str, props_hash: str) -> str:
    """Deterministic token, identical for every retry of the same create."""
    return str(uuid.uuid5(TOKEN_NAMESPACE, f"{stack_id}/{logical_id}/{props_hash}"))


@dataclass
class _Work:
    """A provider operation handed to a worker thread."""
    node: ResourceNode
    create: bool
    properties: Dict[str, Any]
    token: str
    physical_id: Optional[str] = None
    previous_properties: Dict[str, Any] = field(default_factory=dict)


@dataclass
class _Outcome:
    logical_id: str
    physical_id: Optional[str] = None
    attributes: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    error: Optional[ProviderError] = None


class ProvisioningExecutor:
    """
    Executes dependency graphs against a cloud provider.

    Responsibilities:
    - Dispatch resources whose dependencies exist, up to `max_workers` at once
    - Skip unchanged resources, update changed ones, create new ones
    - Retry transient provider errors, fail fast on fatal ones
    - Abort every dependent of a failed resource
    - Persist state after each provider-call completion
    - Roll back or tear down in reverse creation order

    Error Handling:
    - Successfully created resources are left in place and reported
    - Rollback only happens when explicitly requested
    - In-flight calls always complete, even after cancel()
    """

    def __init__(
        self,
        provider: CloudProvider,
        store: StateStore,
        max_workers: int = 4,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 30.0,
    ):
        """
        Initialize executor.

        Args:
            provider: Cloud provider to issue calls against
            store: State store for stack state and results
            max_workers: Size of the worker pool
            max_attempts: Attempts per provider call before giving up
            backoff_base: Multiplier of the exponential backoff (seconds)
            backoff_max: Upper bound of a single backoff wait (seconds)
        """
        self.provider = provider
        self.store = store
        self.max_workers = max(1, max_workers)
        self.max_attempts = max(1, max_attempts)
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.scheduler = DependencyScheduler()
        self.logger = logging.getLogger(__name__)

        self._cancel_event = threading.Event()
        self._progress_callback: Optional[Callable[[str, int, str], None]] = None

    def set_progress_callback(self, callback: Callable[[str, int, str], None]) -> None:
        """
        Set callback for progress updates.

        Args:
            callback: Function(stack_name, percent, current_resource)
        """
        self._progress_callback = callback

    def _report_progress(self, stack_name: str, percent: int, current: str) -> None:
        """Report progress via callback if set."""
        if self._progress_callback:
            self._progress_callback(stack_name, percent, current)

    def cancel(self) -> None:
        """Stop dispatching new resources; in-flight calls still complete."""
        self.logger.warning("Cancellation requested")
        self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel_event.is_set()

    # =========================================================================
    # RETRY
    # =========================================================================

    def _call(self, description: str, fn: Callable[..., Any], *args: Any) -> Tuple[Any, int]:
        """Call the provider, retrying transient errors. Returns (result, attempts)."""
        attempts = 0

        def attempt() -> Any:
            nonlocal attempts
            attempts += 1
            return fn(*args)

        retryer = Retrying(
            retry=retry_if_exception_type(TransientProviderError),
            stop=stop_after_attempt(self.max_attempts),
            wait=wait_exponential(multiplier=self.backoff_base, max=self.backoff_max),
            before_sleep=before_sleep_log(self.logger, logging.WARNING),
            reraise=True,
        )
        return retryer(attempt), attempts

    def _provision(self, work: _Work) -> _Outcome:
        """Worker body: create or update one resource, then read its attributes."""
        node = work.node
        outcome = _Outcome(logical_id=node.logical_id)
        try:
            if work.create:
                physical_id, attempts = self._call(
                    f"create {node.logical_id}",
                    self.provider.create_resource,
                    node.type, node.logical_id, work.properties, work.token,
                )
            else:
                physical_id, attempts = self._call(
                    f"update {node.logical_id}",
                    self.provider.update_resource,
                    node.type, work.physical_id, work.properties, work.previous_properties,
                )
            outcome.physical_id = physical_id
            outcome.attempts += attempts

            read, attempts = self._call(
                f"read {node.logical_id}", self.provider.read_resource, node.type, physical_id
            )
            outcome.attributes = read.attributes
            outcome.attempts += attempts
        except ProviderError as e:
            outcome.error = e
        return outcome

    # =========================================================================
    # APPLY
    # =========================================================================

    def apply(
        self,
        stack_name: str,
        graph: DependencyGraph,
        parameters: Optional[Dict[str, Any]] = None,
        rollback_on_failure: bool = False,
    ) -> ApplyResult:
        """
        Bring a stack to the state described by the graph.

        Args:
            stack_name: Stack to create or update
            graph: Resolved dependency graph
            parameters: Bound parameter values, recorded in the state
            rollback_on_failure: Delete resources created by this apply if
                any resource fails

        Returns:
            ApplyResult with the partial-completion summary
        """
        self._cancel_event.clear()
        started_at = datetime.utcnow()
        order = self.scheduler.creation_order(graph)

        state = self.store.load_state(stack_name)
        if state is None or state.status == StackStatus.DELETED:
            state = StackState(
                stack_name=stack_name,
                stack_id=f"{stack_name}/{uuid.uuid4()}",
            )
        state.status = StackStatus.IN_PROGRESS
        state.parameters = dict(parameters or {})
        state.imports = list(graph.imports)

        # Resources no longer in the template stay recorded until deleted
        retired: List[ResourceState] = []
        for logical_id, existing in list(state.resources.items()):
            if logical_id in graph.nodes:
                continue
            if existing.physical_id and existing.status != ResourceStatus.DELETED:
                retired.append(existing)
            else:
                del state.resources[logical_id]
        for logical_id in order:
            node = graph.nodes[logical_id]
            existing = state.resources.get(logical_id)
            if existing is None or (
                existing.type != node.type and existing.status != ResourceStatus.CREATED
            ):
                state.resources[logical_id] = ResourceState(
                    logical_id=logical_id,
                    type=node.type,
                    deletion_policy=node.deletion_policy,
                )
        self.store.save_state(state)

        result = ApplyResult(
            stack_name=stack_name,
            status=StackStatus.IN_PROGRESS,
            started_at=started_at,
        )
        self.logger.info(f"Starting apply: {stack_name} with {len(order)} resources")

        created_now = self._dispatch(state, graph, order, result)

        # A cancel that arrived after the last dispatch skipped nothing
        if result.failed:
            state.status = StackStatus.FAILED
        elif result.skipped:
            state.status = StackStatus.CANCELLED
        else:
            if retired:
                self.logger.info(f"Deleting {len(retired)} resources removed from the template")
                self._delete_resources(
                    state, retired, state.creation_order, result, prior_edges=state.edges
                )
                for resource in retired:
                    if resource.status == ResourceStatus.DELETED:
                        state.resources.pop(resource.logical_id, None)
            if result.failed:
                state.status = StackStatus.FAILED
            elif result.skipped:
                state.status = StackStatus.CANCELLED
            else:
                state.status = StackStatus.COMPLETE

        if state.status == StackStatus.COMPLETE:
            state.creation_order = order
            state.edges = graph.edges()
            self._publish_outputs(state, graph, result)
        else:
            state.creation_order = self._merge_order(state.creation_order, order)
            state.edges = sorted(set(map(tuple, state.edges)) | set(graph.edges()))

        if state.status == StackStatus.FAILED and rollback_on_failure:
            to_remove = [state.resources[name] for name in created_now]
            to_remove += [
                state.resources[name] for name in result.failed
                if name in state.resources
                and state.resources[name].status == ResourceStatus.FAILED
                and state.resources[name].physical_id
            ]
            self.logger.warning(f"Rolling back {len(to_remove)} resources of {stack_name}")
            self._delete_resources(state, to_remove, order, result, prior_edges=graph.edges())
            for resource in to_remove:
                if resource.status == ResourceStatus.DELETED:
                    state.resources.pop(resource.logical_id, None)
            if not any(r.status == ResourceStatus.FAILED for r in to_remove):
                state.status = StackStatus.ROLLED_BACK

        self.store.save_state(state)
        return self._finish(result, state, started_at)

    def _dispatch(
        self,
        state: StackState,
        graph: DependencyGraph,
        order: List[str],
        result: ApplyResult,
    ) -> List[str]:
        """Run the dispatch loop. Returns resources created in this apply."""
        nodes = graph.nodes
        done: Set[str] = set()
        started: Set[str] = set()
        blocked: Set[str] = set()
        created_now: List[str] = []
        in_flight: Dict[Future, _Work] = {}
        total = len(order) or 1

        with ThreadPoolExecutor(
            max_workers=self.max_workers, thread_name_prefix="stackforge"
        ) as pool:
            while True:
                progressed = True
                while progressed and not self.cancelled and len(in_flight) < self.max_workers:
                    progressed = False
                    for logical_id in self.scheduler.ready(nodes, order, done, started, blocked):
                        if len(in_flight) >= self.max_workers or self.cancelled:
                            break
                        progressed = True
                        started.add(logical_id)
                        work = self._prepare(state, nodes[logical_id], result)
                        if work is None:
                            if logical_id in result.unchanged:
                                done.add(logical_id)
                            else:
                                blocked |= graph.transitive_dependents(logical_id)
                            continue

                        resource = state.resources[logical_id]
                        resource.status = ResourceStatus.IN_PROGRESS
                        resource.idempotency_token = work.token
                        self.store.save_state(state)
                        self._report_progress(
                            state.stack_name, int(len(done) / total * 100), logical_id
                        )
                        self.logger.info(
                            f"Dispatching {'create' if work.create else 'update'}: {logical_id}"
                        )
                        in_flight[pool.submit(self._provision, work)] = work

                if not in_flight:
                    break

                finished, _ = wait(list(in_flight), return_when=FIRST_COMPLETED)
                for future in finished:
                    work = in_flight.pop(future)
                    logical_id = work.node.logical_id
                    try:
                        outcome = future.result()
                    except Exception as e:
                        self.logger.exception(f"Provisioning error: {logical_id}")
                        outcome = _Outcome(logical_id=logical_id, error=FatalProviderError(str(e)))

                    self._record(state, work, outcome, result)
                    if outcome.error is None:
                        done.add(logical_id)
                        if work.create:
                            created_now.append(logical_id)
                    else:
                        blocked |= graph.transitive_dependents(logical_id)

        for logical_id in order:
            if logical_id not in started:
                result.skipped.append(logical_id)
                reason = "cancelled" if self.cancelled else "dependency failed"
                self.logger.info(f"Skipped {logical_id}: {reason}")

        return created_now

    def _prepare(
        self,
        state: StackState,
        node: ResourceNode,
        result: ApplyResult,
    ) -> Optional[_Work]:
        """
        Render and validate a resource and decide what to do with it.

        Returns None when no provider call is needed: the resource is
        unchanged, or it failed before reaching the provider.
        """
        resource = state.resources[node.logical_id]
        if resource.type != node.type:
            # The existing resource stays recorded under its old type
            message = (
                f"Resource type cannot change from {resource.type} to {node.type}; "
                f"use a new logical id"
            )
            result.failed.append(node.logical_id)
            result.errors[node.logical_id] = message
            self.logger.error(f"Resource failed: {node.logical_id} - {message}")
            return None
        try:
            properties = render(node.properties, state.resources)
        except TemplateError as e:
            self._fail(resource, result, e.message)
            return None
        except (TypeError, ValueError) as e:
            self._fail(resource, result, f"Invalid property value: {e}")
            return None

        handler = ResourceTypeRegistry.get(node.type)
        try:
            errors = handler.validate(properties) if handler else [f"No handler for {node.type}"]
        except (TypeError, ValueError) as e:
            errors = [str(e)]
        if errors:
            self._fail(resource, result, f"Invalid properties: {'; '.join(errors)}")
            return None

        props_hash = properties_hash(properties)
        token = idempotency_token(state.stack_id, node.logical_id, props_hash)
        resource.deletion_policy = node.deletion_policy

        if resource.status == ResourceStatus.CREATED and resource.physical_id:
            if resource.properties_hash == props_hash:
                result.unchanged.append(node.logical_id)
                self.logger.debug(f"Unchanged: {node.logical_id}")
                return None
            return _Work(
                node=node,
                create=False,
                properties=properties,
                token=token,
                physical_id=resource.physical_id,
                previous_properties=resource.properties,
            )
        return _Work(node=node, create=True, properties=properties, token=token)

    def _record(
        self,
        state: StackState,
        work: _Work,
        outcome: _Outcome,
        result: ApplyResult,
    ) -> None:
        """Apply a provider-call outcome to the state and persist it."""
        resource = state.resources[outcome.logical_id]
        resource.attempts += outcome.attempts
        result.provider_calls += outcome.attempts

        if outcome.error is None:
            resource.status = ResourceStatus.CREATED
            resource.physical_id = outcome.physical_id
            resource.attributes = outcome.attributes
            resource.properties = work.properties
            resource.properties_hash = properties_hash(work.properties)
            resource.error_message = None
            resource.updated_at = datetime.utcnow()
            (result.created if work.create else result.updated).append(outcome.logical_id)
            self.logger.info(f"Resource ready: {outcome.logical_id} -> {outcome.physical_id}")
        else:
            if outcome.physical_id and work.create:
                # Created but never became readable; keep the id for cleanup
                resource.physical_id = outcome.physical_id
            if not work.create:
                # Update failed; the previous resource is still in place
                resource.status = ResourceStatus.CREATED
                resource.error_message = outcome.error.message
                result.failed.append(outcome.logical_id)
                result.errors[outcome.logical_id] = outcome.error.message
                self.logger.error(
                    f"Update failed: {outcome.logical_id} - {outcome.error.message}"
                )
            else:
                self._fail(resource, result, outcome.error.message)

        self.store.save_state(state)

    def _fail(self, resource: ResourceState, result: ApplyResult, message: str) -> None:
        resource.status = ResourceStatus.FAILED
        resource.error_message = message
        resource.updated_at = datetime.utcnow()
        result.failed.append(resource.logical_id)
        result.errors[resource.logical_id] = message
        self.logger.error(f"Resource failed: {resource.logical_id} - {message}")

    def _publish_outputs(
        self,
        state: StackState,
        graph: DependencyGraph,
        result: ApplyResult,
    ) -> None:
        """Render outputs and register exports."""
        outputs: Dict[str, Any] = {}
        exports: Dict[str, Any] = {}
        for name, output in graph.outputs.items():
            try:
                value = render(output.value, state.resources)
            except TemplateError as e:
                result.errors[f"Outputs.{name}"] = e.message
                self.logger.warning(f"Output {name} not available: {e.message}")
                continue
            outputs[name] = value
            if output.export_name is not None:
                exports[str(output.export_name)] = value

        try:
            self.store.register_exports(state.stack_name, exports)
        except StackOperationError as e:
            state.status = StackStatus.FAILED
            result.errors["Exports"] = e.message
            self.logger.error(f"Export registration failed: {e.message}")
            return
        state.outputs = outputs
        state.exports = exports
        result.outputs = outputs

    @staticmethod
    def _merge_order(previous: List[str], order: List[str]) -> List[str]:
        """Append prior resources missing from `order`, so they are torn down first."""
        return order + [name for name in previous if name not in order]

    # =========================================================================
    # DELETE / DESTROY
    # =========================================================================

    def destroy(self, stack_name: str) -> ApplyResult:
        """
        Delete every resource of a stack in reverse creation order.

        Raises:
            StackOperationError: If the stack does not exist or another
                stack imports one of its exports
        """
        self._cancel_event.clear()
        started_at = datetime.utcnow()
        state = self.store.load_state(stack_name)
        if state is None:
            raise StackOperationError(f"Stack not found: {stack_name}")

        importers = self.store.importers_of(stack_name)
        if importers:
            details = "; ".join(f"{s} imports {', '.join(n)}" for s, n in importers.items())
            raise StackOperationError(
                f"Cannot delete stack '{stack_name}': exports in use ({details})"
            )

        state.status = StackStatus.DELETE_IN_PROGRESS
        self.store.save_state(state)
        result = ApplyResult(
            stack_name=stack_name,
            status=StackStatus.DELETE_IN_PROGRESS,
            started_at=started_at,
        )
        self.logger.info(f"Starting destroy: {stack_name}")

        order = list(state.creation_order)
        order += [name for name in state.resources if name not in order]
        targets = [state.resources[name] for name in order if name in state.resources]
        self._delete_resources(state, targets, order, result, prior_edges=state.edges)

        if result.failed:
            state.status = StackStatus.FAILED
        elif result.skipped:
            state.status = StackStatus.CANCELLED
        else:
            self.store.remove_exports(stack_name)
            state.outputs = {}
            state.exports = {}
            state.imports = []
            state.status = StackStatus.DELETED

        self.store.save_state(state)
        return self._finish(result, state, started_at)

    def _delete_resources(
        self,
        state: StackState,
        resources: List[ResourceState],
        order: List[str],
        result: ApplyResult,
        prior_edges: List[Tuple[str, str]],
    ) -> None:
        """
        Delete resources one at a time in the exact reverse of `order`.

        A resource whose dependent failed to delete is left in place.
        """
        by_name = {r.logical_id: r for r in resources}
        sequence = [n for n in reversed(order) if n in by_name]
        sequence += [n for n in by_name if n not in sequence]
        kept: Set[str] = set()

        for logical_id in sequence:
            resource = by_name[logical_id]
            if self.cancelled:
                result.skipped.append(logical_id)
                continue
            if logical_id in kept:
                result.skipped.append(logical_id)
                self.logger.info(f"Kept {logical_id}: a dependent could not be deleted")
                continue
            if resource.physical_id is None or resource.status == ResourceStatus.DELETED:
                resource.status = ResourceStatus.DELETED
                continue
            if resource.deletion_policy == "Retain":
                resource.status = ResourceStatus.DELETED
                result.deleted.append(logical_id)
                self.logger.info(f"Retained {logical_id} ({resource.physical_id})")
                self.store.save_state(state)
                continue

            self._report_progress(state.stack_name, 0, logical_id)
            try:
                _, attempts = self._call(
                    f"delete {logical_id}",
                    self.provider.delete_resource,
                    resource.type, resource.physical_id,
                )
                result.provider_calls += attempts
                resource.status = ResourceStatus.DELETED
                resource.updated_at = datetime.utcnow()
                result.deleted.append(logical_id)
                self.logger.info(f"Deleted {logical_id} ({resource.physical_id})")
            except ProviderError as e:
                resource.status = ResourceStatus.FAILED
                resource.error_message = e.message
                result.failed.append(logical_id)
                result.errors[logical_id] = e.message
                kept |= self._all_dependencies(logical_id, prior_edges)
                self.logger.error(f"Delete failed: {logical_id} - {e.message}")
            self.store.save_state(state)

    @staticmethod
    def _all_dependencies(logical_id: str, edges: List[Tuple[str, str]]) -> Set[str]:
        found: Set[str] = set()
        frontier = [logical_id]
        while frontier:
            current = frontier.pop()
            for dep, dependent in edges:
                if dependent == current and dep not in found:
                    found.add(dep)
                    frontier.append(dep)
        return found

    def _finish(self, result: ApplyResult, state: StackState, started_at: datetime) -> ApplyResult:
        completed_at = datetime.utcnow()
        result.status = state.status
        result.completed_at = completed_at
        result.duration_seconds = (completed_at - started_at).total_seconds()
        self.store.save_result(result)

        self._report_progress(state.stack_name, 100, "Complete")
        self.logger.info(
            f"Finished {state.stack_name}: {state.status.value} - "
            f"created={len(result.created)}, updated={len(result.updated)}, "
            f"unchanged={len(result.unchanged)}, failed={len(result.failed)}, "
            f"skipped={len(result.skipped)}, deleted={len(result.deleted)}"
        )
        return result


# Factory function
def create_executor(
    provider: CloudProvider,
    store: StateStore,
    max_workers: int = 4,
    max_attempts: int = 5,
    backoff_base: float = 1.0,
    backoff_max: float = 30.0,
) -> ProvisioningExecutor:
    """
    Create a provisioning executor instance.

    Returns:
        Configured ProvisioningExecutor
    """
    return ProvisioningExecutor(
        provider=provider,
        store=store,
        max_workers=max_workers,
        max_attempts=max_attempts,
        backoff_base=backoff_base,
        backoff_max=backoff_max,
    )
