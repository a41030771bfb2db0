"""
Stackforge - Stack Pipeline

Wires the engine stages together for one stack operation:
parse -> bind parameters -> resolve references -> plan -> execute.
Every static error surfaces before the first provisioning call.
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Optional
import logging

from stackforge.config import Settings, get_settings
from stackforge.engine.executor import ProvisioningExecutor, create_executor
from stackforge.engine.parameters import bind_parameters
from stackforge.engine.parser import TemplateParser
from stackforge.engine.resolver import ReferenceResolver
from stackforge.engine.scheduler import DependencyScheduler
from stackforge.models import ApplyResult, DependencyGraph, ExecutionPlan, Template
from stackforge.providers.base import CloudProvider, ProviderFactory
from stackforge.storage import StateStore

logger = logging.getLogger(__name__)

MASKED_VALUE = "****"


@dataclass
class PreparedStack:
    """Everything known about a stack before provisioning starts."""
    stack_name: str
    template: Template
    parameters: Dict[str, Any]
    graph: DependencyGraph
    plan: ExecutionPlan

    def recorded_parameters(self) -> Dict[str, Any]:
        """Parameter values as persisted, with NoEcho values masked."""
        return {
            name: MASKED_VALUE if self.template.parameters[name].no_echo else value
            for name, value in self.parameters.items()
        }


class StackPipeline:
    """
    Runs stack operations end to end.

    The pipeline owns the provider and the state store; every operation
    gets its own executor so it can be cancelled independently.
    """

    def __init__(
        self,
        provider: CloudProvider,
        store: StateStore,
        settings: Optional[Settings] = None,
    ):
        self.provider = provider
        self.store = store
        self.settings = settings or get_settings()
        self.parser = TemplateParser()
        self.resolver = ReferenceResolver()
        self.scheduler = DependencyScheduler()
        self.logger = logging.getLogger(__name__)

    def create_executor(self) -> ProvisioningExecutor:
        """Executor configured from settings."""
        return create_executor(
            provider=self.provider,
            store=self.store,
            max_workers=self.settings.max_workers,
            max_attempts=self.settings.max_attempts,
            backoff_base=self.settings.backoff_base_seconds,
            backoff_max=self.settings.backoff_max_seconds,
        )

    def prepare(
        self,
        stack_name: str,
        template_body: str,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> PreparedStack:
        """
        Parse, bind, resolve and plan a template.

        Raises:
            TemplateError: Any static error (malformed template, unknown
                type, bad parameter, unresolved reference, cycle)
        """
        template = self.parser.parse(template_body)
        values = bind_parameters(template, parameters, provider=self.provider)
        graph = self.resolver.resolve(
            template,
            values,
            stack_name=stack_name,
            region=self.provider.region,
            account_id=self.provider.account_id,
            exports=self.store.export_values(),
            availability_zones=self.provider.availability_zones(),
            partition=self.provider.partition,
            url_suffix=self.provider.url_suffix,
        )
        plan = self.scheduler.create_plan(stack_name, graph)
        return PreparedStack(
            stack_name=stack_name,
            template=template,
            parameters=values,
            graph=graph,
            plan=plan,
        )

    def apply(
        self,
        stack_name: str,
        template_body: str,
        parameters: Optional[Dict[str, Any]] = None,
        rollback_on_failure: bool = False,
        executor: Optional[ProvisioningExecutor] = None,
    ) -> ApplyResult:
        """Create or update a stack from a template document."""
        prepared = self.prepare(stack_name, template_body, parameters)
        return self.execute(prepared, template_body, rollback_on_failure, executor)

    def execute(
        self,
        prepared: PreparedStack,
        template_body: str,
        rollback_on_failure: bool = False,
        executor: Optional[ProvisioningExecutor] = None,
    ) -> ApplyResult:
        """Provision an already prepared stack."""
        self.store.save_template(prepared.stack_name, template_body)
        self.store.save_plan(prepared.plan)

        executor = executor or self.create_executor()
        return executor.apply(
            prepared.stack_name,
            prepared.graph,
            parameters=prepared.recorded_parameters(),
            rollback_on_failure=rollback_on_failure,
        )

    def destroy(
        self,
        stack_name: str,
        executor: Optional[ProvisioningExecutor] = None,
    ) -> ApplyResult:
        """Tear a stack down in reverse creation order."""
        executor = executor or self.create_executor()
        return executor.destroy(stack_name)


_pipeline: Optional[StackPipeline] = None


def create_pipeline(settings: Optional[Settings] = None) -> StackPipeline:
    """
    Build a pipeline from settings.

    Returns:
        StackPipeline with the configured provider and state store
    """
    # Registers the provider implementations with the factory
    import stackforge.providers  # noqa: F401

    settings = settings or get_settings()
    provider = ProviderFactory.create(
        settings.provider,
        region=settings.region,
        account_id=settings.account_id,
    )
    store = StateStore(settings.state_path)
    logger.info(f"Pipeline ready: provider={settings.provider}, region={settings.region}")
    return StackPipeline(provider=provider, store=store, settings=settings)


def get_pipeline() -> StackPipeline:
    """Get the shared pipeline instance."""
    global _pipeline
    if _pipeline is None:
        _pipeline = create_pipeline()
    return _pipeline


def reset_pipeline() -> None:
    global _pipeline
    _pipeline = None
