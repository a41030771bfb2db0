"""
Stackforge - Engine Package

Core engine that turns a template into provisioned infrastructure:
- Parser: Validates and parses the template document
- Resolver: Resolves intrinsic references into a dependency graph
- Scheduler: Orders resources by dependency
- Executor: Provisions resources against a cloud provider
"""

from stackforge.engine.parser import TemplateParser
from stackforge.engine.resolver import ReferenceResolver
from stackforge.engine.scheduler import DependencyScheduler
from stackforge.engine.executor import ProvisioningExecutor

__all__ = [
    "DependencyScheduler",
    "ProvisioningExecutor",
    "ReferenceResolver",
    "TemplateParser",
]
