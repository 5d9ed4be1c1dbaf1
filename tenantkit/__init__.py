"""Multi-tenant user, organization and membership use cases.

Public API:

    from tenantkit import OperationContext, build_use_cases
    from tenantkit.db.memory import build_in_memory_adapters

    use_cases = build_use_cases(build_in_memory_adapters())
    result = await use_cases.create_user.execute(
        {"username": "ada"}, OperationContext(request_id="req-1")
    )
    if result.is_success:
        user = result.get_value()

Hooks are registered per use case:

    registry = HookRegistry()
    registry.register(UseCaseName.CREATE_USER, UseCaseHooks(on_start=audit_signup))
    use_cases = build_use_cases(adapters, ToolkitOptions(hooks=registry))
"""

from tenantkit.core.context import OperationContext, enrich_audit_context
from tenantkit.core.errors import (
    AbortedError,
    ConflictError,
    DomainError,
    InfrastructureError,
    NotFoundError,
    UnauthorizedError,
    ValidationError,
)
from tenantkit.core.hooks import HookContext, HookName, HookRegistry, UseCaseHooks, UseCaseName
from tenantkit.core.options import ToolkitOptions
from tenantkit.core.ports import Adapters, PersistenceAdapter, SystemAdapter
from tenantkit.core.results import Result
from tenantkit.core.use_case import BaseUseCase
from tenantkit.models.membership import OrganizationMembership, OrganizationRole
from tenantkit.models.organization import Organization
from tenantkit.models.user import User
from tenantkit.services.factory import UseCases, build_use_cases

__all__ = [
    "AbortedError",
    "Adapters",
    "BaseUseCase",
    "ConflictError",
    "DomainError",
    "HookContext",
    "HookName",
    "HookRegistry",
    "InfrastructureError",
    "NotFoundError",
    "OperationContext",
    "Organization",
    "OrganizationMembership",
    "OrganizationRole",
    "PersistenceAdapter",
    "Result",
    "SystemAdapter",
    "ToolkitOptions",
    "UnauthorizedError",
    "UseCaseHooks",
    "UseCaseName",
    "UseCases",
    "User",
    "ValidationError",
    "build_use_cases",
    "enrich_audit_context",
]
