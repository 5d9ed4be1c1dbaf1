"""Per-call operation context passed to every use case."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any
from uuid import UUID


@dataclass(frozen=True)
class OperationContext:
    """Who is calling, for which request, and how the call should be audited.

    ``external_id`` is the identity-provider key of the acting principal;
    ``actor_user_id`` is used by the few use cases that receive an internal
    user id instead.
    """

    request_id: str
    external_id: str | None = None
    actor_user_id: UUID | None = None
    organization_id: UUID | None = None
    audit_action: str | None = None
    metadata: Mapping[str, Any] = field(default_factory=lambda: MappingProxyType({}))


def enrich_audit_context(
    context: OperationContext,
    action: str,
    organization_id: UUID | None = None,
    metadata: Mapping[str, Any] | None = None,
) -> OperationContext:
    merged = {**context.metadata, **(metadata or {})}
    return replace(
        context,
        audit_action=action,
        organization_id=organization_id if organization_id is not None else context.organization_id,
        metadata=MappingProxyType(merged),
    )
