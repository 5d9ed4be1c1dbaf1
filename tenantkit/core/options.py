"""Caller-supplied toolkit options."""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import BaseModel

from tenantkit.core.config import settings
from tenantkit.core.hooks import HookRegistry


@dataclass(frozen=True)
class ToolkitOptions:
    """Hooks and custom-field schemas shared by every use case.

    Custom-field schemas are pydantic models describing the extra keys each
    entity accepts. Without a schema, extra keys are stored unchecked.
    """

    hooks: HookRegistry = field(default_factory=HookRegistry)
    user_custom_fields: type[BaseModel] | None = None
    organization_custom_fields: type[BaseModel] | None = None
    membership_custom_fields: type[BaseModel] | None = None
    link_pending_memberships: bool = field(default_factory=lambda: settings.link_pending_memberships)
