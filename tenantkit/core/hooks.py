"""Hook contract for the use case pipeline.

Callers attach ``UseCaseHooks`` to a use case through a ``HookRegistry``
keyed by ``UseCaseName``. Each hook receives a ``HookContext`` and may be a
plain function or a coroutine function. Hooks of one execution share an
``ExecutionFrame``: its ``shared`` dict is the scratch space hooks use to pass
data to each other, and ``abort(reason)`` stops the pipeline once the
calling hook returns.

Example:
    async def require_invite_quota(ctx: HookContext) -> None:
        if await quota_exceeded(ctx.input.organization_id):
            ctx.abort("invite quota exceeded")

    registry = HookRegistry()
    registry.register(
        UseCaseName.ADD_ORGANIZATION_MEMBER,
        UseCaseHooks(after_validation=require_invite_quota),
    )
"""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Generic, TypeVar

if TYPE_CHECKING:
    from tenantkit.core.context import OperationContext
    from tenantkit.core.errors import DomainError
    from tenantkit.core.ports import Adapters
    from tenantkit.core.results import Result

InputT = TypeVar("InputT")
OutputT = TypeVar("OutputT")


class UseCaseName(str, enum.Enum):
    CREATE_USER = "CreateUser"
    GET_USER = "GetUser"
    UPDATE_USER = "UpdateUser"
    DELETE_USER = "DeleteUser"
    LIST_USER_ORGANIZATIONS = "ListUserOrganizations"
    CREATE_ORGANIZATION = "CreateOrganization"
    GET_ORGANIZATION = "GetOrganization"
    UPDATE_ORGANIZATION = "UpdateOrganization"
    LIST_ORGANIZATION_MEMBERS = "ListOrganizationMembers"
    ARCHIVE_ORGANIZATION = "ArchiveOrganization"
    RESTORE_ORGANIZATION = "RestoreOrganization"
    DELETE_ORGANIZATION = "DeleteOrganization"
    TRANSFER_ORGANIZATION_OWNERSHIP = "TransferOrganizationOwnership"
    ADD_ORGANIZATION_MEMBER = "AddOrganizationMember"
    ACCEPT_ORGANIZATION_INVITATION = "AcceptOrganizationInvitation"
    LEAVE_ORGANIZATION = "LeaveOrganization"
    REMOVE_ORGANIZATION_MEMBER = "RemoveOrganizationMember"
    UPDATE_ORGANIZATION_MEMBER_ROLE = "UpdateOrganizationMemberRole"


class HookName(str, enum.Enum):
    ON_START = "on_start"
    AFTER_VALIDATION = "after_validation"
    BEFORE_EXECUTION = "before_execution"
    AFTER_EXECUTION = "after_execution"
    ON_SUCCESS = "on_success"
    ON_ERROR = "on_error"
    ON_ABORT = "on_abort"
    ON_FINALLY = "on_finally"


@dataclass
class StepResults(Generic[InputT, OutputT]):
    validated_input: InputT | None = None
    authorized: bool = False
    output: OutputT | None = None


@dataclass
class ExecutionFrame(Generic[InputT, OutputT]):
    """Mutable state of a single ``execute`` call.

    A new frame is created for every call and passed down explicitly, so one
    use case instance can serve concurrent executions.
    """

    execution_id: str
    shared: dict[str, Any] = field(default_factory=dict)
    step_results: StepResults[InputT, OutputT] = field(default_factory=StepResults)
    aborted: bool = False
    abort_reason: str = ""

    def abort(self, reason: str) -> None:
        self.aborted = True
        self.abort_reason = reason


@dataclass(frozen=True)
class HookContext(Generic[InputT, OutputT]):
    execution_id: str
    use_case_name: UseCaseName
    input: Any
    step_results: StepResults[InputT, OutputT]
    shared: dict[str, Any]
    adapters: Adapters
    context: OperationContext
    abort: Callable[[str], None]
    error: DomainError | None = None
    reason: str | None = None
    result: Result[OutputT, DomainError] | None = None


Hook = Callable[[HookContext[Any, Any]], Awaitable[None] | None]


@dataclass(frozen=True)
class UseCaseHooks:
    on_start: Hook | None = None
    after_validation: Hook | None = None
    before_execution: Hook | None = None
    after_execution: Hook | None = None
    on_success: Hook | None = None
    on_error: Hook | None = None
    on_abort: Hook | None = None
    on_finally: Hook | None = None

    def get(self, hook_name: HookName) -> Hook | None:
        return getattr(self, hook_name.value)


@dataclass(frozen=True)
class HookExecutionEvent:
    request_id: str
    use_case_name: UseCaseName
    hook_name: HookName
    execution_id: str
    timestamp: datetime
    params: HookContext[Any, Any]


class HookRegistry:
    """Typed mapping from use case identifier to its hook bundle."""

    def __init__(self, hooks: Mapping[UseCaseName, UseCaseHooks] | None = None) -> None:
        self._hooks: dict[UseCaseName, UseCaseHooks] = dict(hooks or {})

    def register(self, use_case_name: UseCaseName, hooks: UseCaseHooks) -> None:
        self._hooks[use_case_name] = hooks

    def get(self, use_case_name: UseCaseName) -> UseCaseHooks | None:
        return self._hooks.get(use_case_name)

    def __contains__(self, use_case_name: object) -> bool:
        return use_case_name in self._hooks
