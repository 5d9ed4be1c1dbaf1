"""Use case execution pipeline.

Every business operation subclasses ``BaseUseCase`` and supplies an input
schema, an output schema, an optional ``authorize`` step and the
``execute_business_logic`` step. ``execute`` runs them through a fixed
sequence of stages with hooks in between:

    on_start -> validate -> after_validation -> authorize -> before_execution
    -> business logic -> after_execution -> parse output
    -> on_success | on_error | on_abort -> on_finally

Expected failures travel as ``Result.fail(DomainError)``. Anything raised by
validation, authorization, business logic or a pre-completion hook is caught
once and turned into a ``ValidationError`` carrying the use case's generic
message. ``on_success``, ``on_abort`` and ``on_finally`` failures are logged
and never change the result.
"""

from __future__ import annotations

import inspect
import logging
import time
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable, Mapping
from datetime import datetime
from typing import Any, ClassVar, Generic, Protocol, TypeVar
from uuid import UUID, uuid4

from tenantkit.core.background_tasks import fire_and_forget
from tenantkit.core.config import settings
from tenantkit.core.context import OperationContext
from tenantkit.core.errors import (
    AbortedError,
    DomainError,
    InfrastructureError,
    NotFoundError,
    ValidationError,
)
from tenantkit.core.hooks import (
    ExecutionFrame,
    HookContext,
    HookExecutionEvent,
    HookName,
    UseCaseHooks,
    UseCaseName,
)
from tenantkit.core.logging import bind_logging_context, get_logging_context
from tenantkit.core.metrics import record_use_case_execution
from tenantkit.core.options import ToolkitOptions
from tenantkit.core.ports import Adapters, RepositoryBundle
from tenantkit.core.results import Result
from tenantkit.core.validation import SchemaValidator, Validator
from tenantkit.models.user import User

LOGGER = logging.getLogger(__name__)

InputT = TypeVar("InputT")
OutputT = TypeVar("OutputT")
EntityT = TypeVar("EntityT")
T = TypeVar("T")


class _FindById(Protocol[EntityT]):
    async def find_by_id(self, entity_id: UUID, /) -> EntityT | None: ...


async def find_by_id_or_fail(
    repository: _FindById[EntityT],
    entity_id: UUID,
    entity_name: str,
) -> Result[EntityT, DomainError]:
    entity = await repository.find_by_id(entity_id)
    if entity is None:
        return Result.fail(NotFoundError(entity_name, entity_id, {"reason": f"{entity_name} does not exist"}))
    return Result.ok(entity)


class BaseUseCase(ABC, Generic[InputT, OutputT]):
    name: ClassVar[UseCaseName]
    input_schema: ClassVar[Any]
    output_schema: ClassVar[Any]
    error_message: ClassVar[str]

    def __init__(self, adapters: Adapters, options: ToolkitOptions | None = None) -> None:
        self.adapters = adapters
        self.options = options or ToolkitOptions()
        self.hooks: UseCaseHooks = self.options.hooks.get(self.name) or UseCaseHooks()
        self.input_validator: Validator[InputT] = self.build_input_validator()
        self.output_validator: Validator[OutputT] = self.build_output_validator()

    def build_input_validator(self) -> Validator[InputT]:
        return SchemaValidator(self.input_schema)

    def build_output_validator(self) -> Validator[OutputT]:
        return SchemaValidator(self.output_schema)

    async def authorize(self, validated_input: InputT, context: OperationContext) -> Result[None, DomainError]:
        return Result.ok(None)

    @abstractmethod
    async def execute_business_logic(
        self, validated_input: InputT, context: OperationContext
    ) -> Result[OutputT, DomainError]: ...

    async def execute(
        self,
        input_data: InputT | Mapping[str, Any],
        context: OperationContext,
    ) -> Result[OutputT, DomainError]:
        frame: ExecutionFrame[InputT, OutputT] = ExecutionFrame(execution_id=str(uuid4()))
        user_ref = context.external_id or (str(context.actor_user_id) if context.actor_user_id else None)
        org_ref = str(context.organization_id) if context.organization_id else None

        with bind_logging_context(context.request_id, user_ref, org_ref):
            start = time.perf_counter()
            LOGGER.info("use_case_started", extra=self._log_extra(frame))

            result = await self._run_pipeline(input_data, context, frame)

            if result.is_failure and isinstance(result.get_error(), AbortedError):
                await self._run_on_abort(input_data, context, frame, result.get_error())
            elif result.is_failure:
                result = await self._run_on_error(input_data, context, frame, result)
            else:
                await self._run_on_success(input_data, context, frame, result)

            await self._run_on_finally(input_data, context, frame, result)
            self._log_outcome(frame, result, time.perf_counter() - start)

        return result

    async def _run_pipeline(
        self,
        input_data: Any,
        context: OperationContext,
        frame: ExecutionFrame[InputT, OutputT],
    ) -> Result[OutputT, DomainError]:
        try:
            hook_ctx = self._hook_context(frame, input_data, context)

            await self._execute_hook(HookName.ON_START, hook_ctx)
            if frame.aborted:
                return Result.fail(AbortedError(frame.abort_reason))

            validated = self._validate_input(input_data)
            if validated.is_failure:
                return Result.fail(validated.get_error())
            validated_input = validated.get_value()
            frame.step_results.validated_input = validated_input

            await self._execute_hook(HookName.AFTER_VALIDATION, hook_ctx)
            if frame.aborted:
                return Result.fail(AbortedError(frame.abort_reason))

            authorized = await self.authorize(validated_input, context)
            if authorized.is_failure:
                return Result.fail(authorized.get_error())
            frame.step_results.authorized = True

            await self._execute_hook(HookName.BEFORE_EXECUTION, hook_ctx)
            if frame.aborted:
                return Result.fail(AbortedError(frame.abort_reason))

            business_result = await self.execute_business_logic(validated_input, context)
            if business_result.is_failure:
                return business_result
            frame.step_results.output = business_result.get_value()

            await self._execute_hook(HookName.AFTER_EXECUTION, hook_ctx)
            if frame.aborted:
                return Result.fail(AbortedError(frame.abort_reason))

            return self._parse_output(business_result.get_value())
        except Exception as exc:
            LOGGER.warning(
                "use_case_exception",
                extra={**self._log_extra(frame), "exception_type": type(exc).__name__},
                exc_info=True,
            )
            return Result.fail(ValidationError(self.error_message, None, {"original_error": exc}))

    def _validate_input(self, input_data: Any) -> Result[InputT, ValidationError]:
        validated = self.input_validator.validate(input_data)
        if validated.is_failure:
            first = validated.get_error()[0]
            return Result.fail(ValidationError(first.message, first.path or None))
        return Result.ok(validated.get_value())

    def _parse_output(self, output: OutputT) -> Result[OutputT, DomainError]:
        parsed = self.output_validator.validate(output)
        if parsed.is_failure:
            first = parsed.get_error()[0]
            return Result.fail(
                ValidationError(
                    "Failed to parse output",
                    None,
                    {"original_error": {"message": first.message, "path": first.path}},
                )
            )
        return Result.ok(parsed.get_value())

    async def _run_on_abort(
        self,
        input_data: Any,
        context: OperationContext,
        frame: ExecutionFrame[InputT, OutputT],
        error: AbortedError,
    ) -> None:
        hook = self.hooks.on_abort
        if hook is None:
            return
        try:
            hook_ctx = self._hook_context(frame, input_data, context, reason=error.reason)
            self._log_hook_execution(HookName.ON_ABORT, hook_ctx)
            await _call_hook(hook, hook_ctx)
        except Exception:
            LOGGER.exception("on_abort_hook_failed", extra=self._log_extra(frame))

    async def _run_on_error(
        self,
        input_data: Any,
        context: OperationContext,
        frame: ExecutionFrame[InputT, OutputT],
        result: Result[OutputT, DomainError],
    ) -> Result[OutputT, DomainError]:
        hook = self.hooks.on_error
        if hook is None:
            return result
        try:
            hook_ctx = self._hook_context(frame, input_data, context, error=result.get_error())
            self._log_hook_execution(HookName.ON_ERROR, hook_ctx)
            await _call_hook(hook, hook_ctx)
        except Exception as exc:
            LOGGER.warning("on_error_hook_failed", extra=self._log_extra(frame), exc_info=True)
            return Result.fail(
                ValidationError(
                    self.error_message,
                    None,
                    {"original_error": result.get_error(), "error": exc},
                )
            )
        return result

    async def _run_on_success(
        self,
        input_data: Any,
        context: OperationContext,
        frame: ExecutionFrame[InputT, OutputT],
        result: Result[OutputT, DomainError],
    ) -> None:
        hook = self.hooks.on_success
        if hook is None:
            return
        try:
            hook_ctx = self._hook_context(frame, input_data, context, result=result)
            self._log_hook_execution(HookName.ON_SUCCESS, hook_ctx)
            await _call_hook(hook, hook_ctx)
        except Exception:
            LOGGER.exception("on_success_hook_failed", extra=self._log_extra(frame))

    async def _run_on_finally(
        self,
        input_data: Any,
        context: OperationContext,
        frame: ExecutionFrame[InputT, OutputT],
        result: Result[OutputT, DomainError],
    ) -> None:
        hook = self.hooks.on_finally
        if hook is None:
            return
        try:
            hook_ctx = self._hook_context(frame, input_data, context, result=result)
            self._log_hook_execution(HookName.ON_FINALLY, hook_ctx)
            await _call_hook(hook, hook_ctx)
        except Exception:
            LOGGER.exception("on_finally_hook_failed", extra=self._log_extra(frame))

    async def _execute_hook(self, hook_name: HookName, hook_ctx: HookContext[InputT, OutputT]) -> None:
        self._log_hook_execution(hook_name, hook_ctx)
        hook = self.hooks.get(hook_name)
        if hook is None:
            return
        await _call_hook(hook, hook_ctx)

    def _hook_context(
        self,
        frame: ExecutionFrame[InputT, OutputT],
        input_data: Any,
        context: OperationContext,
        **extra: Any,
    ) -> HookContext[InputT, OutputT]:
        return HookContext(
            execution_id=frame.execution_id,
            use_case_name=self.name,
            input=input_data,
            step_results=frame.step_results,
            shared=frame.shared,
            adapters=self.adapters,
            context=context,
            abort=frame.abort,
            **extra,
        )

    def _log_hook_execution(self, hook_name: HookName, hook_ctx: HookContext[InputT, OutputT]) -> None:
        observability = self.adapters.observability
        if observability is None or not settings.hook_observability_enabled:
            return
        event = HookExecutionEvent(
            request_id=hook_ctx.context.request_id or "unknown",
            use_case_name=self.name,
            hook_name=hook_name,
            execution_id=hook_ctx.execution_id,
            timestamp=self.adapters.system.clock.now(),
            params=hook_ctx,
        )
        fire_and_forget(
            lambda: observability.log_hook_execution(event),
            name=f"log_hook_execution:{self.name.value}:{hook_name.value}",
        )

    def _log_extra(self, frame: ExecutionFrame[InputT, OutputT]) -> dict[str, Any]:
        return {
            **get_logging_context(),
            "use_case": self.name.value,
            "execution_id": frame.execution_id,
        }

    def _log_outcome(
        self,
        frame: ExecutionFrame[InputT, OutputT],
        result: Result[OutputT, DomainError],
        duration_seconds: float,
    ) -> None:
        extra = {**self._log_extra(frame), "duration_ms": round(duration_seconds * 1000, 3)}
        if result.is_success:
            outcome = "success"
            LOGGER.info("use_case_succeeded", extra=extra)
        elif isinstance(result.get_error(), AbortedError):
            outcome = "aborted"
            LOGGER.warning("use_case_aborted", extra={**extra, "reason": result.get_error().reason})
        else:
            outcome = "failure"
            error = result.get_error()
            LOGGER.info(
                "use_case_failed",
                extra={**extra, "error_code": error.code, "error_message": error.message},
            )
        record_use_case_execution(self.name.value, outcome, duration_seconds)

    async def get_user_from_external_id(self, external_id: str) -> Result[User, DomainError]:
        """Resolve the acting principal's identity-provider id to a user."""
        users = getattr(self.adapters.persistence, "users", None)
        if users is None:
            return Result.fail(InfrastructureError("UserRepository is required for get_user_from_external_id"))

        user = await users.find_by_external_id(external_id)
        if user is None:
            return Result.fail(
                NotFoundError(
                    "User",
                    external_id,
                    {
                        "message": "User not found with the provided external ID from auth provider. "
                        "Please ensure the user is registered in the system."
                    },
                )
            )
        return Result.ok(user)

    async def run_transaction(
        self,
        work: Callable[[RepositoryBundle], Awaitable[T]],
        failure_message: str,
    ) -> Result[T, DomainError]:
        """Run ``work`` in a unit of work, turning any failure into a ValidationError."""
        try:
            return Result.ok(await self.adapters.persistence.uow.transaction(work))
        except Exception as exc:
            LOGGER.warning(
                "transaction_failed",
                extra={
                    **get_logging_context(),
                    "use_case": self.name.value,
                    "exception_type": type(exc).__name__,
                },
                exc_info=True,
            )
            return Result.fail(ValidationError(failure_message, None, {"original_error": exc}))

    def now(self) -> datetime:
        return self.adapters.system.clock.now()

    def new_id(self) -> UUID:
        return self.adapters.system.uuid.generate()


async def _call_hook(hook: Callable[[Any], Any], hook_ctx: HookContext[Any, Any]) -> None:
    outcome = hook(hook_ctx)
    if inspect.isawaitable(outcome):
        await outcome
