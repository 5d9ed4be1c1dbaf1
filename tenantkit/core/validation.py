"""Input and output contracts checked at the use case boundary.

``Validator`` is the capability the pipeline depends on: take untrusted data,
return either the typed value or a list of field errors. ``SchemaValidator``
implements it with a pydantic ``TypeAdapter``; ``CustomFieldsValidator``
layers a caller-supplied schema for the opaque custom fields on top of a
base schema.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Generic, Protocol, TypeVar

from pydantic import BaseModel, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from tenantkit.core.results import Result

T = TypeVar("T")
T_co = TypeVar("T_co", covariant=True)


@dataclass(frozen=True)
class FieldError:
    path: str
    message: str


class Validator(Protocol[T_co]):
    def validate(self, data: Any) -> Result[T_co, list[FieldError]]: ...


def _as_mapping(data: Any) -> Any:
    if isinstance(data, BaseModel):
        return data.model_dump()
    return data


def _field_errors(exc: PydanticValidationError, prefix: str = "") -> list[FieldError]:
    errors = []
    for error in exc.errors():
        path = ".".join(str(part) for part in error["loc"])
        if prefix:
            path = f"{prefix}.{path}" if path else prefix
        errors.append(FieldError(path=path, message=error["msg"]))
    return errors


class SchemaValidator(Generic[T]):
    """Validate data against a pydantic model or any type ``TypeAdapter`` accepts."""

    def __init__(self, schema: Any) -> None:
        self.schema = schema
        self._adapter: TypeAdapter[T] = TypeAdapter(schema)

    def validate(self, data: Any) -> Result[T, list[FieldError]]:
        try:
            value = self._adapter.validate_python(_as_mapping(data))
        except PydanticValidationError as exc:
            return Result.fail(_field_errors(exc))
        return Result.ok(value)


class CustomFieldsValidator(Generic[T]):
    """Validate a base model, then check its extra keys against a custom schema.

    The validated custom values replace the raw extras on the returned model.
    Keys listed in ``exclude`` are never treated as custom fields.
    """

    def __init__(
        self,
        base: type[BaseModel],
        custom_schema: type[BaseModel] | None,
        exclude: frozenset[str] = frozenset(),
    ) -> None:
        self.base = base
        self.custom_schema = custom_schema
        self._base = SchemaValidator[T](base)
        self._exclude = exclude

    def validate(self, data: Any) -> Result[T, list[FieldError]]:
        raw = _as_mapping(data)
        result = self._base.validate(raw)
        if result.is_failure or self.custom_schema is None:
            return result

        custom = validate_custom_fields(self.custom_schema, extract_custom_fields(self.base, raw, self._exclude))
        if custom.is_failure:
            return Result.fail(custom.get_error())
        return Result.ok(result.get_value().model_copy(update=custom.get_value()))


class ListValidator(Generic[T]):
    """Validate every item of a sequence with ``item_validator``.

    Field error paths are prefixed with the item index.
    """

    def __init__(self, item_validator: Validator[T]) -> None:
        self.item_validator = item_validator

    def validate(self, data: Any) -> Result[list[T], list[FieldError]]:
        if isinstance(data, (str, bytes, Mapping)) or not isinstance(data, Sequence):
            return Result.fail([FieldError(path="", message="Input should be a valid list")])
        items: list[T] = []
        errors: list[FieldError] = []
        for index, item in enumerate(data):
            result = self.item_validator.validate(item)
            if result.is_failure:
                errors.extend(
                    FieldError(path=f"{index}.{error.path}" if error.path else str(index), message=error.message)
                    for error in result.get_error()
                )
            else:
                items.append(result.get_value())
        if errors:
            return Result.fail(errors)
        return Result.ok(items)


def extract_custom_fields(
    base: type[BaseModel],
    data: Mapping[str, Any],
    exclude: frozenset[str] = frozenset(),
) -> dict[str, Any]:
    if not isinstance(data, Mapping):
        return {}
    known = set(base.model_fields) | exclude
    return {key: value for key, value in data.items() if key not in known}


def validate_custom_fields(
    custom_schema: type[BaseModel] | None,
    data: Mapping[str, Any] | None,
    prefix: str = "",
) -> Result[dict[str, Any], list[FieldError]]:
    """Validate custom fields and return them as a plain dict.

    Without a schema the fields are passed through unchanged.
    """
    values = dict(data or {})
    if custom_schema is None:
        return Result.ok(values)
    try:
        model = custom_schema.model_validate(values)
    except PydanticValidationError as exc:
        return Result.fail(_field_errors(exc, prefix))
    return Result.ok(model.model_dump())
