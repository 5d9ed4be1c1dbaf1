"""Shared SQLModel base for domain entities and use case schemas."""

from typing import Any, ClassVar

from pydantic import ConfigDict
from sqlmodel import SQLModel


class DomainModel(SQLModel):
    """Entity schema that carries opaque custom fields as pydantic extras."""

    # SQLModel expects SQLModelConfig but accepts ConfigDict at runtime
    model_config: ClassVar[ConfigDict] = ConfigDict(from_attributes=True, extra="allow")  # type: ignore[assignment]

    @property
    def custom_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})


class InputModel(SQLModel):
    """Use case input without custom fields; unknown keys are dropped."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="ignore")  # type: ignore[assignment]


class CustomizableInput(SQLModel):
    """Use case input whose unknown keys are custom fields of the entity."""

    model_config: ClassVar[ConfigDict] = ConfigDict(extra="allow")  # type: ignore[assignment]

    @property
    def custom_fields(self) -> dict[str, Any]:
        return dict(self.model_extra or {})
