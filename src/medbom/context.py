from __future__ import annotations

from contextvars import ContextVar
from dataclasses import dataclass
from typing import Optional


generation_id_var: ContextVar[Optional[str]] = ContextVar("generation_id", default=None)
configuration_id_var: ContextVar[Optional[str]] = ContextVar(
    "configuration_id", default=None
)
user_id_var: ContextVar[Optional[str]] = ContextVar("user_id", default=None)


@dataclass(frozen=True)
class GenerationContext:
    generation_id: Optional[str]
    configuration_id: Optional[str]
    user_id: Optional[str]


def get_generation_context() -> GenerationContext:
    return GenerationContext(
        generation_id=generation_id_var.get(),
        configuration_id=configuration_id_var.get(),
        user_id=user_id_var.get(),
    )
