from __future__ import annotations

from dataclasses import dataclass
from typing import Union

from .models import CustomResource


@dataclass(frozen=True)
class UpdateNoOp:
    """Nothing changed on the custom resource; the caller persists nothing."""

    @property
    def persist_needed(self) -> bool:
        return False


@dataclass(frozen=True)
class UpdateResource:
    """The caller must write `resource` back to the store of record."""

    resource: CustomResource

    @property
    def persist_needed(self) -> bool:
        return True


UpdateControl = Union[UpdateNoOp, UpdateResource]
