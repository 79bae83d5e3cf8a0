from __future__ import annotations

from pydantic import BaseModel, Field

from .models import CustomServiceSpec

DNS_NAME = r"^[a-z0-9]([a-z0-9\-\.]{0,251}[a-z0-9])?$"


class ApplyRequest(BaseModel):
    child_name: str = Field(..., pattern=DNS_NAME, description="Name of the managed child resource")
    key: str = Field(..., min_length=1, max_length=253, description="Key the child must contain")
    value: str = Field("", description="Value stored under key")

    def to_spec(self) -> CustomServiceSpec:
        return CustomServiceSpec(child_name=self.child_name, key=self.key, value=self.value)
