from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BootstrapCreatedResponse(CamelModel):
    status: Literal["created"] = "created"
    anon_id: str
    device_id: str
    recovery_code: str


class BootstrapResolvedResponse(CamelModel):
    status: Literal["ok"] = "ok"
    anon_id: str


class RestoreRequest(CamelModel):
    recovery_code: str | None = None


class RestoreResponse(CamelModel):
    anon_id: str
    device_id: str


class RecoveryRotateResponse(CamelModel):
    anon_id: str
    recovery_code: str
    rotated_at: datetime
