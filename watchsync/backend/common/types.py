from __future__ import annotations

from typing import Literal, Optional, TypedDict

from pydantic import BaseModel, Field



class SyncStatus(TypedDict):
    in_progress: bool
    sync_id: Optional[str]
    state: Literal["idle", "running", "completed", "failed"]
    started_at: Optional[str]


class HttpResult(BaseModel):
    url: str
    status_code: int
    ok: bool
    elapsed_ms: int = Field(ge=0)
    error: Optional[str] = None
