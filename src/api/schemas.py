"""API-facing Pydantic models."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field


class HoldMusicFile(BaseModel):
    name: str
    size: int = Field(description="Size of the stored asset in bytes.")


class HoldMusicFilesResponse(BaseModel):
    files: list[HoldMusicFile]


class HoldMusicOptionsResponse(BaseModel):
    options: dict[str, str] = Field(description="Track name to asset file (or label for the generated tone).")


class PublicUrlResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    public_url: str | None = Field(default=None, alias="publicUrl")


class StoredBroadcast(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message_id: str = Field(alias="messageId")
    message: dict[str, Any]
    timestamp: float


class BroadcastStoredResponse(BaseModel):
    ok: bool


class HealthResponse(BaseModel):
    status: str = "ok"
    sessions: int


ToolSchema = dict[str, Any]
