"""
Daemon registry record and lifecycle command results.
"""

from typing import Literal, Optional
from pydantic import BaseModel, Field


class BridgeInfo(BaseModel):
    """Contents of .popcorn/bridge.json"""
    pid: int
    port: int
    token: str = ""
    started_at: Optional[str] = Field(default=None, alias="startedAt")

    model_config = {"populate_by_name": True}


class StartResult(BaseModel):
    started: bool
    reason: Literal["started", "already_running"]
    pid: int
    port: int


class StopResult(BaseModel):
    stopped: bool
    reason: Literal["killed", "not_running", "no_bridge_json"]
    pid: Optional[int] = None
    port: Optional[int] = None


class StatusResult(BaseModel):
    running: bool
    pid: Optional[int] = None
    port: Optional[int] = None
    started_at: Optional[str] = Field(default=None, alias="startedAt")
    uptime: Optional[str] = None

    model_config = {"populate_by_name": True}


class CleanResult(BaseModel):
    removed: list[str] = []
    skipped: list[str] = []
    errors: dict[str, str] = {}


class InitResult(BaseModel):
    created: list[str] = []
    modified: list[str] = []
    skipped: list[str] = []
    watch_dir: str = Field(alias="watchDir")

    model_config = {"populate_by_name": True}
