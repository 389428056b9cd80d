"""Typed request variants for every capability.

Each multi-operation capability accepts a closed tagged union discriminated on
``operation``; an operation name outside the union is rejected during
validation, never dispatched.
"""

from __future__ import annotations

from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import Field, TypeAdapter, model_validator

from ..mcp.models import TransportKind
from ..schemas.base import BaseSchema

MAX_READ_BYTES = 1024 * 1024


class CapabilityRequest(BaseSchema):
    correlation_id: Optional[str] = Field(default=None, description="Audit token; generated when omitted.")


# enhanced_shell


class ShellExecuteRequest(CapabilityRequest):
    operation: Literal["execute"] = "execute"
    command: List[str] = Field(..., description="Command tokens, joined with spaces and run by the shell.")
    working_directory: Optional[str] = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0.0)
    session_id: Optional[str] = Field(default=None, description="Target session; the default session when omitted.")


# shell_session_info


class SessionListRequest(CapabilityRequest):
    operation: Literal["list"]


class SessionStatsRequest(CapabilityRequest):
    operation: Literal["stats"]
    session_id: Optional[str] = Field(default=None, description="One session, or every session when omitted.")


class SessionHistoryRequest(CapabilityRequest):
    operation: Literal["history"]
    session_id: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1)


class SessionFailuresRequest(CapabilityRequest):
    operation: Literal["failures"]
    session_id: Optional[str] = None
    limit: int = Field(default=5, ge=1)


SessionInfoRequest = Annotated[
    Union[SessionListRequest, SessionStatsRequest, SessionHistoryRequest, SessionFailuresRequest],
    Field(discriminator="operation"),
]


# mcp_server


class ServerRegisterRequest(CapabilityRequest):
    """Launch-spec fields are optional here so the registry reports missing ones as ``invalid_spec``."""

    operation: Literal["register"]
    name: Optional[str] = None
    command: Optional[str] = None
    args: List[str] = Field(default_factory=list)
    env: Optional[Dict[str, str]] = None
    cwd: Optional[str] = None
    transport: TransportKind = TransportKind.stdio
    url: Optional[str] = None


class ServerConnectRequest(CapabilityRequest):
    operation: Literal["connect"]
    server_id: str


class ServerDisconnectRequest(CapabilityRequest):
    operation: Literal["disconnect"]
    server_id: str


class ServerListRequest(CapabilityRequest):
    operation: Literal["list"]


class ServerStatusRequest(CapabilityRequest):
    operation: Literal["status"]
    server_id: Optional[str] = Field(default=None, description="One server, or aggregate stats when omitted.")


ServerRequest = Annotated[
    Union[ServerRegisterRequest, ServerConnectRequest, ServerDisconnectRequest, ServerListRequest, ServerStatusRequest],
    Field(discriminator="operation"),
]


# mcp_tool


class ToolListRequest(CapabilityRequest):
    operation: Literal["list"]
    server_id: Optional[str] = None


class ToolExecuteRequest(CapabilityRequest):
    operation: Literal["execute"]
    tool_name: str = Field(..., min_length=1)
    arguments: Dict[str, Any] = Field(default_factory=dict)
    server_id: Optional[str] = None


class ToolInfoRequest(CapabilityRequest):
    operation: Literal["info"]
    tool_name: str = Field(..., min_length=1)


ToolRequest = Annotated[
    Union[ToolListRequest, ToolExecuteRequest, ToolInfoRequest],
    Field(discriminator="operation"),
]


# mcp_resource


class ResourceListRequest(CapabilityRequest):
    operation: Literal["list"]
    server_id: Optional[str] = None


class ResourceReadRequest(CapabilityRequest):
    operation: Literal["read"]
    uri: str = Field(..., min_length=1)


class ResourceInfoRequest(CapabilityRequest):
    operation: Literal["info"]
    uri: str = Field(..., min_length=1)


ResourceRequest = Annotated[
    Union[ResourceListRequest, ResourceReadRequest, ResourceInfoRequest],
    Field(discriminator="operation"),
]


# file_read / file_write


class FileReadRequest(CapabilityRequest):
    operation: Literal["read"] = "read"
    path: str = Field(..., min_length=1)
    encoding: str = "utf-8"
    max_size: int = Field(default=MAX_READ_BYTES, ge=1)
    line_range: Optional[Tuple[int, int]] = Field(
        default=None, description="1-based inclusive (start, end) line range."
    )

    @model_validator(mode="after")
    def _check_range(self) -> "FileReadRequest":
        if self.line_range is not None:
            start, end = self.line_range
            if start < 1 or end < start:
                raise ValueError(f"invalid line_range {self.line_range}")
        return self


class FileWriteRequest(CapabilityRequest):
    operation: Literal["write"] = "write"
    path: str = Field(..., min_length=1)
    content: str
    encoding: str = "utf-8"
    create_dirs: bool = True
    overwrite: bool = True


SHELL_EXECUTE_ADAPTER = TypeAdapter(ShellExecuteRequest)
SESSION_INFO_ADAPTER = TypeAdapter(SessionInfoRequest)
SERVER_ADAPTER = TypeAdapter(ServerRequest)
TOOL_ADAPTER = TypeAdapter(ToolRequest)
RESOURCE_ADAPTER = TypeAdapter(ResourceRequest)
FILE_READ_ADAPTER = TypeAdapter(FileReadRequest)
FILE_WRITE_ADAPTER = TypeAdapter(FileWriteRequest)
