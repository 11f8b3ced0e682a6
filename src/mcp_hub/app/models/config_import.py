"""Models for importing, merging and exporting external configuration files."""

from enum import Enum

from pydantic import BaseModel, Field

from mcp_hub.app.models.server import ServerConfiguration


class ConfigFormat(str, Enum):
    CLAUDE_DESKTOP = "claude-desktop"
    VSCODE = "vscode"
    CURSOR = "cursor"
    CLINE = "cline"
    GENERIC = "generic"
    UNKNOWN = "unknown"


FORMAT_LABELS = {
    ConfigFormat.CLAUDE_DESKTOP: "Claude Desktop",
    ConfigFormat.VSCODE: "VS Code",
    ConfigFormat.CURSOR: "Cursor",
    ConfigFormat.CLINE: "Cline",
    ConfigFormat.GENERIC: "generic",
    ConfigFormat.UNKNOWN: "unknown",
}


class ParseResult(BaseModel):
    success: bool
    format: ConfigFormat
    servers: list[ServerConfiguration] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    source_file: str | None = None


class ConfigFile(BaseModel):
    name: str = Field(..., description="File name or path, used for provenance")
    content: str


class FileMessage(BaseModel):
    file: str
    message: str


class BatchParseResult(BaseModel):
    success: bool
    servers: list[ServerConfiguration] = Field(default_factory=list)
    errors: list[FileMessage] = Field(default_factory=list)
    warnings: list[FileMessage] = Field(default_factory=list)
    files: list[ParseResult] = Field(default_factory=list)
    total_files: int = 0
    successful_files: int = 0


class MergeResult(BaseModel):
    servers: list[ServerConfiguration]
    added: int = 0
    skipped: int = 0
    skipped_names: list[str] = Field(default_factory=list)


class ConfigContent(BaseModel):
    content: str = Field(..., description="Raw JSON text of a configuration file")
    source_file: str | None = None


class ConfigBatch(BaseModel):
    files: list[ConfigFile]


class MergeRequest(BaseModel):
    servers: list[ServerConfiguration]
