"""Import, merge and export MCP server configuration files.

Supported dialects (all JSON objects):
- VS Code:         {"mcp.servers": {...}}, {"mcp": {"servers": {...}}} or {"servers": {...}}
- Cursor:          {"cursor.mcp.servers": {...}}
- Cline/Roo-Cline: {"mcpServers": {...}} with disabled/autoApprove/alwaysAllow entries
- Claude Desktop:  {"mcpServers": {...}}
- generic:         {"<name>": {"command": ...} | {"url": ...}, ...}

Each entry becomes a ServerConfiguration. Entries that cannot be
converted are reported as errors and skipped; recoverable oddities are
reported as warnings.
"""

import json
from typing import Any, Iterable, Optional

from pydantic import ValidationError

from mcp_hub.app.models.config_import import (
    FORMAT_LABELS,
    BatchParseResult,
    ConfigFile,
    ConfigFormat,
    FileMessage,
    MergeResult,
    ParseResult,
)
from mcp_hub.app.models.server import (
    ConfigProvenance,
    ServerConfiguration,
    server_config_adapter,
    transport_target,
)
from mcp_hub.app.services.errors import MalformedJSON, UnknownFormat
from mcp_hub.app.services.logging_service import get_logger

logger = get_logger(__name__)

CLINE_MARKERS = ("disabled", "autoApprove", "alwaysAllow", "transportType")

TRANSPORT_ALIASES = {
    "stdio": "stdio",
    "local": "stdio",
    "sse": "sse",
    "http": "http",
    "streamable-http": "http",
    "streamablehttp": "http",
    "streamable_http": "http",
}

# Fields understood per entry, anything else is reported and ignored
KNOWN_ENTRY_FIELDS = {
    "command", "args", "env", "cwd", "url", "headers", "transport", "type", "transportType",
    "timeout", "method", "description", "disabled", "enabled", "autoApprove", "alwaysAllow",
    "sseEndpoint", "postEndpoint", "oauth", "autoRestart", "tools", "envFile",
}


def _load(content: str) -> Any:
    try:
        return json.loads(content)
    except (json.JSONDecodeError, TypeError) as e:
        raise MalformedJSON(f"Malformed JSON: {e}") from e


def _is_entry_map(value: Any) -> bool:
    return isinstance(value, dict) and all(isinstance(v, dict) for v in value.values())


def _classify(config: Any) -> ConfigFormat:
    if not isinstance(config, dict):
        return ConfigFormat.UNKNOWN
    if isinstance(config.get("mcp.servers"), dict):
        return ConfigFormat.VSCODE
    if isinstance(config.get("mcp"), dict) and isinstance(config["mcp"].get("servers"), dict):
        return ConfigFormat.VSCODE
    if isinstance(config.get("cursor.mcp.servers"), dict):
        return ConfigFormat.CURSOR
    if isinstance(config.get("mcpServers"), dict):
        entries = config["mcpServers"].values()
        if any(isinstance(e, dict) and any(m in e for m in CLINE_MARKERS) for e in entries):
            return ConfigFormat.CLINE
        return ConfigFormat.CLAUDE_DESKTOP
    if _is_entry_map(config.get("servers")):
        return ConfigFormat.VSCODE
    if config and _is_entry_map(config) and all(("command" in v or "url" in v) for v in config.values()):
        return ConfigFormat.GENERIC
    return ConfigFormat.UNKNOWN


def detect_format(content: str) -> ConfigFormat:
    """Classify the dialect of a configuration file; malformed input is unknown."""
    try:
        return _classify(_load(content))
    except MalformedJSON:
        return ConfigFormat.UNKNOWN


def _server_entries(config: dict, fmt: ConfigFormat) -> Any:
    match fmt:
        case ConfigFormat.VSCODE:
            if "mcp.servers" in config:
                return config["mcp.servers"]
            if isinstance(config.get("mcp"), dict):
                return config["mcp"]["servers"]
            return config["servers"]
        case ConfigFormat.CURSOR:
            return config.get("cursor.mcp.servers") or config.get("mcp.servers")
        case ConfigFormat.CLINE | ConfigFormat.CLAUDE_DESKTOP:
            return config["mcpServers"]
        case ConfigFormat.GENERIC:
            return config
    return {}


def _resolve_transport(entry: dict) -> Optional[str]:
    explicit = entry.get("transport") or entry.get("type") or entry.get("transportType")
    if isinstance(explicit, str):
        resolved = TRANSPORT_ALIASES.get(explicit.strip().lower())
        if resolved is None:
            raise ValueError(f"unsupported transport '{explicit}'")
        return resolved
    if entry.get("command"):
        return "stdio"
    url = entry.get("url")
    if isinstance(url, str) and url:
        lowered = url.lower()
        if "/sse" in lowered or "text/event-stream" in lowered:
            return "sse"
        return "http"
    return None


def _string_map(value: Any, field: str, name: str, warnings: list[str]) -> dict[str, str]:
    if value is None:
        return {}
    if not isinstance(value, dict):
        warnings.append(f'Server "{name}": ignored "{field}" because it is not an object')
        return {}
    result = {}
    coerced = False
    for key, item in value.items():
        if item is None:
            continue
        if not isinstance(item, str):
            coerced = True
            if isinstance(item, bool):
                item = "true" if item else "false"
            elif isinstance(item, (dict, list)):
                item = json.dumps(item)
            else:
                item = str(item)
        result[str(key)] = item
    if coerced:
        warnings.append(f'Server "{name}": non-string "{field}" values were converted to strings')
    return result


def _args(value: Any, name: str, warnings: list[str]) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        warnings.append(f'Server "{name}": "args" was a string and was split on whitespace')
        return value.split()
    if not isinstance(value, list):
        warnings.append(f'Server "{name}": ignored "args" because it is not a list')
        return []
    if any(not isinstance(a, str) for a in value):
        warnings.append(f'Server "{name}": non-string arguments were converted to strings')
    return [a if isinstance(a, str) else str(a) for a in value]


def _timeout(value: Any, name: str, warnings: list[str]) -> Optional[int]:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        warnings.append(f'Server "{name}": ignored non-numeric timeout')
        return None
    seconds = float(value)
    if seconds > 300:
        # Values this large are milliseconds in several dialects
        seconds = seconds / 1000
    clamped = int(min(300, max(1, round(seconds))))
    if clamped != seconds:
        warnings.append(f'Server "{name}": timeout {value} adjusted to {clamped}s')
    return clamped


def convert_entry(
    name: str,
    entry: Any,
    fmt: ConfigFormat,
    source_file: Optional[str] = None,
    warnings: Optional[list[str]] = None,
) -> ServerConfiguration:
    """Convert one dialect entry; raises ValueError if it cannot be converted."""
    warnings = warnings if warnings is not None else []
    if not isinstance(entry, dict):
        raise ValueError("entry is not an object")

    transport = _resolve_transport(entry)
    if transport is None:
        raise ValueError("unable to determine transport type (no command or url)")

    unknown = sorted(set(entry) - KNOWN_ENTRY_FIELDS)
    if unknown:
        warnings.append(f'Server "{name}": ignored unknown fields {", ".join(unknown)}')

    enabled = True
    if entry.get("disabled") is True or entry.get("enabled") is False:
        enabled = False
        warnings.append(f'Server "{name}" is disabled in the source file and was imported as disabled')

    data: dict[str, Any] = {
        "name": name,
        "transport": transport,
        "description": entry.get("description") or f"Imported from {FORMAT_LABELS[fmt]} configuration",
        "enabled": enabled,
        "provenance": ConfigProvenance(
            source_format=fmt.value,
            source_path=source_file,
            original_config=json.dumps(entry),
        ),
    }

    match transport:
        case "stdio":
            if not entry.get("command"):
                raise ValueError('stdio transport requires "command"')
            data.update(
                command=entry["command"],
                args=_args(entry.get("args"), name, warnings),
                env=_string_map(entry.get("env"), "env", name, warnings),
                cwd=entry.get("cwd"),
                auto_restart=bool(entry.get("autoRestart", False)),
            )
        case "sse":
            if not entry.get("url"):
                raise ValueError('sse transport requires "url"')
            data.update(
                url=entry["url"],
                headers=_string_map(entry.get("headers"), "headers", name, warnings),
                sse_endpoint=entry.get("sseEndpoint"),
                post_endpoint=entry.get("postEndpoint"),
                oauth=entry.get("oauth"),
            )
        case "http":
            if not entry.get("url"):
                raise ValueError('http transport requires "url"')
            data.update(
                url=entry["url"],
                headers=_string_map(entry.get("headers"), "headers", name, warnings),
                oauth=entry.get("oauth"),
            )
            method = entry.get("method")
            if isinstance(method, str) and method.upper() in ("GET", "POST"):
                data["method"] = method.upper()
            elif method is not None:
                warnings.append(f'Server "{name}": unsupported method {method!r}, using POST')
            timeout = _timeout(entry.get("timeout"), name, warnings)
            if timeout is not None:
                data["timeout"] = timeout

    try:
        return server_config_adapter.validate_python(data)
    except ValidationError as e:
        details = "; ".join(f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors())
        raise ValueError(details) from e


def parse(content: str, source_file: Optional[str] = None) -> ParseResult:
    """Parse one configuration file. Raises MalformedJSON for invalid JSON."""
    config = _load(content)
    fmt = _classify(config)
    result = ParseResult(success=False, format=fmt, source_file=source_file)

    if fmt == ConfigFormat.UNKNOWN:
        result.errors.append(
            "Unrecognized configuration format: expected mcpServers, mcp.servers, servers or cursor.mcp.servers"
        )
        return result

    entries = _server_entries(config, fmt)
    if not isinstance(entries, dict):
        result.errors.append(f"Invalid {FORMAT_LABELS[fmt]} configuration: server list is not an object")
        return result

    for name, entry in entries.items():
        try:
            result.servers.append(convert_entry(name, entry, fmt, source_file, result.warnings))
        except ValueError as e:
            result.errors.append(f'Failed to parse server "{name}": {e}')

    result.success = len(result.servers) > 0
    if not result.servers and not result.errors:
        result.errors.append("No valid servers found in configuration")

    logger.info(
        f"Parsed {fmt.value} configuration{f' {source_file}' if source_file else ''}: "
        f"{len(result.servers)} server(s), {len(result.errors)} error(s), {len(result.warnings)} warning(s)"
    )
    return result


def parse_multiple(files: Iterable[ConfigFile]) -> BatchParseResult:
    """Parse several files; one bad file never fails the batch."""
    batch = BatchParseResult(success=False)
    for file in files:
        batch.total_files += 1
        try:
            result = parse(file.content, source_file=file.name)
        except MalformedJSON as e:
            result = ParseResult(success=False, format=ConfigFormat.UNKNOWN, errors=[e.message], source_file=file.name)

        batch.files.append(result)
        batch.errors.extend(FileMessage(file=file.name, message=m) for m in result.errors)
        batch.warnings.extend(FileMessage(file=file.name, message=m) for m in result.warnings)
        batch.servers.extend(result.servers)
        if result.success:
            batch.successful_files += 1

    batch.success = batch.successful_files > 0 and len(batch.servers) > 0
    return batch


def merge_key(server: ServerConfiguration) -> tuple[str, str, str]:
    """Identity used for de-duplication: name, transport and command/URL."""
    return (server.name.strip().casefold(), server.transport, transport_target(server))


def merge_servers(
    existing: list[ServerConfiguration],
    incoming: list[ServerConfiguration],
) -> MergeResult:
    """Append incoming servers not already present; existing entries are never replaced."""
    merged = list(existing)
    seen = {merge_key(s) for s in existing}
    added = 0
    skipped: list[str] = []
    for server in incoming:
        key = merge_key(server)
        if key in seen:
            skipped.append(server.name)
            continue
        seen.add(key)
        merged.append(server)
        added += 1
    return MergeResult(servers=merged, added=added, skipped=len(skipped), skipped_names=skipped)


def _export_entry(server: ServerConfiguration, fmt: ConfigFormat) -> dict[str, Any]:
    entry: dict[str, Any] = {}
    match server.transport:
        case "stdio":
            entry["command"] = server.command
            entry["args"] = list(server.args)
            if server.env:
                entry["env"] = dict(server.env)
            if server.cwd:
                entry["cwd"] = server.cwd
            if fmt == ConfigFormat.VSCODE:
                entry = {"type": "stdio", **entry}
        case "sse" | "http":
            if fmt == ConfigFormat.CLINE:
                entry["transportType"] = "sse" if server.transport == "sse" else "streamableHttp"
            else:
                entry["type"] = server.transport
            entry["url"] = server.url
            if server.headers:
                entry["headers"] = dict(server.headers)
            if server.transport == "http" and fmt in (ConfigFormat.GENERIC, ConfigFormat.CLINE):
                entry["timeout"] = server.timeout

    if fmt == ConfigFormat.CLINE:
        entry["disabled"] = not server.enabled
        entry["autoApprove"] = []
    return entry


def export_to_format(
    servers: list[ServerConfiguration],
    fmt: ConfigFormat | str,
    include_disabled: bool = True,
) -> str:
    """Serialize servers into the file shape of the chosen dialect."""
    try:
        fmt = ConfigFormat(fmt)
    except ValueError as e:
        raise UnknownFormat(f"Unknown export format '{fmt}'") from e
    if fmt == ConfigFormat.UNKNOWN:
        raise UnknownFormat("Cannot export to the unknown format")

    entries: dict[str, dict[str, Any]] = {}
    for server in servers:
        if not server.enabled and not include_disabled:
            continue
        name = server.name
        suffix = 2
        while name in entries:
            name = f"{server.name} ({suffix})"
            suffix += 1
        entries[name] = _export_entry(server, fmt)

    match fmt:
        case ConfigFormat.VSCODE:
            document = {"servers": entries}
        case ConfigFormat.CURSOR:
            document = {"cursor.mcp.servers": entries}
        case _:
            document = {"mcpServers": entries}
    return json.dumps(document, indent=2)
