# tools.py
# Tool registry: the closed set of executables the agent may call.
#
# Tools are resolved by name only. Nothing here evaluates stored source text:
# every handler is a real callable registered up front, either locally or
# through a ToolSource (an MCP client, for instance).

import asyncio
import inspect
import json
import logging
import os
import uuid
from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from autoloop.errors import ToolNotFoundError
from autoloop.models import (
    Artifact,
    ChatMessage,
    ContentBlock,
    ToolDescriptor,
    ToolOutcome,
    ToolParameter,
)

logger = logging.getLogger(__name__)

ToolHandler = Callable[[dict[str, Any]], Any | Awaitable[Any]]


@runtime_checkable
class ToolSource(Protocol):
    """An external provider of tools, e.g. a connected MCP server."""

    def list_tools(self) -> list[ToolDescriptor]: ...

    async def call_tool(self, name: str, arguments: dict[str, Any]) -> ToolOutcome: ...


class RegisteredTool:
    """A descriptor bound to its handler."""

    def __init__(self, descriptor: ToolDescriptor, handler: ToolHandler) -> None:
        self.descriptor = descriptor
        self._handler = handler

    @property
    def name(self) -> str:
        return self.descriptor.name

    async def execute(self, arguments: dict[str, Any]) -> ToolOutcome:
        """Run the handler and normalise whatever it returns into a ToolOutcome."""
        if inspect.iscoroutinefunction(self._handler):
            value = await self._handler(arguments)
        else:
            value = await asyncio.to_thread(self._handler, arguments)
            if inspect.isawaitable(value):
                value = await value

        if isinstance(value, ToolOutcome):
            return value
        return ToolOutcome(success=True, result=value)


class ToolRegistry:
    """Name -> executable. Names are unique; re-registering a name replaces it."""

    def __init__(self) -> None:
        self._tools: dict[str, RegisteredTool] = {}

    def register(self, descriptor: ToolDescriptor, handler: ToolHandler) -> None:
        if descriptor.name in self._tools:
            logger.warning("Replacing registered tool %r", descriptor.name)
        self._tools[descriptor.name] = RegisteredTool(descriptor, handler)

    def include(self, source: ToolSource) -> int:
        """Register every tool a source exposes. Returns how many were added."""
        descriptors = source.list_tools()
        for descriptor in descriptors:
            tool_name = descriptor.name

            async def _call(arguments: dict[str, Any], _name: str = tool_name) -> ToolOutcome:
                return await source.call_tool(_name, arguments)

            self.register(descriptor, _call)
        return len(descriptors)

    def resolve(self, name: str) -> RegisteredTool:
        try:
            return self._tools[name]
        except KeyError:
            raise ToolNotFoundError(
                f"Tool '{name}' not found. Available tools: {', '.join(self._tools) or 'none'}"
            ) from None

    def __contains__(self, name: str) -> bool:
        return name in self._tools

    def __len__(self) -> int:
        return len(self._tools)

    def descriptors(self) -> list[ToolDescriptor]:
        return [tool.descriptor for tool in self._tools.values()]


# ---------------------------------------------------------------------------
# Content-block outcomes
# ---------------------------------------------------------------------------


def _artifact(tool_name: str, kind: str, payload: Any, index: int) -> Artifact:
    return Artifact(
        id=f"{kind}-{uuid.uuid4().hex[:12]}",
        title=f"{tool_name} - {kind.capitalize()} Result",
        content=json.dumps(payload, indent=2, default=str),
        metadata={"tool_name": tool_name, "content_index": index, "original_type": kind},
    )


def process_content_blocks(
    tool_name: str, blocks: list[ContentBlock]
) -> tuple[Any, list[Artifact], list[str], ChatMessage]:
    """
    Flatten typed content blocks into (result, artifacts, images, reply).

    Text is joined for the reply; images become data URLs sent back to the
    model and kept as artifacts; resources and other data are kept as JSON
    artifacts with a textual description in the reply.
    """
    text_parts: list[str] = []
    structured: dict[str, Any] = {}
    artifacts: list[Artifact] = []
    images: list[str] = []

    for index, block in enumerate(blocks):
        if block.type == "text":
            if block.text:
                text_parts.append(block.text)
                structured["text"] = block.text
        elif block.type == "image":
            if block.data and block.mime_type:
                data = str(block.data)
                url = data if data.startswith("data:") else f"data:{block.mime_type};base64,{data}"
                images.append(url)
                artifacts.append(
                    _artifact(tool_name, "image", {"mimeType": block.mime_type, "data": url}, index)
                )
                structured.setdefault("images", []).append({"mimeType": block.mime_type, "url": url})
                text_parts.append(f"Image generated ({block.mime_type})")
        elif block.type == "resource":
            if block.resource is not None:
                artifacts.append(_artifact(tool_name, "resource", block.resource, index))
                structured["resource"] = block.resource
                text_parts.append(f"Resource: {json.dumps(block.resource, indent=2, default=str)}")
        elif block.data is not None:
            data = block.data
            if isinstance(data, str):
                try:
                    data = json.loads(data)
                except json.JSONDecodeError:
                    pass
            artifacts.append(_artifact(tool_name, block.type, data, index))
            structured["data"] = data
            text_parts.append(f"{block.type}: {json.dumps(data, indent=2, default=str)}")
        elif block.text:
            text_parts.append(f"{block.type}: {block.text}")
            structured[f"{block.type}_{index}"] = block.text

    text = "\n\n".join(text_parts)
    if not text and not structured:
        text = "Tool executed successfully"
        structured = {"message": text}

    reply = ChatMessage(role="tool", content=text, name=tool_name, images=images or None)
    result = structured if len(structured) > 1 else text
    return result, artifacts, images, reply


# ---------------------------------------------------------------------------
# Builtin tools
# ---------------------------------------------------------------------------


def _workspace() -> Path:
    return Path(os.getenv("AUTOLOOP_WORKSPACE", "workspace")).resolve()


def _inside_workspace(path: str) -> Path | None:
    root = _workspace()
    target = (root / path).resolve()
    if target != root and root not in target.parents:
        return None
    return target


def _tool_echo(args: dict) -> str:
    return str(args.get("message", ""))


def _tool_list_files(args: dict) -> list[str]:
    directory = Path(str(args.get("path") or ".")).expanduser()
    if not directory.is_dir():
        raise NotADirectoryError(f"Not a directory: {directory}")
    return sorted(entry.name for entry in directory.iterdir())


def _tool_read_file(args: dict) -> str | ToolOutcome:
    path = str(args.get("path", "")).strip()
    if not path:
        return ToolOutcome(success=False, error="no path provided.")
    content = Path(path).expanduser().read_text(encoding="utf-8")
    return content[:20_000]


def _tool_file_write(args: dict) -> ToolOutcome:
    path = str(args.get("path", "")).strip()
    content = str(args.get("content", ""))
    if not path:
        return ToolOutcome(success=False, error="no path provided.")
    target = _inside_workspace(path)
    if target is None:
        return ToolOutcome(success=False, error=f"SECURITY BLOCK: '{path}' escapes the workspace.")
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(content, encoding="utf-8")
    return ToolOutcome(success=True, result=f"Wrote {len(content)} bytes to {target}.")


def _tool_search(args: dict) -> ToolOutcome:
    from ddgs import DDGS

    query = str(args.get("query", "")).strip()
    if not query:
        return ToolOutcome(success=False, error="no query provided.")

    # Coerce the generator to a list so the request actually runs here.
    results = list(DDGS().text(query, max_results=4))
    if not results:
        return ToolOutcome(success=True, result="No results found.")

    lines = []
    for r in results:
        lines.append(f"[{r.get('title', 'No Title')}]\n{r.get('body', '')}\nSource: {r.get('href', '')}")
    return ToolOutcome(success=True, result="\n\n".join(lines))


def _tool_http_post(args: dict) -> ToolOutcome:
    import httpx

    url = str(args.get("url", "")).strip()
    payload = args.get("payload", {})
    if not url:
        return ToolOutcome(success=False, error="no URL provided.")
    response = httpx.post(url, json=payload, timeout=10)
    # Any HTTP status means the POST was delivered; it is reported, never retried.
    summary = f"POST {url} -> {response.status_code} ({len(response.content)} bytes)"
    return ToolOutcome(success=True, result=summary)


def _param(name: str, description: str, type_: str = "string", required: bool = True) -> ToolParameter:
    return ToolParameter(name=name, type=type_, description=description, required=required)


BUILTIN_TOOLS: list[tuple[ToolDescriptor, ToolHandler]] = [
    (
        ToolDescriptor(
            name="echo",
            description="Return the given message unchanged.",
            parameters=(_param("message", "Text to echo back."),),
        ),
        _tool_echo,
    ),
    (
        ToolDescriptor(
            name="list_files",
            description="List the entries of a directory anywhere on the host (not limited to the workspace).",
            parameters=(_param("path", "Directory to list. Defaults to the current directory.", required=False),),
        ),
        _tool_list_files,
    ),
    (
        ToolDescriptor(
            name="read_file",
            description="Read a UTF-8 text file anywhere on the host (not limited to the workspace).",
            parameters=(_param("path", "File to read."),),
        ),
        _tool_read_file,
    ),
    (
        ToolDescriptor(
            name="file_write",
            description="Write text to a file inside the workspace directory.",
            parameters=(
                _param("path", "Path relative to the workspace."),
                _param("content", "Text to write."),
            ),
        ),
        _tool_file_write,
    ),
    (
        ToolDescriptor(
            name="search",
            description="Web search. Returns the top results with titles, snippets and sources.",
            parameters=(_param("query", "Search query."),),
        ),
        _tool_search,
    ),
    (
        ToolDescriptor(
            name="http_post",
            description="POST a JSON payload to a URL.",
            parameters=(
                _param("url", "Destination URL."),
                _param("payload", "JSON body.", type_="object", required=False),
            ),
        ),
        _tool_http_post,
    ),
]


def build_default_registry() -> ToolRegistry:
    registry = ToolRegistry()
    for descriptor, handler in BUILTIN_TOOLS:
        registry.register(descriptor, handler)
    return registry
