"""MCP host boundary.

The host (an AI client) talks to this process over stdio using the Model Context
Protocol. Every tool call becomes a :meth:`phonepi.service.relay.Relay.invoke` on the
peer, and the peer's response payload is rendered as tool content.
"""

import re
from collections.abc import Mapping
from typing import Any, Optional, Union

import orjson as json
from mcp.server.lowlevel import Server
from mcp.server.stdio import stdio_server
from mcp.types import ImageContent, TextContent, Tool

from .. import log
from .relay import Relay

# isort: unique-list
__all__ = ['invoke_tool', 'make_catalog', 'make_server', 'render_result', 'serve_stdio']

Content = Union[TextContent, ImageContent]
DATA_URL = re.compile(r'^data:(image/[^;]+);base64,(.+)$', re.DOTALL)
PREVIEW_LENGTH = 10000


def make_catalog(catalog: Mapping[str, Any], /) -> dict[str, Tool]:
    """Build tool definitions from a parsed catalog file.

    Parameters:
        catalog: A mapping of tool names to objects with ``description`` and
            ``input_schema`` keys.
    """
    tools = {}
    for name, entry in (catalog or {}).items():
        entry = entry or {}
        schema = entry.get('input_schema') or {'type': 'object', 'properties': {}}
        tools[name] = Tool(
            name=name,
            description=entry.get('description', ''),
            inputSchema=schema,
        )
    return tools


def _dumps(obj: Any, /) -> str:
    return json.dumps(obj, option=json.OPT_INDENT_2).decode()


def _render_image(result: Any, /) -> Optional[list[Content]]:
    if isinstance(result, (str, bytes)):
        try:
            result = json.loads(result)
        except json.JSONDecodeError:
            return None
    if not isinstance(result, dict):
        return None
    image = result.get('imageData')
    match = DATA_URL.match(image) if isinstance(image, str) else None
    if not match:
        return None
    mime_type, data = match.groups()
    preview = data if len(data) <= PREVIEW_LENGTH else f'{data[:PREVIEW_LENGTH]}...'
    summary = result | {
        'imageData': f'[{mime_type} image data]',
        'imageDataForAnalysis': f'data:{mime_type};base64,{preview}',
    }
    return [
        ImageContent(type='image', mimeType=mime_type, data=data),
        TextContent(type='text', text=_dumps(summary)),
    ]


def render_result(name: str, result: Any, /) -> list[Content]:
    """Render a peer's response payload as tool content.

    Photos (``take_photo`` payloads with a base64 ``imageData`` data URL) produce an
    image block followed by a text summary. Everything else is rendered as indented
    JSON text.

    Examples:
        >>> [block.text for block in render_result('get_battery_level', {'level': 87})]
        ['{\\n  "level": 87\\n}']
        >>> photo = {'imageData': 'data:image/jpeg;base64,/9j/4AAQ'}
        >>> [block.type for block in render_result('take_photo', photo)]
        ['image', 'text']
    """
    if name == 'take_photo' and (content := _render_image(result)):
        return content
    return [TextContent(type='text', text=_dumps(result))]


async def invoke_tool(
    relay: Relay,
    name: str,
    arguments: Optional[Mapping[str, Any]] = None,
    /,
) -> list[Content]:
    """Invoke a peer command and render its result as tool content."""
    result = await relay.invoke(name, arguments or {})
    return render_result(name, result)


def make_server(relay: Relay, tools: Mapping[str, Tool], /) -> Server:
    """Make an MCP server whose tools are forwarded to the peer."""
    server: Server = Server('phonepi-relay')

    @server.list_tools()  # type: ignore
    async def list_tools() -> list[Tool]:
        return list(tools.values())

    @server.call_tool()  # type: ignore
    async def call_tool(name: str, arguments: Optional[dict[str, Any]]) -> list[Content]:
        return await invoke_tool(relay, name, arguments)

    return server


async def serve_stdio(
    relay: Relay,
    tools: Mapping[str, Tool],
    /,
    *,
    logger: Optional[log.AsyncLogger] = None,
) -> None:
    """Serve the MCP host over standard input and output until the host exits."""
    logger = logger or log.get_logger()
    server = make_server(relay, tools)
    async with stdio_server() as (read_stream, write_stream):
        await logger.info('Host attached', transport='stdio', tools=len(tools))
        await server.run(read_stream, write_stream, server.create_initialization_options())
    await logger.info('Host detached')
