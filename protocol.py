"""
Minimal MCP JSON-RPC layer.

Handlers are registered on an McpServer with the tool/resource/prompt
decorators; handle_request routes a decoded JSON-RPC message to them and
builds the response dict.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger('vergenews.protocol')

PROTOCOL_VERSION = "2024-11-05"

# JSON-RPC error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INVALID_PARAMS = -32602
INTERNAL_ERROR = -32603


class MethodNotFoundError(LookupError):
    """Unknown JSON-RPC method or tool name."""


class InvalidParamsError(ValueError):
    """Raised by handlers when call arguments fail validation."""


def text_result(text: str, is_error: bool = False) -> Dict:
    """Tool call result envelope carrying a single text block."""
    result: Dict[str, Any] = {"content": [{"type": "text", "text": text}]}
    if is_error:
        result["isError"] = True
    return result


def error_response(id_: Any, code: int, message: str) -> Dict:
    return {"jsonrpc": "2.0", "id": id_, "error": {"code": code, "message": message}}


@dataclass
class Tool:
    name: str
    description: str
    input_schema: Dict
    handler: Callable[..., Awaitable[Dict]]


@dataclass
class Resource:
    name: str
    uri: str
    handler: Callable[[str], Awaitable[Dict]]
    mime_type: str = "text/plain"


@dataclass
class Prompt:
    name: str
    description: str
    arguments: List[Dict] = field(default_factory=list)
    handler: Optional[Callable[[Dict[str, str]], Dict]] = None


class McpServer:
    """Registry of tools, resources and prompts plus a JSON-RPC dispatcher."""

    def __init__(self, name: str, version: str):
        self.name = name
        self.version = version
        self.tools: Dict[str, Tool] = {}
        self.resources: Dict[str, Resource] = {}
        self.prompts: Dict[str, Prompt] = {}

    # -------------------------------------------------------------------------
    # Registration
    # -------------------------------------------------------------------------

    def tool(self, name: str, description: str, properties: Optional[Dict] = None,
             required: Optional[List[str]] = None):
        schema = {
            "type": "object",
            "properties": properties or {},
            "required": required or [],
        }

        def decorator(fn):
            self.tools[name] = Tool(name, description, schema, fn)
            return fn
        return decorator

    def resource(self, name: str, uri: str, mime_type: str = "text/plain"):
        def decorator(fn):
            self.resources[uri] = Resource(name, uri, fn, mime_type)
            return fn
        return decorator

    def prompt(self, name: str, description: str, arguments: Optional[List[Dict]] = None):
        def decorator(fn):
            self.prompts[name] = Prompt(name, description, arguments or [], fn)
            return fn
        return decorator

    # -------------------------------------------------------------------------
    # Dispatch
    # -------------------------------------------------------------------------

    async def call_tool(self, name: str, arguments: Optional[Dict] = None) -> Dict:
        tool = self.tools.get(name)
        if tool is None:
            raise KeyError(name)
        return await tool.handler(**(arguments or {}))

    async def handle_request(self, request: Dict) -> Optional[Dict]:
        """Handle an incoming MCP JSON-RPC request."""
        if not isinstance(request, dict):
            return error_response(None, INVALID_REQUEST, "Invalid request: expected an object")

        method = request.get('method')
        id_ = request.get('id')
        params = request.get('params') or {}

        if not method or not isinstance(method, str):
            return error_response(id_, INVALID_REQUEST, "Invalid request: missing field 'method'")

        if method.startswith('notifications/'):
            return None

        if not isinstance(params, dict):
            return error_response(id_, INVALID_PARAMS, "Invalid params: params must be an object")

        try:
            result = await self._dispatch(method, params)
        except InvalidParamsError as e:
            logger.warning("Invalid params for %s: %s", method, str(e))
            return error_response(id_, INVALID_PARAMS, f"Invalid params: {e}")
        except MethodNotFoundError as e:
            return error_response(id_, METHOD_NOT_FOUND, str(e.args[0]) if e.args else "Not found")

        return {"jsonrpc": "2.0", "id": id_, "result": result}

    async def _dispatch(self, method: str, params: Dict) -> Dict:
        if method == 'initialize':
            return {
                "protocolVersion": PROTOCOL_VERSION,
                "capabilities": {"tools": {}, "resources": {}, "prompts": {}},
                "serverInfo": {"name": self.name, "version": self.version},
            }

        elif method == 'ping':
            return {}

        elif method == 'tools/list':
            return {
                "tools": [
                    {
                        "name": tool.name,
                        "description": tool.description,
                        "inputSchema": tool.input_schema,
                    }
                    for tool in self.tools.values()
                ]
            }

        elif method == 'tools/call':
            tool_name = params.get('name')
            arguments = params.get('arguments') or {}
            tool = self.tools.get(tool_name)
            if tool is None:
                raise MethodNotFoundError(f"Unknown tool: {tool_name}")
            if not isinstance(arguments, dict):
                raise InvalidParamsError("arguments must be an object")
            return await tool.handler(**_check_arguments(tool, arguments))

        elif method == 'resources/list':
            return {
                "resources": [
                    {"name": r.name, "uri": r.uri, "mimeType": r.mime_type}
                    for r in self.resources.values()
                ]
            }

        elif method == 'resources/read':
            uri = params.get('uri')
            resource = self.resources.get(uri)
            if resource is None:
                raise InvalidParamsError(f"Unknown resource: {uri}")
            return await resource.handler(uri)

        elif method == 'prompts/list':
            return {
                "prompts": [
                    {"name": p.name, "description": p.description, "arguments": p.arguments}
                    for p in self.prompts.values()
                ]
            }

        elif method == 'prompts/get':
            name = params.get('name')
            prompt = self.prompts.get(name)
            if prompt is None:
                raise InvalidParamsError(f"Unknown prompt: {name}")
            return prompt.handler(params.get('arguments') or {})

        raise MethodNotFoundError(f"Method not found: {method}")


def _check_arguments(tool: Tool, arguments: Dict) -> Dict:
    """Reject missing required arguments and drop the ones the tool does not declare."""
    properties = tool.input_schema.get('properties', {})

    for name in tool.input_schema.get('required', []):
        if arguments.get(name) is None:
            raise InvalidParamsError(f"'{name}' is required")

    unknown = [name for name in arguments if name not in properties]
    if unknown:
        logger.debug("Ignoring undeclared argument(s) for %s: %s", tool.name, ', '.join(sorted(unknown)))

    return {name: value for name, value in arguments.items() if name in properties}
