import json
import logging
from typing import Dict, Any, Optional, List, Union
from datetime import datetime, timezone

from fastapi import Request
from fastapi.responses import JSONResponse, Response
from pydantic import ValidationError

from config import Config
from context_store import ProjectContextStore
from models import (
    GetContextArguments,
    GrantContext,
    MCPContentItem,
    MCPRequest,
    MCPTool,
    MCPToolCallParams,
    MCPToolCallResult,
    SaveContextArguments,
)

logger = logging.getLogger(__name__)

NOT_SPECIFIED = "Not specified"


class ToolError(Exception):
    """Tool call failure reported to the caller"""

    error = "tool_error"
    status_code = 400

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.error)
        self.message = message or self.error


class UnknownToolError(ToolError):
    error = "Unknown tool"


class InvalidToolArgumentsError(ToolError):
    error = "invalid_arguments"


class InsufficientScopeError(ToolError):
    error = "insufficient_scope"
    status_code = 403


class MCPTransport:
    """
    Project context tools exposed over plain HTTP (/tools, /tools/call)
    and over MCP JSON-RPC (/mcp)
    """

    def __init__(self, config: Config, context_store: ProjectContextStore):
        self.config = config
        self.context_store = context_store

        self.server_info = {
            "name": config.mcp_server_name,
            "version": config.mcp_server_version,
            "protocolVersion": config.mcp_protocol_version
        }

        # Available tools
        self.tools = [
            MCPTool(
                name="save_context",
                description="Save the current status of a project",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "project": {"type": "string", "description": "Project name"},
                        "status": {"type": "string", "description": "Current status"},
                        "completed": {"type": "string", "description": "What has been completed"},
                        "working_on": {"type": "string", "description": "What is being worked on now"},
                        "next": {"type": "string", "description": "What comes next"},
                        "notes": {"type": "string", "description": "Free-form notes"}
                    },
                    "required": ["project", "status"]
                }
            ),
            MCPTool(
                name="get_context",
                description="Get the saved status of a project",
                inputSchema={
                    "type": "object",
                    "properties": {
                        "project": {"type": "string", "description": "Project name"}
                    },
                    "required": ["project"]
                }
            ),
        ]
        self._required_scope = {"save_context": "write", "get_context": "read"}

    def list_tools(self) -> List[Dict[str, Any]]:
        return [tool.model_dump() for tool in self.tools]

    async def call_tool(self, name: Optional[str], arguments: Optional[Dict[str, Any]], context: GrantContext) -> MCPToolCallResult:
        """Execute a tool on behalf of the client that owns the token"""
        if name not in self._required_scope:
            raise UnknownToolError(f"Tool '{name}' not found")

        required = self._required_scope[name]
        if required not in context.scopes:
            raise InsufficientScopeError(f"{name} requires the '{required}' scope")

        arguments = arguments or {}
        try:
            if name == "save_context":
                record = await self.context_store.save(SaveContextArguments(**arguments), context.client_id)
                text = f"✅ {record.project} context saved!\n📍 Status: {record.status}"
            else:
                project = GetContextArguments(**arguments).project
                text = self._render_context(project)
        except ValidationError as e:
            raise InvalidToolArgumentsError(f"Invalid arguments for {name}: {e.errors()[0]['msg']}")

        return MCPToolCallResult(content=[MCPContentItem(type="text", text=text)])

    def _render_context(self, project: str) -> str:
        record = self.context_store.get(project)
        if record is None:
            return f"❌ Project {project} not found"

        return (
            f"🎯 **{record.project}**\n\n"
            f"📍 **Status:** {record.status}\n\n"
            f"✅ **Completed:** {record.completed or NOT_SPECIFIED}\n\n"
            f"🔄 **Working on:** {record.working_on or NOT_SPECIFIED}\n\n"
            f"📋 **Next:** {record.next or NOT_SPECIFIED}\n\n"
            f"💭 **Notes:** {record.notes or 'None'}\n\n"
            f"🕒 **Last updated:** {record.timestamp}"
        )

    async def handle_post_request(self, request: Request, context: GrantContext) -> Response:
        """Handle POST request carrying a JSON-RPC message or batch"""
        body = await request.body()
        try:
            message = json.loads(body) if body else None
        except json.JSONDecodeError as e:
            return JSONResponse(content=self._create_error_response(None, -32700, "Parse error", str(e)))

        if message is None:
            return JSONResponse(content=self._create_error_response(None, -32600, "Invalid Request", "Request body is required"))

        protocol_version = request.headers.get("mcp-protocol-version")
        if protocol_version and protocol_version != self.config.mcp_protocol_version:
            logger.warning(f"Unsupported protocol version: {protocol_version}")

        if isinstance(message, list):
            if not message:
                return JSONResponse(content=self._create_error_response(None, -32600, "Invalid Request", "Empty batch"))
            responses = []
            for msg in message:
                response = await self._handle_jsonrpc_message(msg, context)
                if response is not None:
                    responses.append(response)
            if not responses:
                return Response(status_code=202)
            return JSONResponse(content=responses)

        response = await self._handle_jsonrpc_message(message, context)
        if response is None:
            # notifications get no body
            return Response(status_code=202)
        return JSONResponse(content=response)

    async def _handle_jsonrpc_message(self, message: Any, context: GrantContext) -> Optional[Dict[str, Any]]:
        try:
            rpc = MCPRequest(**message) if isinstance(message, dict) else None
        except ValidationError:
            rpc = None
        if rpc is None:
            return self._create_error_response(None, -32600, "Invalid Request")

        if rpc.method.startswith("notifications/"):
            return None

        handlers = {
            "initialize": self._handle_initialize,
            "tools/list": self._handle_tools_list,
            "tools/call": self._handle_tools_call,
            "ping": self._handle_ping,
        }
        handler = handlers.get(rpc.method)
        if handler is None:
            return self._create_error_response(rpc.id, -32601, "Method not found", f"Unknown method: {rpc.method}")

        try:
            result = await handler(rpc.params or {}, context)
        except ToolError as e:
            return self._create_error_response(rpc.id, -32602, e.error, e.message)
        except Exception:
            logger.exception(f"Error handling {rpc.method}")
            return self._create_error_response(rpc.id, -32603, "Internal error")

        return {"jsonrpc": "2.0", "id": rpc.id, "result": result}

    async def _handle_initialize(self, params: Dict[str, Any], context: GrantContext) -> Dict[str, Any]:
        logger.info(f"MCP session initialized for client {context.client_id}")
        return {
            "protocolVersion": self.config.mcp_protocol_version,
            "serverInfo": self.server_info,
            "capabilities": {"tools": {"listChanged": False}}
        }

    async def _handle_tools_list(self, params: Dict[str, Any], context: GrantContext) -> Dict[str, Any]:
        return {"tools": self.list_tools()}

    async def _handle_tools_call(self, params: Dict[str, Any], context: GrantContext) -> Dict[str, Any]:
        try:
            call = MCPToolCallParams(**params)
        except ValidationError:
            raise InvalidToolArgumentsError("Tool name is required")
        result = await self.call_tool(call.name, call.arguments, context)
        return result.model_dump()

    async def _handle_ping(self, params: Dict[str, Any], context: GrantContext) -> Dict[str, Any]:
        return {
            "status": "pong",
            "timestamp": datetime.now(timezone.utc).isoformat()
        }

    def _create_error_response(self, msg_id: Optional[Union[str, int]], code: int, message: str, data: Optional[str] = None) -> Dict[str, Any]:
        """Create a JSON-RPC error response"""
        error = {
            "code": code,
            "message": message
        }
        if data:
            error["data"] = data

        return {
            "jsonrpc": "2.0",
            "id": msg_id,
            "error": error
        }
