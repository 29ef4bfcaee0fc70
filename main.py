#!/usr/bin/env python3

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import FastAPI, Request, Depends, Header
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, RedirectResponse
from fastapi.middleware.cors import CORSMiddleware
from pydantic import ValidationError
import uvicorn

from auth import AuthManager, OAuthError, InvalidRequestError, InvalidTokenError, UnauthorizedError
from config import Config
from context_store import ProjectContextStore
from mcp_transport import MCPTransport, ToolError
from models import (
    ClientRegistrationRequest,
    GrantContext,
    HealthCheckResponse,
    MCPToolCallParams,
    OAuthErrorResponse,
    TokenRequest,
)
from storage import ClientStore, GrantStore, ExpirySweeper

logger = logging.getLogger(__name__)

REALM = "context-keeper"


def get_auth_manager(request: Request) -> AuthManager:
    return request.app.state.auth_manager


def get_transport(request: Request) -> MCPTransport:
    return request.app.state.mcp_transport


async def require_token(
    request: Request,
    authorization: Optional[str] = Header(None),
    auth_manager: AuthManager = Depends(get_auth_manager),
) -> GrantContext:
    """Bearer token gate for protected routes; exposes the grant on request.state"""
    context = auth_manager.verify_bearer(authorization)
    request.state.grant = context
    return context


def issuer_url(request: Request) -> str:
    config: Config = request.app.state.config
    if config.base_url:
        return config.base_url.rstrip("/")
    return str(request.base_url).rstrip("/")


def oauth_error_response(exc: OAuthError) -> JSONResponse:
    body = OAuthErrorResponse(error=exc.error, error_description=exc.description)
    headers = {}
    if exc.status_code == 401:
        headers["WWW-Authenticate"] = f'Bearer realm="{REALM}", error="{exc.error}"'
    return JSONResponse(status_code=exc.status_code, content=body.model_dump(exclude_none=True), headers=headers)


def create_app(config: Optional[Config] = None, clock: Callable[[], float] = time.time) -> FastAPI:
    """Build the application with its own stores, services and cleanup task"""
    config = config or Config()

    clients = ClientStore(clock=clock)
    grants = GrantStore(clock=clock)
    sweeper = ExpirySweeper(grants, interval=config.cleanup_interval, batch_size=config.sweep_batch_size)
    context_store = ProjectContextStore()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {config.mcp_server_name} v{config.mcp_server_version}")
        logger.info(f"Environment: {config.environment}")
        logger.info(f"Base URL: {config.base_url or '(derived from request)'}")
        if config.secret_key_generated:
            logger.warning("SECRET_KEY not set - generated a random one for this process")
        sweeper.start()
        try:
            yield
        finally:
            await sweeper.stop()
            logger.info(f"Shutting down {config.mcp_server_name}")

    app = FastAPI(
        title="Context Keeper MCP",
        description="OAuth 2.0 protected MCP server for project context management",
        version=config.mcp_server_version,
        docs_url="/docs" if config.is_development else None,
        redoc_url="/redoc" if config.is_development else None,
        lifespan=lifespan,
    )

    app.state.config = config
    app.state.clients = clients
    app.state.grants = grants
    app.state.sweeper = sweeper
    app.state.context_store = context_store
    app.state.auth_manager = AuthManager(config, clients, grants)
    app.state.mcp_transport = MCPTransport(config, context_store)

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.allowed_origins,
        allow_credentials=config.allowed_origins != ["*"],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["WWW-Authenticate"]
    )

    @app.exception_handler(OAuthError)
    async def handle_oauth_error(request: Request, exc: OAuthError):
        return oauth_error_response(exc)

    @app.exception_handler(RequestValidationError)
    async def handle_validation_error(request: Request, exc: RequestValidationError):
        return oauth_error_response(InvalidRequestError("Malformed request"))

    @app.exception_handler(Exception)
    async def handle_unexpected_error(request: Request, exc: Exception):
        logger.exception(f"Unhandled error on {request.method} {request.url.path}")
        return JSONResponse(status_code=500, content={"error": "server_error"})

    register_routes(app)
    return app


def register_routes(app: FastAPI):
    config: Config = app.state.config

    # Health and discovery endpoints
    @app.get("/")
    async def root():
        """Server information"""
        return {
            "name": "Context Keeper MCP",
            "version": config.mcp_server_version,
            "description": "OAuth 2.0 protected MCP server for project context management",
            "protocol": "mcp",
            "oauth": {
                "authorization_endpoint": "/oauth/authorize",
                "token_endpoint": "/oauth/token",
                "registration_endpoint": "/oauth/register"
            }
        }

    @app.get("/health")
    async def health_check(request: Request):
        """Health check endpoint"""
        state = request.app.state
        return HealthCheckResponse(
            status="OK",
            projects=state.context_store.count(),
            clients=state.clients.count(),
            grants=len(state.grants),
            timestamp=datetime.now(timezone.utc).isoformat(),
        )

    # OAuth 2.0 Authorization Server Metadata (RFC 8414)
    @app.get("/.well-known/oauth-authorization-server")
    async def oauth_authorization_server_metadata(request: Request, auth_manager: AuthManager = Depends(get_auth_manager)):
        return auth_manager.authorization_server_metadata(issuer_url(request))

    # OAuth 2.0 Protected Resource Metadata (RFC 9728)
    @app.get("/.well-known/oauth-protected-resource")
    async def oauth_protected_resource_metadata(request: Request, auth_manager: AuthManager = Depends(get_auth_manager)):
        return auth_manager.protected_resource_metadata(issuer_url(request))

    # Dynamic Client Registration (RFC 7591)
    @app.post("/oauth/register")
    async def dynamic_client_registration(request: Request, auth_manager: AuthManager = Depends(get_auth_manager)):
        """Dynamic Client Registration endpoint"""
        try:
            body = await request.json() if await request.body() else {}
            metadata = ClientRegistrationRequest(**body)
        except (ValueError, TypeError, ValidationError):
            raise InvalidRequestError("Client metadata must be a JSON object with a redirect_uris list")

        client_response = await auth_manager.register_client(metadata)
        return client_response

    # OAuth Authorization endpoint
    @app.get("/oauth/authorize")
    async def oauth_authorize(
        client_id: Optional[str] = None,
        redirect_uri: Optional[str] = None,
        response_type: Optional[str] = None,
        scope: Optional[str] = None,
        state: Optional[str] = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
        auth_manager: AuthManager = Depends(get_auth_manager),
    ):
        """Authorization endpoint. Consent is auto-approved; scope is fixed per client."""
        auth_code, redirect_url = await auth_manager.create_authorization(
            client_id=client_id,
            redirect_uri=redirect_uri,
            response_type=response_type,
            state=state,
            code_challenge=code_challenge,
            code_challenge_method=code_challenge_method,
        )
        return RedirectResponse(url=redirect_url, status_code=302)

    # OAuth Token endpoint
    @app.post("/oauth/token")
    async def oauth_token(request: Request, auth_manager: AuthManager = Depends(get_auth_manager)):
        """Token endpoint; accepts JSON or form-encoded bodies"""
        content_type = request.headers.get("content-type", "")
        try:
            if content_type.startswith("application/json"):
                data = await request.json()
            else:
                data = dict(await request.form())
            token_request = TokenRequest(**data)
        except (ValueError, TypeError, ValidationError):
            raise InvalidRequestError("Malformed token request")

        return await auth_manager.exchange_code_for_token(token_request)

    @app.get("/oauth/userinfo")
    async def oauth_userinfo(
        authorization: Optional[str] = Header(None),
        auth_manager: AuthManager = Depends(get_auth_manager),
    ):
        """User info; every failure is reported as invalid_token"""
        try:
            context = auth_manager.verify_bearer(authorization)
        except UnauthorizedError:
            raise InvalidTokenError("Bearer token required")
        return auth_manager.get_user_info(context)

    # MCP Tools (Protected)
    @app.get("/tools")
    async def list_tools(
        context: GrantContext = Depends(require_token),
        transport: MCPTransport = Depends(get_transport),
    ):
        return {"tools": transport.list_tools()}

    @app.post("/tools/call")
    async def call_tool(
        request: Request,
        context: GrantContext = Depends(require_token),
        transport: MCPTransport = Depends(get_transport),
    ):
        try:
            call = MCPToolCallParams(**await request.json())
        except (ValueError, TypeError, ValidationError):
            return JSONResponse(status_code=400, content={"error": "invalid_arguments"})

        try:
            result = await transport.call_tool(call.name, call.arguments, context)
        except ToolError as e:
            return JSONResponse(status_code=e.status_code, content={"error": e.error, "message": e.message})
        return result

    # MCP JSON-RPC endpoint
    @app.post("/mcp")
    async def mcp_endpoint(
        request: Request,
        context: GrantContext = Depends(require_token),
        transport: MCPTransport = Depends(get_transport),
    ):
        return await transport.handle_post_request(request, context)


# Configure logging
config = Config()
logging.basicConfig(level=config.log_level, format=config.log_format)

app = create_app(config)

if __name__ == "__main__":
    print(f"🚀 Starting Context Keeper MCP v{config.mcp_server_version}")
    print(f"📊 Environment: {config.environment}")
    print(f"🔒 OAuth 2.0 endpoints configured")
    print(f"📋 Health: /health")
    print(f"🔧 Tools: /tools (requires auth)")

    uvicorn.run(
        app,
        host=config.host,
        port=config.port,
        log_level=config.log_level.lower(),
        access_log=True
    )
