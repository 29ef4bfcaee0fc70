import time
from typing import Any, Dict, List, Optional, Union
from pydantic import BaseModel, Field, field_validator

AUTHORIZATION_CODE = "authorization_code"
ACCESS_TOKEN = "access_token"

# Stored records
class Client(BaseModel):
    """Registered OAuth client"""
    client_id: str
    client_secret: str
    client_name: Optional[str] = None
    redirect_uris: List[str] = Field(default_factory=list)
    grant_types: List[str] = Field(default_factory=lambda: ["authorization_code"])
    response_types: List[str] = Field(default_factory=lambda: ["code"])
    scope: str = "read write mcp"
    created_at: float = Field(default_factory=time.time)

class Grant(BaseModel):
    """Authorization code or access token record"""
    kind: str = Field(..., description="authorization_code or access_token")
    client_id: str
    scope: str
    expires_at: float
    created_at: float = Field(default_factory=time.time)
    redirect_uri: Optional[str] = None
    code_challenge: Optional[str] = None
    code_challenge_method: Optional[str] = None

    def is_expired(self, now: float) -> bool:
        return self.expires_at <= now

class GrantContext(BaseModel):
    """Resolved bearer token handed to downstream handlers"""
    client_id: str
    scope: str
    expires_at: float

    @property
    def scopes(self) -> List[str]:
        return self.scope.split()

class ProjectContext(BaseModel):
    """Saved status of a project"""
    project: str
    status: str
    completed: Optional[str] = None
    working_on: Optional[str] = None
    next: Optional[str] = None
    notes: Optional[str] = None
    timestamp: str
    client_id: str

# OAuth Models
class ClientRegistrationRequest(BaseModel):
    """OAuth 2.0 Dynamic Client Registration Request"""
    redirect_uris: List[str] = Field(default_factory=list, description="Array of redirection URI strings")
    client_name: Optional[str] = Field(None, description="Human-readable client name")

    @field_validator("redirect_uris", mode="before")
    @classmethod
    def default_redirect_uris(cls, v):
        return [] if v is None else v

class ClientRegistrationResponse(BaseModel):
    """OAuth 2.0 Dynamic Client Registration Response"""
    client_id: str
    client_secret: str
    client_id_issued_at: int
    client_name: Optional[str] = None
    redirect_uris: List[str]
    grant_types: List[str]
    response_types: List[str]
    scope: str

class TokenRequest(BaseModel):
    """OAuth 2.0 Token Request"""
    grant_type: Optional[str] = Field(None, description="Authorization grant type")
    code: Optional[str] = Field(None, description="Authorization code")
    client_id: Optional[str] = Field(None, description="Client identifier")
    client_secret: Optional[str] = Field(None, description="Client secret")
    code_verifier: Optional[str] = Field(None, description="PKCE code verifier")
    redirect_uri: Optional[str] = Field(None, description="Redirect URI used at authorization")

class TokenResponse(BaseModel):
    """OAuth 2.0 Token Response"""
    access_token: str
    token_type: str = "Bearer"
    expires_in: int
    scope: str

class UserInfoResponse(BaseModel):
    """Userinfo endpoint response"""
    sub: str = "user123"
    name: str = "MCP User"
    preferred_username: str = "mcp_user"

# MCP Models
class MCPRequest(BaseModel):
    """MCP JSON-RPC Request"""
    jsonrpc: str = Field("2.0", description="JSON-RPC version")
    method: str = Field(..., description="Method name")
    params: Optional[Dict[str, Any]] = Field(None, description="Method parameters")
    id: Optional[Union[str, int]] = Field(None, description="Request identifier")

class MCPTool(BaseModel):
    """MCP Tool Definition"""
    name: str
    description: str
    inputSchema: Dict[str, Any]

class MCPToolCallParams(BaseModel):
    """MCP Tool Call Parameters"""
    name: str
    arguments: Optional[Dict[str, Any]] = Field(default_factory=dict)

class MCPContentItem(BaseModel):
    """MCP Content Item"""
    type: str = "text"
    text: str

class MCPToolCallResult(BaseModel):
    """MCP Tool Call Result"""
    content: List[MCPContentItem]
    isError: Optional[bool] = False

# Tool arguments
class SaveContextArguments(BaseModel):
    project: str = Field(..., min_length=1, description="Project name")
    status: str = Field(..., description="Current status")
    completed: Optional[str] = Field(None, description="What has been completed")
    working_on: Optional[str] = Field(None, description="What is being worked on now")
    next: Optional[str] = Field(None, description="What comes next")
    notes: Optional[str] = Field(None, description="Free-form notes")

class GetContextArguments(BaseModel):
    project: str = Field(..., min_length=1, description="Project name")

# API Response Models
class HealthCheckResponse(BaseModel):
    """Health Check Response"""
    status: str
    projects: int
    clients: int
    grants: int
    oauth: bool = True
    mcp: bool = True
    timestamp: str

# Error Models
class OAuthErrorResponse(BaseModel):
    """OAuth error body"""
    error: str
    error_description: Optional[str] = None
