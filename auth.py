import base64
import hashlib
import hmac
import logging
import secrets
from typing import Dict, Any, Optional, Tuple
from urllib.parse import urlsplit, urlunsplit, parse_qsl, urlencode

from config import Config
from models import (
    ACCESS_TOKEN,
    AUTHORIZATION_CODE,
    ClientRegistrationRequest,
    ClientRegistrationResponse,
    Grant,
    GrantContext,
    TokenRequest,
    TokenResponse,
    UserInfoResponse,
)
from storage import ClientStore, GrantStore

logger = logging.getLogger(__name__)


class OAuthError(Exception):
    """Terminal OAuth failure rendered as {"error": ...} by the HTTP layer"""

    error = "server_error"
    status_code = 400

    def __init__(self, description: Optional[str] = None):
        super().__init__(description or self.error)
        self.description = description


class InvalidRequestError(OAuthError):
    error = "invalid_request"


class InvalidClientError(OAuthError):
    error = "invalid_client"


class InvalidGrantError(OAuthError):
    error = "invalid_grant"


class UnsupportedGrantTypeError(OAuthError):
    error = "unsupported_grant_type"


class InvalidTokenError(OAuthError):
    error = "invalid_token"
    status_code = 401


class UnauthorizedError(OAuthError):
    error = "unauthorized"
    status_code = 401


def build_redirect_url(redirect_uri: str, params: Dict[str, Optional[str]]) -> str:
    """Set non-empty query parameters on redirect_uri, keeping any it already has"""
    parts = urlsplit(redirect_uri)
    query = [(k, v) for k, v in parse_qsl(parts.query, keep_blank_values=True) if k not in params]
    query.extend((k, v) for k, v in params.items() if v)
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def s256_challenge(code_verifier: str) -> str:
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).decode("ascii").rstrip("=")


class AuthManager:
    """
    OAuth 2.0 authorization server: client registration, authorization code
    issuance, code exchange and bearer token verification.

    Consent is auto-approved once the client_id is recognised.
    """

    def __init__(self, config: Config, clients: ClientStore, grants: GrantStore):
        self.config = config
        self.clients = clients
        self.grants = grants

    def authorization_server_metadata(self, base_url: str) -> Dict[str, Any]:
        """OAuth 2.0 Authorization Server Metadata (RFC 8414)"""
        return {
            "issuer": base_url,
            "authorization_endpoint": f"{base_url}/oauth/authorize",
            "token_endpoint": f"{base_url}/oauth/token",
            "userinfo_endpoint": f"{base_url}/oauth/userinfo",
            "registration_endpoint": f"{base_url}/oauth/register",
            "response_types_supported": ["code"],
            "grant_types_supported": ["authorization_code"],
            "scopes_supported": self.config.oauth_scope.split(),
            "code_challenge_methods_supported": ["S256"],
            "token_endpoint_auth_methods_supported": ["client_secret_post"],
        }

    def protected_resource_metadata(self, base_url: str) -> Dict[str, Any]:
        """OAuth 2.0 Protected Resource Metadata (RFC 9728)"""
        return {
            "resource": base_url,
            "authorization_servers": [base_url],
            "scopes_supported": self.config.oauth_scope.split(),
            "bearer_methods_supported": ["header"],
        }

    async def register_client(self, metadata: ClientRegistrationRequest) -> ClientRegistrationResponse:
        """Dynamic Client Registration (RFC 7591). The only time the secret is returned."""
        client = await self.clients.register(metadata.redirect_uris, metadata.client_name)
        logger.info(f"Registered client {client.client_id}")

        return ClientRegistrationResponse(
            client_id=client.client_id,
            client_secret=client.client_secret,
            client_id_issued_at=int(client.created_at),
            client_name=client.client_name,
            redirect_uris=client.redirect_uris,
            grant_types=client.grant_types,
            response_types=client.response_types,
            scope=client.scope,
        )

    async def create_authorization(
        self,
        client_id: Optional[str],
        redirect_uri: Optional[str],
        response_type: Optional[str] = "code",
        state: Optional[str] = None,
        code_challenge: Optional[str] = None,
        code_challenge_method: Optional[str] = None,
    ) -> Tuple[Optional[str], str]:
        """Validate an authorization request and mint a code.

        Returns (code, redirect_url). Errors that cannot be sent back to a
        trusted redirect target raise instead of redirecting.
        """
        client = self.clients.lookup(client_id)
        if client is None:
            logger.warning(f"Authorization requested for unknown client {client_id}")
            raise InvalidClientError("Unknown client_id")

        if not redirect_uri:
            if not client.redirect_uris:
                raise InvalidRequestError("redirect_uri is required")
            redirect_uri = client.redirect_uris[0]

        parts = urlsplit(redirect_uri)
        if not parts.scheme or not (parts.netloc or parts.path):
            raise InvalidRequestError("redirect_uri must be an absolute URI")

        if response_type and response_type != "code":
            logger.warning(f"Unsupported response_type {response_type!r} from client {client_id}")
            return None, build_redirect_url(redirect_uri, {"error": "unsupported_response_type", "state": state})

        if code_challenge and code_challenge_method and code_challenge_method != "S256":
            return None, build_redirect_url(redirect_uri, {"error": "invalid_request", "state": state})

        auth_code = secrets.token_hex(32)
        now = self.grants.now()
        await self.grants.put(auth_code, Grant(
            kind=AUTHORIZATION_CODE,
            client_id=client.client_id,
            scope=client.scope,
            redirect_uri=redirect_uri,
            code_challenge=code_challenge or None,
            code_challenge_method="S256" if code_challenge else None,
            created_at=now,
            expires_at=now + self.config.oauth_code_expiry,
        ))

        logger.info(f"Authorization code created for client {client.client_id}")
        return auth_code, build_redirect_url(redirect_uri, {"code": auth_code, "state": state})

    async def exchange_code_for_token(self, request: TokenRequest) -> TokenResponse:
        """Exchange an authorization code for an access token.

        Nothing is mutated until every check has passed; the code is then
        consumed and the token stored in one locked step.
        """
        if request.grant_type != "authorization_code":
            raise UnsupportedGrantTypeError(f"Unsupported grant_type: {request.grant_type}")

        code_data = self.grants.get(request.code, kind=AUTHORIZATION_CODE)
        if code_data is None:
            logger.warning("Token exchange with unknown or expired code")
            raise InvalidGrantError("Invalid or expired authorization code")

        client = self.clients.lookup(request.client_id)
        if client is None or not hmac.compare_digest(
            client.client_secret.encode(), (request.client_secret or "").encode()
        ):
            logger.warning(f"Token exchange with bad credentials for client {request.client_id}")
            raise InvalidClientError("Client authentication failed")

        if code_data.client_id != client.client_id:
            raise InvalidGrantError("Authorization code was issued to another client")

        if request.redirect_uri and request.redirect_uri != code_data.redirect_uri:
            raise InvalidGrantError("redirect_uri does not match authorization request")

        if self.config.pkce_required and code_data.code_challenge:
            if not self._verify_pkce(request.code_verifier, code_data.code_challenge):
                logger.warning(f"PKCE verification failed for client {client.client_id}")
                raise InvalidGrantError("Invalid code_verifier")

        access_token = secrets.token_hex(32)
        now = self.grants.now()
        token_grant = Grant(
            kind=ACCESS_TOKEN,
            client_id=client.client_id,
            scope=code_data.scope,
            created_at=now,
            expires_at=now + self.config.oauth_token_expiry,
        )

        if not await self.grants.replace(request.code, access_token, token_grant):
            raise InvalidGrantError("Authorization code already used")

        logger.info(f"Access token issued for client {client.client_id}")
        return TokenResponse(
            access_token=access_token,
            token_type="Bearer",
            expires_in=self.config.oauth_token_expiry,
            scope=code_data.scope,
        )

    def verify_token(self, token: Optional[str]) -> Optional[GrantContext]:
        """Verify an access token and return its grant context"""
        token_data = self.grants.get(token, kind=ACCESS_TOKEN)
        if token_data is None:
            return None
        return GrantContext(
            client_id=token_data.client_id,
            scope=token_data.scope,
            expires_at=token_data.expires_at,
        )

    def verify_bearer(self, authorization: Optional[str]) -> GrantContext:
        """Resolve an Authorization header to a grant context or raise"""
        if not authorization or not authorization.startswith("Bearer "):
            raise UnauthorizedError("Bearer token required")

        token = authorization[len("Bearer "):].strip()
        context = self.verify_token(token)
        if context is None:
            logger.warning(f"Rejected bearer token {token[:8]}...")
            raise InvalidTokenError("Invalid or expired token")
        return context

    def get_user_info(self, context: GrantContext) -> UserInfoResponse:
        return UserInfoResponse()

    def _verify_pkce(self, code_verifier: Optional[str], code_challenge: str) -> bool:
        """Verify PKCE S256 challenge using constant-time comparison"""
        if not code_verifier:
            return False
        try:
            challenge = s256_challenge(code_verifier)
        except UnicodeEncodeError:
            return False
        return hmac.compare_digest(challenge, code_challenge)
