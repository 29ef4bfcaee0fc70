import os
import secrets
from typing import List, Optional

class Config:
    """Configuration management for the Context Keeper MCP server"""

    def __init__(self):
        # Server configuration
        self.host = os.getenv("HOST", "0.0.0.0")
        self.port = int(os.getenv("PORT", 3000))
        self.environment = os.getenv("ENVIRONMENT", "production")
        self.base_url: Optional[str] = os.getenv("BASE_URL") or None

        # Security configuration
        # Not applied to any signing yet; generated when unset
        self.secret_key_generated = not os.getenv("SECRET_KEY")
        self.secret_key = os.getenv("SECRET_KEY") or secrets.token_hex(32)
        self.allowed_origins = self._parse_allowed_origins()

        # OAuth configuration
        self.oauth_code_expiry = int(os.getenv("OAUTH_CODE_EXPIRY", 600))  # 10 minutes
        self.oauth_token_expiry = int(os.getenv("OAUTH_TOKEN_EXPIRY", 3600))  # 1 hour
        self.oauth_scope = "read write mcp"
        self.pkce_required = os.getenv("PKCE_REQUIRED", "true").lower() == "true"

        # Cleanup configuration
        self.cleanup_interval = int(os.getenv("CLEANUP_INTERVAL", 300))  # 5 minutes
        self.sweep_batch_size = int(os.getenv("SWEEP_BATCH_SIZE", 100))

        # MCP configuration
        self.mcp_protocol_version = os.getenv("MCP_PROTOCOL_VERSION", "2025-03-26")
        self.mcp_server_name = os.getenv("MCP_SERVER_NAME", "context-keeper-mcp")
        self.mcp_server_version = os.getenv("MCP_SERVER_VERSION", "1.0.0")

        # Logging configuration
        self.log_level = os.getenv("LOG_LEVEL", "INFO")
        self.log_format = os.getenv("LOG_FORMAT", "%(asctime)s - %(name)s - %(levelname)s - %(message)s")

        self._validate_config()

    def _parse_allowed_origins(self) -> List[str]:
        """Parse allowed origins from environment variable"""
        origins_str = os.getenv("ALLOWED_ORIGINS", "*")
        if origins_str == "*":
            return ["*"]
        return [origin.strip() for origin in origins_str.split(",") if origin.strip()]

    def _validate_config(self):
        """Validate configuration values"""
        if self.environment == "production":
            if self.base_url and not self.base_url.startswith("https://"):
                raise ValueError("BASE_URL must use HTTPS in production")

        if self.oauth_code_expiry < 30 or self.oauth_code_expiry > 600:
            raise ValueError("OAUTH_CODE_EXPIRY must be between 30 and 600 seconds")

        if self.oauth_token_expiry < 300:  # 5 minutes minimum
            raise ValueError("OAUTH_TOKEN_EXPIRY must be at least 300 seconds")

        if self.cleanup_interval <= 0:
            raise ValueError("CLEANUP_INTERVAL must be a positive number of seconds")

        if self.sweep_batch_size <= 0:
            raise ValueError("SWEEP_BATCH_SIZE must be positive")

    @property
    def is_development(self) -> bool:
        """Check if running in development mode"""
        return self.environment == "development"

    @property
    def is_production(self) -> bool:
        """Check if running in production mode"""
        return self.environment == "production"

