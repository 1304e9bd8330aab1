"""
Server configuration for mcpchat.
"""

import os
from dataclasses import dataclass, field
from typing import Optional, Set

DEFAULT_DATABASE_URL = "sqlite:///./mcpchat.db"


@dataclass
class ServerConfig:
    """Configuration for the mcpchat server."""

    host: str = "0.0.0.0"
    port: int = 8000

    database_url: Optional[str] = None

    api_keys: Set[str] = field(default_factory=lambda: {"dev-user-key"})

    cors_origins: list = field(default_factory=lambda: ["*"])

    debug: bool = False

    log_level: str = "info"

    app_url: str = "http://localhost:5173"

    openai_api_key: Optional[str] = None
    openai_base_url: Optional[str] = None
    model: str = "gpt-5-mini"
    max_function_turns: int = 5

    web_search_mcp_url: Optional[str] = None

    def __post_init__(self):
        if self.database_url is None:
            self.database_url = os.environ.get("DATABASE_URL", DEFAULT_DATABASE_URL)

        env_keys = os.environ.get("MCPCHAT_API_KEYS")
        if env_keys:
            self.api_keys = {k.strip() for k in env_keys.split(",") if k.strip()}

        self.app_url = self.app_url.rstrip("/")

    @property
    def redirect_url(self) -> str:
        """OAuth redirect URL handed to tool-server authorization servers."""
        return f"{self.app_url}/oauth/callback"

    @classmethod
    def from_env(cls) -> "ServerConfig":
        """Create configuration from environment variables."""
        return cls(
            host=os.environ.get("MCPCHAT_HOST", "0.0.0.0"),
            port=int(os.environ.get("MCPCHAT_PORT", "8000")),
            database_url=os.environ.get("DATABASE_URL"),
            debug=os.environ.get("MCPCHAT_DEBUG", "").lower() == "true",
            log_level=os.environ.get("MCPCHAT_LOG_LEVEL", "info"),
            app_url=os.environ.get("MCPCHAT_APP_URL", "http://localhost:5173"),
            openai_api_key=os.environ.get("OPENAI_API_KEY"),
            openai_base_url=os.environ.get("OPENAI_BASE_URL"),
            model=os.environ.get("MCPCHAT_MODEL", "gpt-5-mini"),
            max_function_turns=int(os.environ.get("MCPCHAT_MAX_FUNCTION_TURNS", "5")),
            web_search_mcp_url=os.environ.get("MCPCHAT_WEB_SEARCH_URL"),
        )
