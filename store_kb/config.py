"""Base configuration for the store knowledge base service."""

from typing import Literal


class ServerConfig:
    """Base configuration class for the knowledge base service.

    Projects should subclass this and override as needed.
    """

    # Embedding backend configuration
    EMBEDDING_BACKEND: Literal["lmstudio", "ollama"] = "ollama"
    EMBEDDING_MODEL: str = "nomic-embed-text"

    # Backend endpoints
    LMSTUDIO_ENDPOINT: str = "http://localhost:1234/v1"
    OLLAMA_ENDPOINT: str = "http://localhost:11434"

    # Storage
    DATABASE_URL: str = "sqlite:///store_kb.db"
    SOURCES_DIR: str = "./content"  # One <content_type>.json or .jsonl file per content type

    # Server configuration
    DEFAULT_HOST: str = "127.0.0.1"  # Default to localhost for security (use 0.0.0.0 for all interfaces)
    DEFAULT_PORT: int = 8000

    # Indexing defaults
    INDEX_BATCH_SIZE: int = 25
    EMBEDDING_CACHE_TTL: int = 86400  # 24 hours

    # Debug settings
    DEBUG_LOG: bool = False
    DEBUG_LOG_FILE: str = "store_kb_debug.log"
    DEBUG_LOG_MAX_BYTES: int = 10 * 1024 * 1024  # 10MB default
    DEBUG_LOG_BACKUP_COUNT: int = 5  # Keep 5 backup files

    # Backend timeout settings (in seconds)
    BACKEND_CONNECT_TIMEOUT: int = 10  # Connection timeout
    BACKEND_READ_TIMEOUT: int = 60  # Read timeout for embedding requests

    # Health check settings
    HEALTH_CHECK_ON_STARTUP: bool = True  # Check backend availability before starting server
    HEALTH_CHECK_TIMEOUT: int = 5  # Timeout for health check requests (in seconds)

    # Retry settings for embedding calls
    BACKEND_RETRY_ATTEMPTS: int = 5  # Attempts per embedding request
    BACKEND_RETRY_INITIAL_DELAY: float = 1.0  # Initial delay in seconds (doubles each retry)

    @classmethod
    def from_env(cls, env_prefix: str = ""):
        """Create config from environment variables with optional prefix.

        Args:
            env_prefix: Prefix for environment variables (e.g., "STORE_KB_")

        Returns:
            ServerConfig instance populated from environment
        """
        import os

        from dotenv import load_dotenv

        load_dotenv()

        config = cls()

        # Helper to get env var with prefix
        def get_env(name: str, default):
            # Try with prefix first, then without
            prefixed = os.getenv(f"{env_prefix}{name}", None)
            if prefixed is not None:
                return prefixed
            return os.getenv(name, default)

        config.EMBEDDING_BACKEND = get_env("EMBEDDING_BACKEND", cls.EMBEDDING_BACKEND)
        config.EMBEDDING_MODEL = get_env("EMBEDDING_MODEL", cls.EMBEDDING_MODEL)
        config.LMSTUDIO_ENDPOINT = get_env("LMSTUDIO_ENDPOINT", cls.LMSTUDIO_ENDPOINT)
        config.OLLAMA_ENDPOINT = get_env("OLLAMA_ENDPOINT", cls.OLLAMA_ENDPOINT)
        config.DATABASE_URL = get_env("DATABASE_URL", cls.DATABASE_URL)
        config.SOURCES_DIR = get_env("SOURCES_DIR", cls.SOURCES_DIR)
        config.DEFAULT_HOST = get_env("HOST", cls.DEFAULT_HOST)
        config.DEFAULT_PORT = int(get_env("PORT", str(cls.DEFAULT_PORT)))
        config.INDEX_BATCH_SIZE = int(get_env("INDEX_BATCH_SIZE", str(cls.INDEX_BATCH_SIZE)))
        config.EMBEDDING_CACHE_TTL = int(get_env("EMBEDDING_CACHE_TTL", str(cls.EMBEDDING_CACHE_TTL)))
        config.DEBUG_LOG = get_env("DEBUG_LOG", "").lower() in ("true", "1", "yes")
        config.DEBUG_LOG_FILE = get_env("DEBUG_LOG_FILE", cls.DEBUG_LOG_FILE)
        config.DEBUG_LOG_MAX_BYTES = int(get_env("DEBUG_LOG_MAX_BYTES", str(cls.DEBUG_LOG_MAX_BYTES)))
        config.DEBUG_LOG_BACKUP_COUNT = int(get_env("DEBUG_LOG_BACKUP_COUNT", str(cls.DEBUG_LOG_BACKUP_COUNT)))
        config.BACKEND_CONNECT_TIMEOUT = int(get_env("BACKEND_CONNECT_TIMEOUT", str(cls.BACKEND_CONNECT_TIMEOUT)))
        config.BACKEND_READ_TIMEOUT = int(get_env("BACKEND_READ_TIMEOUT", str(cls.BACKEND_READ_TIMEOUT)))
        config.HEALTH_CHECK_ON_STARTUP = get_env("HEALTH_CHECK_ON_STARTUP", "").lower() not in ("false", "0", "no")
        config.HEALTH_CHECK_TIMEOUT = int(get_env("HEALTH_CHECK_TIMEOUT", str(cls.HEALTH_CHECK_TIMEOUT)))
        config.BACKEND_RETRY_ATTEMPTS = int(get_env("BACKEND_RETRY_ATTEMPTS", str(cls.BACKEND_RETRY_ATTEMPTS)))
        config.BACKEND_RETRY_INITIAL_DELAY = float(
            get_env("BACKEND_RETRY_INITIAL_DELAY", str(cls.BACKEND_RETRY_INITIAL_DELAY))
        )

        return config
