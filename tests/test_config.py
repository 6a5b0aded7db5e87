"""Tests for ServerConfig and RAGConfig."""

import pytest

from store_kb.config import ServerConfig
from store_kb.errors import ConfigurationError
from store_kb.rag.config import RAGConfig, validate_batch_size, validate_cache_ttl


@pytest.mark.unit
class TestServerConfig:
    """Test ServerConfig class."""

    def test_default_values(self, default_config):
        """Test that default configuration values are set correctly."""
        assert default_config.EMBEDDING_BACKEND == "ollama"
        assert default_config.EMBEDDING_MODEL == "nomic-embed-text"
        assert default_config.DEFAULT_HOST == "127.0.0.1"
        assert default_config.DEFAULT_PORT == 8000
        assert default_config.INDEX_BATCH_SIZE == 25
        assert default_config.EMBEDDING_CACHE_TTL == 86400
        assert default_config.DEBUG_LOG is False

    def test_from_env_with_prefix(self, monkeypatch):
        """Prefixed variables win over unprefixed ones."""
        monkeypatch.setenv("KB_EMBEDDING_MODEL", "mxbai-embed-large")
        monkeypatch.setenv("EMBEDDING_MODEL", "ignored")
        monkeypatch.setenv("KB_PORT", "9100")
        monkeypatch.setenv("DATABASE_URL", "sqlite:///kb.db")

        config = ServerConfig.from_env("KB_")

        assert config.EMBEDDING_MODEL == "mxbai-embed-large"
        assert config.DEFAULT_PORT == 9100
        assert config.DATABASE_URL == "sqlite:///kb.db"

    def test_from_env_booleans(self, monkeypatch):
        monkeypatch.setenv("DEBUG_LOG", "yes")
        monkeypatch.setenv("HEALTH_CHECK_ON_STARTUP", "false")

        config = ServerConfig.from_env()

        assert config.DEBUG_LOG is True
        assert config.HEALTH_CHECK_ON_STARTUP is False

    def test_subclass_defaults(self, monkeypatch):
        monkeypatch.delenv("INDEX_BATCH_SIZE", raising=False)

        class ShopConfig(ServerConfig):
            INDEX_BATCH_SIZE = 50

        assert ShopConfig.from_env().INDEX_BATCH_SIZE == 50


@pytest.mark.unit
class TestRAGConfig:
    """Test RAGConfig validation."""

    def test_defaults(self):
        config = RAGConfig()

        assert config.batch_size == 25
        assert config.cache_ttl == 86400
        assert config.chunk_settings("product") == (800, 80)
        assert config.chunk_settings("category") == (400, 40)
        assert config.chunk_settings("unknown-type") == (1000, 100)

    def test_overlap_override(self):
        config = RAGConfig(chunk_overlaps={"faq": 0})

        assert config.chunk_settings("faq") == (600, 0)

    @pytest.mark.parametrize(
        "kwargs",
        [
            {"similarity_weight": 0.9},
            {"overlap_ratio": 0.5},
            {"chunk_sizes": {"page": 20}},
            {"chunk_sizes": {"page": 5000}},
            {"max_chunk_chars": 40},
            {"chunk_overlaps": {"page": 600}},
            {"similarity_threshold": 1.5},
            {"search_top_k": 0},
            {"max_parallel_types": 0},
            {"max_execution_time": -1},
            {"batch_size": 0},
            {"batch_size": 101},
            {"cache_ttl": -5},
        ],
    )
    def test_invalid_values_rejected(self, kwargs):
        with pytest.raises(ConfigurationError):
            RAGConfig(**kwargs)

    def test_weights_may_be_rebalanced(self):
        config = RAGConfig(similarity_weight=0.5, type_priority_weight=0.3, freshness_weight=0.2)

        assert config.similarity_weight == 0.5

    def test_validators(self):
        validate_batch_size(1)
        validate_batch_size(100)
        validate_cache_ttl(0)
        with pytest.raises(ConfigurationError):
            validate_batch_size("10")
        with pytest.raises(ConfigurationError):
            validate_cache_ttl(1.5)
