"""Flask API for operating the knowledge base."""

import logging
import threading
from datetime import datetime
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import pydantic
from flask import Flask, jsonify, request
from flask_cors import CORS
from pydantic import BaseModel, Field

from .backends import check_embedding_backend_health
from .config import ServerConfig
from .errors import (
    ConfigurationError,
    EmbeddingModelMismatchError,
    IndexingInProgressError,
    KnowledgeBaseError,
    ValidationError,
)
from .rag.indexer import Indexer
from .rag.models import ContentRecord, RetrievalContext
from .rag.retriever import Retriever

logger = logging.getLogger(__name__)


class IndexRequest(BaseModel):
    content_types: Optional[List[str]] = None
    force_reindex: bool = False
    max_execution_time: Optional[float] = Field(default=None, ge=0)
    wait: bool = False


class ItemRequest(BaseModel):
    content_id: Union[str, int]
    content_type: str
    body: str
    title: str = ""
    url: str = ""
    metadata: Dict[str, Any] = Field(default_factory=dict)
    language: Optional[str] = None
    last_modified: Optional[datetime] = None
    force_reindex: bool = False


class RetrieveRequest(BaseModel):
    query: str
    language: Optional[str] = None
    content_type_preference: List[str] = Field(default_factory=list)
    max_tokens: Optional[int] = Field(default=None, ge=1)
    filters: Dict[str, Any] = Field(default_factory=dict)


class KnowledgeServer:
    """Flask server exposing indexing and retrieval of the store knowledge base."""

    def __init__(
        self,
        indexer: Indexer,
        retriever: Retriever,
        config: ServerConfig,
        name: str = "store-kb",
        init_hook: Optional[Callable] = None,
        logger_names: Optional[List[str]] = None,
    ):
        """Initialize the knowledge base server.

        Args:
            indexer: Indexer used by the indexing endpoints
            retriever: Retriever used by the retrieve endpoint
            config: ServerConfig instance
            name: Display name for the server
            init_hook: Optional function to call before serving (e.g., vector store sync)
            logger_names: Optional list of logger names for debug logging
        """
        self.indexer = indexer
        self.retriever = retriever
        self.config = config
        self.name = name
        self.init_hook = init_hook
        self._background: Optional[threading.Thread] = None

        # Create Flask app
        self.app = Flask(name.lower())
        CORS(self.app)

        logger_names = logger_names or ["store_kb"]
        if config.DEBUG_LOG:
            log_file = Path(config.DEBUG_LOG_FILE)
            # Use RotatingFileHandler for automatic log rotation
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=config.DEBUG_LOG_MAX_BYTES,
                backupCount=config.DEBUG_LOG_BACKUP_COUNT,
                encoding="utf-8",
            )
            file_handler.setLevel(logging.DEBUG)

            formatter = logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s", datefmt="%Y-%m-%d %H:%M:%S"
            )
            file_handler.setFormatter(formatter)

            for logger_name in logger_names:
                logger_obj = logging.getLogger(logger_name)
                logger_obj.setLevel(logging.DEBUG)
                logger_obj.addHandler(file_handler)

            max_mb = config.DEBUG_LOG_MAX_BYTES / (1024 * 1024)
            print(f"Debug logging enabled: {log_file.absolute()}")
            print(f"  Logging: {', '.join(logger_names)}")
            print(f"  Rotation: {max_mb:.1f}MB max, {config.DEBUG_LOG_BACKUP_COUNT} backups")

        # Register routes
        self._register_routes()

    def _register_routes(self):
        """Register Flask routes."""
        self.app.route("/health", methods=["GET"])(self.health)
        self.app.route("/v1/knowledge/status", methods=["GET"])(self.status)
        self.app.route("/v1/knowledge/statistics", methods=["GET"])(self.statistics)
        self.app.route("/v1/knowledge/index", methods=["POST"])(self.index)
        self.app.route("/v1/knowledge/items", methods=["POST"])(self.index_item)
        self.app.route("/v1/knowledge/items/<content_type>/<content_id>", methods=["DELETE"])(self.remove_item)
        self.app.route("/v1/knowledge/retrieve", methods=["POST"])(self.retrieve)

    @staticmethod
    def _error_response(error: Exception):
        """Map an exception to a JSON error response."""
        if isinstance(error, pydantic.ValidationError):
            return jsonify({"error": "Invalid request body", "details": error.errors(include_url=False, include_context=False)}), 400
        if isinstance(error, (ValidationError, ConfigurationError)):
            return jsonify({"error": str(error)}), 400
        if isinstance(error, (IndexingInProgressError, EmbeddingModelMismatchError)):
            return jsonify({"error": str(error)}), 409
        if isinstance(error, KnowledgeBaseError):
            logger.error(f"[SERVER] {error}")
            return jsonify({"error": str(error)}), 500
        logger.exception(f"[SERVER] Unexpected error: {error}")
        return jsonify({"error": str(error)}), 500

    @staticmethod
    def _json_body():
        data = request.get_json(silent=True)
        if data is None:
            raise ValidationError("body", "Invalid JSON in request body")
        return data

    def health(self):
        """Health check endpoint."""
        return jsonify(
            {
                "status": "healthy",
                "backend": self.config.EMBEDDING_BACKEND,
                "retrieval": self.retriever.describe(),
                "is_processing": self.indexer.is_processing(),
            }
        )

    def status(self):
        """In-flight indexing runs."""
        return jsonify(self.indexer.get_processing_status())

    def statistics(self):
        try:
            return jsonify(self.indexer.get_statistics())
        except Exception as e:
            return self._error_response(e)

    def index(self):
        """Start an indexing pass, in the background unless ``wait`` is true."""
        try:
            data = IndexRequest.model_validate(request.get_json(silent=True) or {})
            content_types = data.content_types or [
                ct for ct in self.indexer.config.content_types if ct in self.indexer.sources
            ]
            unknown = [ct for ct in content_types if ct not in self.indexer.sources]
            if unknown:
                raise ConfigurationError(f"No content source registered for: {', '.join(unknown)}")
            busy = [ct for ct in content_types if self.indexer.is_processing(ct)]
            if busy:
                raise IndexingInProgressError(", ".join(busy))

            if data.wait:
                report = self.indexer.index_all_content(
                    content_types, force_reindex=data.force_reindex, max_execution_time=data.max_execution_time
                )
                return jsonify(report)

            def _background_task():
                try:
                    self.indexer.index_all_content(
                        content_types, force_reindex=data.force_reindex, max_execution_time=data.max_execution_time
                    )
                except Exception as e:
                    logger.error(f"[SERVER] Background indexing failed: {e}")

            self._background = threading.Thread(target=_background_task, daemon=True)
            self._background.start()
            logger.info(f"[SERVER] Background indexing started: {', '.join(content_types)}")
            return jsonify({"status": "started", "content_types": content_types}), 202

        except Exception as e:
            return self._error_response(e)

    def index_item(self):
        """Index a single content record."""
        try:
            data = ItemRequest.model_validate(self._json_body())
            record = ContentRecord(**data.model_dump(exclude={"force_reindex"}))
            result = self.indexer.index_single_item(record, force_reindex=data.force_reindex)
            return jsonify(result.to_dict())
        except Exception as e:
            return self._error_response(e)

    def remove_item(self, content_type: str, content_id: str):
        """Hard-delete a document's chunks."""
        try:
            removed = self.indexer.remove_content(content_id, content_type)
            if not removed:
                return jsonify({"removed": False, "error": f"No chunks found for {content_type}/{content_id}"}), 404
            return jsonify({"removed": True})
        except Exception as e:
            return self._error_response(e)

    def retrieve(self):
        """Build a context window for a query."""
        try:
            data = RetrieveRequest.model_validate(self._json_body())
            context = RetrievalContext(
                language=data.language,
                content_type_preference=data.content_type_preference,
                max_tokens=data.max_tokens,
                filters=data.filters,
            )
            window = self.retriever.retrieve(data.query, context)
            return jsonify(window.to_dict())
        except Exception as e:
            return self._error_response(e)

    def check_backend_health(self) -> bool:
        """Check if the embedding backend is healthy and reachable."""
        is_healthy, message = check_embedding_backend_health(self.config, timeout=self.config.HEALTH_CHECK_TIMEOUT)
        if is_healthy:
            print(f"✓ {message}")
        else:
            print(f"✗ {message}")
        return is_healthy

    def run(self, port: Optional[int] = None, host: Optional[str] = None, debug: bool = False):
        """Run the Flask server.

        Args:
            port: Port to run on (defaults to config.DEFAULT_PORT)
            host: Host to bind to (defaults to config.DEFAULT_HOST, which is 127.0.0.1 for security)
            debug: Enable debug mode
        """
        port = port or self.config.DEFAULT_PORT
        host = host or self.config.DEFAULT_HOST

        print(
            f"""
╭────────────────────────────────────╮
│  {self.name} - Store Knowledge Base   │
╰────────────────────────────────────╯

Embedding backend: {self.config.EMBEDDING_BACKEND}
Embedding model: {self.config.EMBEDDING_MODEL}
Database: {self.config.DATABASE_URL}
Host: {host}
Port: {port}
API: http://localhost:{port}/v1/knowledge
"""
        )

        # Security warning if binding to all interfaces
        if host == "0.0.0.0":
            print("⚠️  WARNING: Server is binding to 0.0.0.0 (all network interfaces)")
            print("   This exposes the API to your entire network without authentication.")
            print("   For security, use HOST=127.0.0.1 (localhost only) unless you need network access.\n")

        if self.config.HEALTH_CHECK_ON_STARTUP:
            print("Checking embedding backend health...")
            if not self.check_backend_health():
                print("\n⚠️  Warning: Embedding backend health check failed!")
                print("The server will start anyway, but indexing and retrieval may fail.")
                print("To disable this check, set HEALTH_CHECK_ON_STARTUP=false\n")

        if self.init_hook:
            try:
                self.init_hook()
            except Exception as e:
                print(f"Warning: Initialization hook failed: {e}")

        self.app.run(host=host, port=port, debug=debug)
