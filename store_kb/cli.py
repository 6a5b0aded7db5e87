"""Command-line interface for indexing and querying the knowledge base."""

import json
import logging
import sys

import click

from .config import ServerConfig
from .errors import KnowledgeBaseError
from .rag.config import RAGConfig
from .rag.embeddings import BackendEmbeddings, EmbeddingService
from .rag.indexer import Indexer
from .rag.models import RetrievalContext
from .rag.retriever import Retriever
from .rag.sources import discover_json_sources
from .rag.store import KnowledgeStore
from .rag.vectorstore import InMemoryVectorIndex


def build_pipeline(config: ServerConfig, rag_config: RAGConfig | None = None, sources=None):
    """Wire store, embeddings, vector index, indexer and retriever from a ServerConfig.

    Args:
        config: ServerConfig instance
        rag_config: Optional RAGConfig; derived from config when omitted
        sources: Content sources; discovered from config.SOURCES_DIR when omitted

    Returns:
        Tuple of (indexer, retriever)
    """
    rag_config = rag_config or RAGConfig(
        embedding_model=config.EMBEDDING_MODEL,
        batch_size=config.INDEX_BATCH_SIZE,
        cache_ttl=config.EMBEDDING_CACHE_TTL,
        retry_attempts=config.BACKEND_RETRY_ATTEMPTS,
        retry_initial_delay=config.BACKEND_RETRY_INITIAL_DELAY,
    )
    store = KnowledgeStore(config.DATABASE_URL)
    embedding_service = EmbeddingService(
        BackendEmbeddings(config),
        model=rag_config.embedding_model,
        store=store,
        cache_ttl=rag_config.cache_ttl,
        retry_attempts=rag_config.retry_attempts,
        retry_initial_delay=rag_config.retry_initial_delay,
        retry_max_delay=rag_config.retry_max_delay,
    )
    vector_index = InMemoryVectorIndex()
    if sources is None:
        sources = discover_json_sources(config.SOURCES_DIR)
    indexer = Indexer(store, embedding_service, sources, vector_store=vector_index, config=rag_config)
    retriever = Retriever(store, embedding_service, vector_index, config=rag_config)
    return indexer, retriever


def _echo_json(data):
    click.echo(json.dumps(data, indent=2, default=str))


@click.group()
@click.option("--env-prefix", default="", help="Prefix for environment variables (e.g., STORE_KB_).")
@click.option("--sources-dir", default=None, help="Directory with <content_type>.json[l] files.")
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
@click.pass_context
def cli(ctx, env_prefix, sources_dir, verbose):
    """Index store content and retrieve grounding context for a chat assistant."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        stream=sys.stderr,
    )
    config = ServerConfig.from_env(env_prefix)
    if sources_dir:
        config.SOURCES_DIR = sources_dir
    ctx.obj = {"config": config}


def _pipeline(ctx):
    if "pipeline" not in ctx.obj:
        try:
            ctx.obj["pipeline"] = build_pipeline(ctx.obj["config"])
        except KnowledgeBaseError as e:
            raise click.ClickException(str(e)) from e
    return ctx.obj["pipeline"]


@cli.command()
@click.option("--type", "content_types", multiple=True, help="Content type to index (repeatable). Default: all.")
@click.option("--force", is_flag=True, help="Rewrite chunks even if unchanged.")
@click.option("--max-time", type=float, default=None, help="Time budget in seconds (0 = unlimited).")
@click.option("--batch-size", type=int, default=None, help="Records per batch (1-100).")
@click.pass_context
def index(ctx, content_types, force, max_time, batch_size):
    """Run an indexing pass and print the report."""
    indexer, _ = _pipeline(ctx)
    try:
        if batch_size is not None:
            indexer.set_batch_size(batch_size)
        report = indexer.index_all_content(list(content_types) or None, force_reindex=force, max_execution_time=max_time)
    except KnowledgeBaseError as e:
        raise click.ClickException(str(e)) from e
    _echo_json(report)
    if not report["success"]:
        ctx.exit(1)


@cli.command()
@click.argument("content_type")
@click.argument("content_id")
@click.pass_context
def remove(ctx, content_type, content_id):
    """Delete every chunk of one document."""
    indexer, _ = _pipeline(ctx)
    try:
        removed = indexer.remove_content(content_id, content_type)
    except KnowledgeBaseError as e:
        raise click.ClickException(str(e)) from e
    click.echo(f"Removed {content_type}/{content_id}" if removed else f"Nothing stored for {content_type}/{content_id}")


@cli.command()
@click.argument("query")
@click.option("--language", default=None, help="Restrict results to a language code.")
@click.option("--prefer", "preferred", multiple=True, help="Content type to boost (repeatable).")
@click.option("--max-tokens", type=int, default=None, help="Token budget of the context window.")
@click.pass_context
def retrieve(ctx, query, language, preferred, max_tokens):
    """Print the context window for QUERY."""
    indexer, retriever = _pipeline(ctx)
    indexer.sync_vector_store()
    context = RetrievalContext(language=language, content_type_preference=list(preferred), max_tokens=max_tokens)
    try:
        window = retriever.retrieve(query, context)
    except KnowledgeBaseError as e:
        raise click.ClickException(str(e)) from e
    _echo_json(window.to_dict())


@cli.command()
@click.pass_context
def stats(ctx):
    """Print knowledge base statistics."""
    indexer, _ = _pipeline(ctx)
    _echo_json(indexer.get_statistics())


@cli.command()
@click.option("--host", default=None, help="Host to bind to.")
@click.option("--port", type=int, default=None, help="Port to listen on.")
@click.option("--debug", is_flag=True, help="Enable Flask debug mode.")
@click.pass_context
def serve(ctx, host, port, debug):
    """Run the HTTP API."""
    from .server import KnowledgeServer

    indexer, retriever = _pipeline(ctx)
    server = KnowledgeServer(indexer, retriever, ctx.obj["config"], init_hook=indexer.sync_vector_store)
    server.run(port=port, host=host, debug=debug)


if __name__ == "__main__":
    cli()
