#!/usr/bin/env python3
"""Index a few store records and ground an assistant answer in them.

Requires a running Ollama with an embedding model pulled:

    ollama pull nomic-embed-text
    python examples/shop_assistant_example.py "Can I return a sale item?"
"""

import sys
from pathlib import Path

sys.path.insert(0, str(Path(__file__).parent.parent))

from store_kb import ServerConfig, create_knowledge_search_tool
from store_kb.cli import build_pipeline
from store_kb.rag import ContentRecord, RAGConfig, StaticContentSource

POLICIES = [
    ContentRecord(
        content_id="returns",
        content_type="policy",
        title="Return policy",
        url="https://shop.example/policies/returns",
        body=(
            "Returns are accepted within 30 days of delivery. Sale items can be returned for store credit only.\n\n"
            "Contact support to request a prepaid label."
        ),
        language="en",
    ),
    ContentRecord(
        content_id="shipping",
        content_type="policy",
        title="Shipping",
        url="https://shop.example/policies/shipping",
        body="Orders ship within two business days. Free shipping applies to orders over $50.",
        language="en",
    ),
]

PRODUCTS = [
    ContentRecord(
        content_id="1001",
        content_type="product",
        title="Organic cotton tee",
        url="https://shop.example/products/organic-cotton-tee",
        body="A relaxed fit tee in 100% organic cotton. Available in six sizes. Machine washable.",
        language="en",
    ),
]


def main():
    question = sys.argv[1] if len(sys.argv) > 1 else "Can I return a sale item?"

    config = ServerConfig.from_env()
    config.DATABASE_URL = "sqlite://"
    rag_config = RAGConfig(embedding_model=config.EMBEDDING_MODEL, similarity_threshold=0.5)
    indexer, retriever = build_pipeline(
        config,
        rag_config,
        sources=[StaticContentSource("policy", POLICIES), StaticContentSource("product", PRODUCTS)],
    )

    report = indexer.index_all_content()
    for content_type, summary in report["processing_summary"].items():
        print(f"{content_type}: {summary['chunks_inserted']} chunks indexed")

    search = create_knowledge_search_tool(retriever, default_language="en")
    print(f"\nQ: {question}\n")
    print(search.invoke({"query": question}))


if __name__ == "__main__":
    main()
