"""LangChain tool exposing knowledge base retrieval to a tool-calling LLM."""

from typing import TYPE_CHECKING

from langchain_core.tools import StructuredTool
from pydantic import BaseModel, Field

from .errors import KnowledgeBaseError
from .rag.models import ContextWindow, RetrievalContext

if TYPE_CHECKING:
    from .rag.retriever import Retriever

NO_RESULTS_MESSAGE = "No relevant store information found. Do not guess; tell the customer you could not find it."


def format_context_window(window: ContextWindow) -> str:
    """Render a context window as prompt text.

    Returns an empty string when the window is empty.
    """
    if window.is_empty:
        return ""
    parts = []
    for number, excerpt in enumerate(window.excerpts, start=1):
        header = f"[{number}] {excerpt.title or excerpt.content_id} ({excerpt.content_type})"
        if excerpt.url:
            header += f" {excerpt.url}"
        parts.append(f"{header}\n{excerpt.text}")
    return "\n\n---\n\n".join(parts)


class KnowledgeSearchInput(BaseModel):
    """Input schema for the store knowledge search tool."""

    query: str = Field(description="Customer question or keywords (e.g., 'return policy for sale items')")
    content_type: str = Field(
        default="", description="Optional content type to prefer (e.g., 'product', 'policy', 'faq')"
    )
    language: str = Field(default="", description="Optional language code to restrict results (e.g., 'en')")


def create_knowledge_search_tool(retriever: "Retriever", default_language: str | None = None) -> StructuredTool:
    """Create a knowledge search tool bound to a Retriever.

    Args:
        retriever: Retriever over the store knowledge base
        default_language: Language used when the model does not pass one

    Returns:
        LangChain Tool for store knowledge search

    Example:
        >>> search = create_knowledge_search_tool(retriever, default_language="en")
        >>> tools = [search]
    """

    def _search(query: str, content_type: str = "", language: str = "") -> str:
        context = RetrievalContext(
            language=language or default_language,
            content_type_preference=[content_type] if content_type else [],
        )
        try:
            window = retriever.retrieve(query, context)
        except KnowledgeBaseError as e:
            return f"Error searching store knowledge: {e}"
        return format_context_window(window) or NO_RESULTS_MESSAGE

    return StructuredTool.from_function(
        name="search_store_knowledge",
        description="Search the store's knowledge base (products, policies, FAQs, pages) for facts to answer a customer question. Returns numbered excerpts with titles and URLs. Only answer from the returned excerpts.",
        func=_search,
        args_schema=KnowledgeSearchInput,
    )


__all__ = [
    "KnowledgeSearchInput",
    "create_knowledge_search_tool",
    "format_context_window",
]
