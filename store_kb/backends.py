"""Embedding backend communication for Ollama and LM Studio."""

from typing import Any, Dict, List, Tuple

import requests

from .errors import KnowledgeBaseError, TransientServiceError


def _post_json(endpoint: str, payload: Dict[str, Any], config) -> Dict[str, Any]:
    """POST a JSON payload, mapping retryable failures to TransientServiceError."""
    # Set timeout as tuple (connect_timeout, read_timeout)
    timeout = (config.BACKEND_CONNECT_TIMEOUT, config.BACKEND_READ_TIMEOUT)

    try:
        response = requests.post(endpoint, json=payload, timeout=timeout)
    except requests.Timeout as e:
        raise TransientServiceError(f"Embedding request to {endpoint} timed out") from e
    except requests.ConnectionError as e:
        raise TransientServiceError(f"Cannot connect to embedding backend at {endpoint}") from e

    if response.status_code == 429 or response.status_code >= 500:
        raise TransientServiceError(
            f"Embedding backend returned HTTP {response.status_code}", status_code=response.status_code
        )
    try:
        response.raise_for_status()
    except requests.HTTPError as e:
        raise KnowledgeBaseError(f"Embedding request rejected: {e!s}") from e
    return response.json()


def embed_ollama(texts: List[str], config) -> List[List[float]]:
    """Embed texts with Ollama's /api/embed endpoint."""
    endpoint = f"{config.OLLAMA_ENDPOINT}/api/embed"
    data = _post_json(endpoint, {"model": config.EMBEDDING_MODEL, "input": texts}, config)
    embeddings = data.get("embeddings")
    if not embeddings or len(embeddings) != len(texts):
        raise KnowledgeBaseError(f"Ollama returned {len(embeddings or [])} embeddings for {len(texts)} inputs")
    return embeddings


def embed_lmstudio(texts: List[str], config) -> List[List[float]]:
    """Embed texts with LM Studio's OpenAI-compatible /embeddings endpoint."""
    endpoint = f"{config.LMSTUDIO_ENDPOINT}/embeddings"
    data = _post_json(endpoint, {"model": config.EMBEDDING_MODEL, "input": texts}, config)
    items = sorted(data.get("data", []), key=lambda item: item.get("index", 0))
    if len(items) != len(texts):
        raise KnowledgeBaseError(f"LM Studio returned {len(items)} embeddings for {len(texts)} inputs")
    return [item["embedding"] for item in items]


def check_ollama_health(config, timeout: int = 5) -> Tuple[bool, str]:
    """Check if Ollama backend is healthy and serves the embedding model.

    Args:
        config: ServerConfig instance
        timeout: Request timeout in seconds

    Returns:
        Tuple of (is_healthy: bool, message: str)
    """
    try:
        endpoint = f"{config.OLLAMA_ENDPOINT}/api/tags"
        response = requests.get(endpoint, timeout=timeout)
        response.raise_for_status()

        data = response.json()
        models = data.get("models", [])
        model_names = [model.get("name", "") for model in models]

        # Ollama reports "name:tag"; an untagged model name means ":latest"
        wanted = config.EMBEDDING_MODEL
        if any(name == wanted or name == f"{wanted}:latest" for name in model_names):
            return True, f"Ollama is healthy. Embedding model '{wanted}' is available."
        else:
            available = ", ".join(model_names) if model_names else "none"
            return (
                False,
                f"Ollama is reachable but embedding model '{wanted}' not found. Available models: {available}",
            )

    except requests.Timeout:
        return False, f"Ollama health check timed out after {timeout}s. Backend may be unresponsive."
    except requests.ConnectionError:
        return False, f"Cannot connect to Ollama at {config.OLLAMA_ENDPOINT}. Is it running?"
    except Exception as e:
        return False, f"Ollama health check failed: {e!s}"


def check_lmstudio_health(config, timeout: int = 5) -> Tuple[bool, str]:
    """Check if LM Studio backend is healthy and reachable.

    Args:
        config: ServerConfig instance
        timeout: Request timeout in seconds

    Returns:
        Tuple of (is_healthy: bool, message: str)
    """
    try:
        endpoint = f"{config.LMSTUDIO_ENDPOINT}/models"
        response = requests.get(endpoint, timeout=timeout)
        response.raise_for_status()

        data = response.json()
        model_ids = [model.get("id", "") for model in data.get("data", [])]

        if config.EMBEDDING_MODEL in model_ids:
            return True, f"LM Studio is healthy. Embedding model '{config.EMBEDDING_MODEL}' is loaded."
        elif model_ids:
            return (
                False,
                f"LM Studio is reachable but embedding model '{config.EMBEDDING_MODEL}' is not loaded. "
                f"Loaded: {', '.join(model_ids)}",
            )
        else:
            return False, "LM Studio is reachable but no models are loaded. Please load an embedding model."

    except requests.Timeout:
        return False, f"LM Studio health check timed out after {timeout}s. Backend may be unresponsive."
    except requests.ConnectionError:
        return False, f"Cannot connect to LM Studio at {config.LMSTUDIO_ENDPOINT}. Is it running?"
    except Exception as e:
        return False, f"LM Studio health check failed: {e!s}"


def check_embedding_backend_health(config, timeout: int = 5) -> Tuple[bool, str]:
    """Check whichever embedding backend the config selects."""
    if config.EMBEDDING_BACKEND == "ollama":
        return check_ollama_health(config, timeout=timeout)
    return check_lmstudio_health(config, timeout=timeout)
