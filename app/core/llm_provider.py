"""
Provider-agnostic embedding model factory.

Switch embedding provider by changing env vars:
  EMBEDDING_PROVIDER=openai | gemini
  EMBEDDING_MODEL=text-embedding-3-small | gemini-embedding-001
  EMBEDDING_API_KEY=your-key
"""

from langchain_core.embeddings import Embeddings

from app.config import get_settings


def create_embeddings(model: str | None = None) -> Embeddings:
    """Create an embedding model based on env configuration.

    Args:
        model: Model name overriding EMBEDDING_MODEL.

    Returns:
        Embeddings instance for vector generation.

    Raises:
        ValueError: If provider is not supported.
    """
    settings = get_settings()
    model_name = model or settings.EMBEDDING_MODEL

    match settings.EMBEDDING_PROVIDER:
        case "gemini":
            from langchain_google_genai import GoogleGenerativeAIEmbeddings

            return GoogleGenerativeAIEmbeddings(
                model=f"models/{model_name}",
                google_api_key=settings.EMBEDDING_API_KEY,
            )

        case "openai":
            from langchain_openai import OpenAIEmbeddings

            return OpenAIEmbeddings(
                model=model_name,
                api_key=settings.EMBEDDING_API_KEY,
                dimensions=settings.EMBEDDING_DIMENSIONS,
            )

        case _:
            raise ValueError(
                f"Unknown embedding provider: '{settings.EMBEDDING_PROVIDER}'. "
                f"Supported: gemini, openai"
            )
