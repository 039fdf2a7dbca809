# Service graph for the API: one store, one set of providers, one rate
# limiter and one search cache per process. Routes receive it through
# FastAPI's Depends(get_services); tests swap it via dependency_overrides.

from dataclasses import dataclass
from functools import lru_cache

from backend import config
from backend.embeddings import EmbeddingProvider
from backend.generator import ResponseGenerator
from backend.rag import MechanicRetriever, MechanicStore
from backend.utils import RateLimiter, TTLCache
from backend.vector_store import MechanicIndex


@dataclass
class Services:
    store: MechanicStore
    embedder: EmbeddingProvider
    index: MechanicIndex
    generator: ResponseGenerator
    retriever: MechanicRetriever
    rate_limiter: RateLimiter
    cache: TTLCache


def build_services(store=None, embedder=None, index=None, generator=None) -> Services:
    """Wire the pipeline together. Any collaborator can be passed in to replace the default."""
    # `is None`, not `or`: an empty MechanicStore is falsy
    if store is None:
        store = MechanicStore(config.DATA_DIR)
    if embedder is None:
        embedder = EmbeddingProvider()
    if index is None:
        index = MechanicIndex(config.DB_DIR, config.CHROMA_COLLECTION)
    if generator is None:
        generator = ResponseGenerator()

    return Services(
        store=store,
        embedder=embedder,
        index=index,
        generator=generator,
        retriever=MechanicRetriever(store, embedder, index, default_top_k=config.DEFAULT_TOP_K),
        rate_limiter=RateLimiter(),
        cache=TTLCache(default_ttl=config.SEARCH_CACHE_TTL),
    )


@lru_cache()
def get_services() -> Services:
    return build_services()
