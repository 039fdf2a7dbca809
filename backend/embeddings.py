# Embedding provider: turns mechanic text and user queries into vectors.
# Uses a free local FastEmbed model through llama-index, no API key needed.

import logging
import time
from typing import Callable, List, Optional

from llama_index.core.embeddings import BaseEmbedding
from llama_index.embeddings.fastembed import FastEmbedEmbedding

from backend import config
from backend.errors import ProviderError

logger = logging.getLogger(__name__)


def build_mechanic_text(
    mechanic_name: str,
    description: str,
    solution: Optional[str] = None,
    tips: Optional[List[str]] = None,
    encounter_name: Optional[str] = None,
    collection_name: Optional[str] = None,
) -> str:
    """
    Text that gets embedded for one mechanic.

    Location lines (collection, encounter) go before the description so a
    query naming the dungeon lands near its mechanics even when the
    description itself never mentions it.
    """
    parts = [f"Mechanic: {mechanic_name}"]
    if collection_name:
        parts.append(f"Location: {collection_name}")
    if encounter_name:
        parts.append(f"Encounter: {encounter_name}")
    parts.append(f"Description: {description}")
    if solution:
        parts.append(f"Solution: {solution}")
    if tips:
        parts.append(f"Tips: {' '.join(tips)}")
    return "\n".join(parts)


class EmbeddingProvider:
    """
    Wraps a llama-index embedding model.

    The model is created lazily on first use: loading it pulls weights from
    disk (or the network on first run), which we don't want at import time.
    Any model failure is re-raised as ProviderError.
    """

    def __init__(
        self,
        model_name: str = config.EMBED_MODEL_NAME,
        dimension: int = config.EMBEDDING_DIMENSION,
        batch_size: int = config.EMBED_BATCH_SIZE,
        batch_delay: float = config.EMBED_BATCH_DELAY,
        model: Optional[BaseEmbedding] = None,
    ):
        self.model_name = model_name
        self.dimension = dimension
        self.batch_size = batch_size
        self.batch_delay = batch_delay
        self._model = model

    def _get_model(self) -> BaseEmbedding:
        if self._model is None:
            logger.info(f"Loading embedding model: {self.model_name}")
            self._model = FastEmbedEmbedding(model_name=self.model_name)
        return self._model

    def embed(self, text: str) -> List[float]:
        try:
            return list(self._get_model().get_text_embedding(text))
        except Exception as e:
            raise ProviderError(f"Failed to generate embedding: {e}") from e

    def embed_batch(
        self,
        texts: List[str],
        on_progress: Optional[Callable[[int, int], None]] = None,
    ) -> List[List[float]]:
        """
        Embed texts in fixed-size batches, pausing batch_delay seconds between
        batches. on_progress(processed, total) is called after every batch.
        """
        embeddings: List[List[float]] = []
        processed = 0

        for i in range(0, len(texts), self.batch_size):
            batch = texts[i:i + self.batch_size]
            try:
                vectors = self._get_model().get_text_embedding_batch(batch)
            except Exception as e:
                raise ProviderError(f"Failed to generate embeddings: {e}") from e
            embeddings.extend(list(v) for v in vectors)

            processed += len(batch)
            if on_progress:
                on_progress(processed, len(texts))

            if i + self.batch_size < len(texts):
                time.sleep(self.batch_delay)

        return embeddings
