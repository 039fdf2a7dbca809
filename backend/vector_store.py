# Similarity search provider backed by a local ChromaDB collection.
# One vector per mechanic; the vector id is the mechanic id and the flattened
# VectorMetadata rides along so results can be rebuilt without the store.

import logging
from typing import Any, Dict, List, Optional, Tuple

import chromadb

from backend import config
from backend.errors import ProviderError
from backend.models import VectorMatch, VectorMetadata, VectorRecord

logger = logging.getLogger(__name__)

UPSERT_BATCH_SIZE = 100


def build_where(filters: Optional[Dict[str, Any]]) -> Optional[dict]:
    """
    Turn a flat {metadata_key: value} equality filter into a Chroma `where`.
    None values are skipped. Chroma wants a bare clause for one condition and
    an explicit $and for several.
    """
    if not filters:
        return None
    clauses = [{key: {"$eq": value}} for key, value in filters.items() if value is not None]
    if not clauses:
        return None
    if len(clauses) == 1:
        return clauses[0]
    return {"$and": clauses}


def distance_to_score(distance: float) -> float:
    """Cosine distance (0..2) → similarity score clamped to [0, 1]."""
    return max(0.0, min(1.0, 1.0 - float(distance)))


class MechanicIndex:
    """
    ChromaDB collection wrapper.

    The client is opened lazily so importing this module (or building the
    service graph) never touches the disk. Pass `client` to use an
    in-memory chromadb.EphemeralClient in tests.
    """

    def __init__(
        self,
        path: str = config.DB_DIR,
        collection_name: str = config.CHROMA_COLLECTION,
        client=None,
    ):
        self.path = path
        self.collection_name = collection_name
        self.dimension: Optional[int] = None
        self._client = client
        self._collection = None

    def _get_client(self):
        if self._client is None:
            self._client = chromadb.PersistentClient(path=self.path)
        return self._client

    def _get_collection(self):
        if self._collection is None:
            self._collection = self._get_client().get_or_create_collection(
                self.collection_name,
                metadata={"hnsw:space": "cosine"},
            )
        return self._collection

    def ensure_index_exists(self, dimension: int) -> None:
        """Create the collection if needed and pin the expected vector size."""
        try:
            collection = self._get_collection()
        except Exception as e:
            raise ProviderError(f"Failed to ensure index exists: {e}") from e
        self.dimension = dimension
        logger.info(f"Index '{self.collection_name}' ready ({collection.count()} vectors, dimension={dimension})")

    def count(self) -> int:
        try:
            return self._get_collection().count()
        except Exception as e:
            raise ProviderError(f"Failed to count vectors: {e}") from e

    def upsert(self, records: List[VectorRecord]) -> int:
        if not records:
            return 0
        if self.dimension is not None:
            for record in records:
                if len(record.values) != self.dimension:
                    raise ProviderError(
                        f"Vector for {record.id} has dimension {len(record.values)}, "
                        f"index expects {self.dimension}"
                    )

        try:
            collection = self._get_collection()
            for i in range(0, len(records), UPSERT_BATCH_SIZE):
                batch = records[i:i + UPSERT_BATCH_SIZE]
                collection.upsert(
                    ids=[r.id for r in batch],
                    embeddings=[r.values for r in batch],
                    metadatas=[r.metadata.to_index_metadata() for r in batch],
                )
        except Exception as e:
            raise ProviderError(f"Failed to upsert mechanics to vector store: {e}") from e

        logger.info(f"Upserted {len(records)} vectors into '{self.collection_name}'")
        return len(records)

    def query(
        self,
        vector: List[float],
        top_k: int = 10,
        filters: Optional[Dict[str, Any]] = None,
    ) -> List[VectorMatch]:
        """
        Nearest mechanics to `vector`, best first. `filters` is an equality
        filter over index metadata keys (collectionName, encounterType,
        mechanicType, difficulty, contestModeSpecific).
        """
        try:
            collection = self._get_collection()
            total = collection.count()
            if total == 0:
                return []
            kwargs = {
                "query_embeddings": [vector],
                "n_results": min(top_k, total),
                "include": ["metadatas", "distances"],
            }
            where = build_where(filters)
            if where:
                kwargs["where"] = where
            response = collection.query(**kwargs)
        except Exception as e:
            raise ProviderError(f"Failed to search vector store: {e}") from e

        ids = response["ids"][0] if response.get("ids") else []
        distances = response["distances"][0] if response.get("distances") else []
        metadatas = response["metadatas"][0] if response.get("metadatas") else []

        return [
            VectorMatch(
                id=vector_id,
                score=distance_to_score(distance),
                metadata=VectorMetadata.model_validate(metadata),
            )
            for vector_id, distance, metadata in zip(ids, distances, metadatas)
        ]

    def list_all(self, collection_name: Optional[str] = None) -> List[Tuple[str, VectorMetadata]]:
        try:
            kwargs = {"include": ["metadatas"]}
            where = build_where({"collectionName": collection_name})
            if where:
                kwargs["where"] = where
            response = self._get_collection().get(**kwargs)
        except Exception as e:
            raise ProviderError(f"Failed to list mechanics from vector store: {e}") from e

        return [
            (vector_id, VectorMetadata.model_validate(metadata))
            for vector_id, metadata in zip(response["ids"], response["metadatas"])
        ]

    def delete_by_ids(self, ids: List[str]) -> None:
        if not ids:
            return
        try:
            self._get_collection().delete(ids=ids)
        except Exception as e:
            raise ProviderError(f"Failed to delete mechanics from vector store: {e}") from e
        logger.info(f"Deleted {len(ids)} vectors from '{self.collection_name}'")

    def delete_all(self) -> None:
        """Drop every vector by dropping and recreating the collection."""
        try:
            client = self._get_client()
            existing = [getattr(c, "name", c) for c in client.list_collections()]
            if self.collection_name in existing:
                client.delete_collection(self.collection_name)
            self._collection = None
            self._get_collection()
        except Exception as e:
            raise ProviderError(f"Failed to delete all mechanics from vector store: {e}") from e
        logger.info(f"All vectors deleted from '{self.collection_name}'")
