# Ingestion: source documents → MechanicStore + vector index.
# Used by POST /ingest and scripts/ingest.py.

import json
import logging
from typing import Callable, Iterable, Iterator, List, Optional

from backend.embeddings import build_mechanic_text
from backend.models import Collection, MechanicEntry, VectorMetadata, VectorRecord

logger = logging.getLogger(__name__)


def load_collection_file(path: str) -> Collection:
    """Read and validate one source document. Raises on bad JSON or schema."""
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return Collection.model_validate(data)


def iter_collection_entries(collection: Collection) -> Iterator[MechanicEntry]:
    for encounter in collection.encounters:
        for mechanic in encounter.mechanics:
            yield MechanicEntry(mechanic, encounter, collection)


def entry_text(entry: MechanicEntry) -> str:
    mechanic, encounter, collection = entry
    return build_mechanic_text(
        mechanic.name,
        mechanic.description,
        solution=mechanic.solution,
        tips=mechanic.tips,
        encounter_name=encounter.name,
        collection_name=collection.name,
    )


def build_vector_metadata(entry: MechanicEntry) -> VectorMetadata:
    return VectorMetadata.from_entry(entry)


def ingest_entries(
    entries: Iterable[MechanicEntry],
    embedder,
    index,
    store=None,
    on_progress: Optional[Callable[[int, int], None]] = None,
) -> int:
    """
    Embed and upsert mechanics, then register them in the store.

    Registration happens only after the upsert succeeds, so a failed ingest
    never leaves the store pointing at vectors that don't exist. Returns the
    number of mechanics ingested.
    """
    entries = list(entries)
    if not entries:
        return 0

    vectors = embedder.embed_batch([entry_text(e) for e in entries], on_progress=on_progress)
    records: List[VectorRecord] = [
        VectorRecord(id=entry.mechanic.id, values=vector, metadata=build_vector_metadata(entry))
        for entry, vector in zip(entries, vectors)
    ]
    index.upsert(records)

    if store is not None:
        for entry in entries:
            store.register(*entry)

    logger.info(f"Ingested {len(records)} mechanics")
    return len(records)
