"""
Shared fixtures for the Raid Scholar tests.

No network or model downloads: the embedding model, vector index and Claude
are replaced with small in-memory fakes that record how they were called.
"""

import os
import sys

import pytest

# Add project root to path so backend can be imported without installing
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend.errors import ProviderError
from backend.models import (
    Collection,
    Encounter,
    Mechanic,
    MechanicEntry,
    VectorMatch,
    VectorMetadata,
)
from backend.rag import MechanicRetriever, MechanicStore

DATA_DIR = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "data", "mechanics")


# ─────────────────────────────────────────────────────────────
# Fakes
# ─────────────────────────────────────────────────────────────

class FakeEmbedder:
    """Returns the same small vector for every text and remembers the texts."""

    def __init__(self, dimension=4, error=None):
        self.dimension = dimension
        self.error = error
        self.texts = []

    def embed(self, text):
        if self.error:
            raise self.error
        self.texts.append(text)
        return [0.5] * self.dimension

    def embed_batch(self, texts, on_progress=None):
        if self.error:
            raise self.error
        self.texts.extend(texts)
        if on_progress:
            on_progress(len(texts), len(texts))
        return [[0.5] * self.dimension for _ in texts]


class FakeIndex:
    """
    In-memory stand-in for MechanicIndex.

    With `matches` set, query() returns those (after applying the equality
    filter); otherwise every upserted record comes back at `default_score`.
    """

    def __init__(self, matches=None, default_score=0.9, error=None):
        self.matches = matches
        self.default_score = default_score
        self.error = error
        self.records = {}
        self.queries = []
        self.dimension = None

    def ensure_index_exists(self, dimension):
        self.dimension = dimension

    def count(self):
        return len(self.records)

    def upsert(self, records):
        if self.error:
            raise self.error
        for record in records:
            self.records[record.id] = record
        return len(records)

    def query(self, vector, top_k=10, filters=None):
        self.queries.append({"vector": vector, "top_k": top_k, "filters": filters})
        if self.error:
            raise self.error

        if self.matches is not None:
            candidates = list(self.matches)
        else:
            candidates = [
                VectorMatch(id=r.id, score=self.default_score, metadata=r.metadata)
                for r in self.records.values()
            ]

        wanted = {k: v for k, v in (filters or {}).items() if v is not None}
        results = [
            m for m in candidates
            if all(m.metadata.to_index_metadata().get(k) == v for k, v in wanted.items())
        ]
        return results[:top_k]


class FakeGenerator:
    def __init__(self, chunks=("Shoot ", "the ", "bells."), error=None):
        self.chunks = list(chunks)
        self.error = error
        self.calls = []

    def generate(self, question, context, chat_history=None):
        self.calls.append({"question": question, "context": context, "history": chat_history})
        if self.error:
            raise self.error
        return "".join(self.chunks)

    def stream(self, question, context, chat_history=None):
        self.calls.append({"question": question, "context": context, "history": chat_history})
        for chunk in self.chunks:
            yield chunk
        if self.error:
            raise self.error


# ─────────────────────────────────────────────────────────────
# Builders
# ─────────────────────────────────────────────────────────────

def make_mechanic(mechanic_id, name, **kwargs):
    kwargs.setdefault("description", f"{name} description")
    kwargs.setdefault("type", "puzzle")
    return Mechanic(id=mechanic_id, name=name, **kwargs)


def make_encounter(encounter_id, name, encounter_type, order, mechanics):
    return Encounter(
        id=encounter_id,
        name=name,
        description=f"{name} description",
        type=encounter_type,
        order=order,
        mechanics=mechanics,
    )


def make_collection(collection_id, name, encounters, collection_type="dungeon"):
    return Collection(
        id=collection_id,
        name=name,
        type=collection_type,
        description=f"{name} description",
        encounters=encounters,
    )


def match_for(store, mechanic_id, score):
    """VectorMatch for a mechanic already in the store, as the index would return it."""
    return VectorMatch(id=mechanic_id, score=score, metadata=VectorMetadata.from_entry(store.get(mechanic_id)))


def metadata_match(mechanic_id, name, collection_name, encounter_order, score,
                   encounter_type="encounter", mechanic_type="puzzle"):
    """VectorMatch for a mechanic the store has never heard of."""
    return VectorMatch(
        id=mechanic_id,
        score=score,
        metadata=VectorMetadata(
            mechanic_id=mechanic_id,
            mechanic_name=name,
            encounter_id=f"{mechanic_id}-encounter",
            encounter_name=f"Encounter {encounter_order}",
            encounter_order=encounter_order,
            collection_id=collection_name.lower(),
            collection_name=collection_name,
            collection_type="dungeon",
            mechanic_type=mechanic_type,
            encounter_type=encounter_type,
        ),
    )


# ─────────────────────────────────────────────────────────────
# Fixtures
# ─────────────────────────────────────────────────────────────

@pytest.fixture
def store():
    """Store loaded from the bundled data/mechanics documents (Duality, Warlord's Ruin)."""
    s = MechanicStore(DATA_DIR)
    s.ensure_loaded()
    return s


@pytest.fixture
def empty_store(tmp_path):
    s = MechanicStore(str(tmp_path))
    s.ensure_loaded()
    return s


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def make_retriever(store, embedder):
    def _make(matches=None, index=None):
        if index is None:
            index = FakeIndex(matches=matches)
        return MechanicRetriever(store, embedder, index)
    return _make


@pytest.fixture
def failing_index():
    return FakeIndex(error=ProviderError("index unavailable"))


@pytest.fixture
def single_boss_collection():
    """Collection with exactly one boss-type encounter."""
    return make_collection("spire", "Spire of the Watcher", [
        make_encounter("spire-ascent", "Ascent", "opening", 1, [
            make_mechanic("spire-ascent-flow", "Ascent Encounter Flow"),
            make_mechanic("spire-arc-charge", "Arc Charge"),
        ]),
        make_encounter("spire-akelous", "Akelous", "boss", 2, [
            make_mechanic("spire-akelous-rods", "Akelous Rods", type="boss"),
        ]),
        make_encounter("spire-traversal", "Pipe Climb", "traversal", 3, [
            make_mechanic("spire-pipes", "Pipes", type="traversal"),
        ]),
    ])


def register_collection(store, collection):
    for encounter in collection.encounters:
        for mechanic in encounter.mechanics:
            store.register(mechanic, encounter, collection)
    return [MechanicEntry(m, e, collection) for e in collection.encounters for m in e.mechanics]
