"""
Tests for the ChromaDB-backed MechanicIndex, run against an in-memory
chromadb.EphemeralClient. Each test gets its own collection name because
ephemeral clients in one process share the same backing system.
"""

import uuid

import chromadb
import pytest

from backend.errors import ProviderError
from backend.models import VectorMetadata, VectorRecord
from backend.vector_store import MechanicIndex, build_where, distance_to_score


@pytest.fixture
def mechanic_index():
    index = MechanicIndex(collection_name=f"test-{uuid.uuid4().hex[:12]}", client=chromadb.EphemeralClient())
    index.ensure_index_exists(3)
    yield index
    index.delete_all()


def record(store, mechanic_id, values):
    return VectorRecord(id=mechanic_id, values=values, metadata=VectorMetadata.from_entry(store.get(mechanic_id)))


# ─────────────────────────────────────────────────────────────
# helpers
# ─────────────────────────────────────────────────────────────

class TestBuildWhere:

    def test_empty(self):
        assert build_where(None) is None
        assert build_where({}) is None
        assert build_where({"collectionName": None}) is None

    def test_single_clause(self):
        assert build_where({"collectionName": "Duality", "difficulty": None}) == {"collectionName": {"$eq": "Duality"}}

    def test_multiple_clauses(self):
        where = build_where({"collectionName": "Duality", "contestModeSpecific": True})
        assert where == {"$and": [
            {"collectionName": {"$eq": "Duality"}},
            {"contestModeSpecific": {"$eq": True}},
        ]}


class TestDistanceToScore:

    @pytest.mark.parametrize("distance, score", [(0.0, 1.0), (0.25, 0.75), (1.0, 0.0), (1.6, 0.0), (-0.1, 1.0)])
    def test_clamped(self, distance, score):
        assert distance_to_score(distance) == pytest.approx(score)


# ─────────────────────────────────────────────────────────────
# MechanicIndex
# ─────────────────────────────────────────────────────────────

class TestMechanicIndex:

    def test_upsert_and_query_nearest_first(self, mechanic_index, store):
        mechanic_index.upsert([
            record(store, "duality-caiatl-bells", [1.0, 0.0, 0.0]),
            record(store, "duality-gahlran-hands", [0.0, 1.0, 0.0]),
            record(store, "warlords-ruin-wyrmfire", [0.9, 0.1, 0.0]),
        ])
        assert mechanic_index.count() == 3

        matches = mechanic_index.query([1.0, 0.0, 0.0], top_k=2)
        assert [m.id for m in matches] == ["duality-caiatl-bells", "warlords-ruin-wyrmfire"]
        assert matches[0].score == pytest.approx(1.0, abs=1e-4)
        assert all(0.0 <= m.score <= 1.0 for m in matches)

    def test_metadata_round_trip(self, mechanic_index, store):
        mechanic_index.upsert([record(store, "duality-caiatl-flow", [1.0, 0.0, 0.0])])
        meta = mechanic_index.query([1.0, 0.0, 0.0])[0].metadata

        assert meta == VectorMetadata.from_entry(store.get("duality-caiatl-flow"))
        assert meta.encounter_order == 5
        assert meta.contest_mode_specific is True

    def test_missing_optional_metadata(self, mechanic_index, store):
        mechanic_index.upsert([record(store, "duality-caiatl-bells", [1.0, 0.0, 0.0])])
        meta = mechanic_index.query([1.0, 0.0, 0.0])[0].metadata
        assert meta.contest_mode_specific is None

    def test_query_with_filters(self, mechanic_index, store):
        mechanic_index.upsert([
            record(store, "duality-caiatl-flow", [1.0, 0.0, 0.0]),
            record(store, "duality-caiatl-bells", [1.0, 0.1, 0.0]),
            record(store, "warlords-ruin-hefnd-flow", [1.0, 0.0, 0.1]),
        ])
        duality = mechanic_index.query([1.0, 0.0, 0.0], filters={"collectionName": "Duality"})
        assert {m.id for m in duality} == {"duality-caiatl-flow", "duality-caiatl-bells"}

        contest = mechanic_index.query(
            [1.0, 0.0, 0.0],
            filters={"collectionName": "Duality", "contestModeSpecific": True, "difficulty": None},
        )
        assert [m.id for m in contest] == ["duality-caiatl-flow"]

    def test_query_empty_index(self, mechanic_index):
        assert mechanic_index.query([1.0, 0.0, 0.0], top_k=5) == []

    def test_top_k_larger_than_index(self, mechanic_index, store):
        mechanic_index.upsert([record(store, "duality-caiatl-flow", [1.0, 0.0, 0.0])])
        assert len(mechanic_index.query([1.0, 0.0, 0.0], top_k=40)) == 1

    def test_upsert_overwrites_by_id(self, mechanic_index, store):
        mechanic_index.upsert([record(store, "duality-caiatl-flow", [1.0, 0.0, 0.0])])
        mechanic_index.upsert([record(store, "duality-caiatl-flow", [0.0, 1.0, 0.0])])
        assert mechanic_index.count() == 1
        assert mechanic_index.query([0.0, 1.0, 0.0])[0].score == pytest.approx(1.0, abs=1e-4)

    def test_upsert_rejects_wrong_dimension(self, mechanic_index, store):
        with pytest.raises(ProviderError):
            mechanic_index.upsert([record(store, "duality-caiatl-flow", [1.0, 0.0])])

    def test_upsert_nothing(self, mechanic_index):
        assert mechanic_index.upsert([]) == 0

    def test_list_all(self, mechanic_index, store):
        mechanic_index.upsert([
            record(store, "duality-caiatl-flow", [1.0, 0.0, 0.0]),
            record(store, "warlords-ruin-hefnd-flow", [0.0, 1.0, 0.0]),
        ])
        assert len(mechanic_index.list_all()) == 2
        only_ruin = mechanic_index.list_all("Warlord's Ruin")
        assert [vector_id for vector_id, _meta in only_ruin] == ["warlords-ruin-hefnd-flow"]
        assert only_ruin[0][1].collection_name == "Warlord's Ruin"

    def test_delete_by_ids_and_delete_all(self, mechanic_index, store):
        mechanic_index.upsert([
            record(store, "duality-caiatl-flow", [1.0, 0.0, 0.0]),
            record(store, "duality-caiatl-bells", [0.0, 1.0, 0.0]),
        ])
        mechanic_index.delete_by_ids(["duality-caiatl-flow"])
        assert mechanic_index.count() == 1

        mechanic_index.delete_all()
        assert mechanic_index.count() == 0
        assert mechanic_index.query([1.0, 0.0, 0.0]) == []

    def test_client_failure_becomes_provider_error(self):
        class BrokenClient:
            def get_or_create_collection(self, *args, **kwargs):
                raise RuntimeError("disk full")

        index = MechanicIndex(collection_name="broken", client=BrokenClient())
        with pytest.raises(ProviderError):
            index.ensure_index_exists(3)
        with pytest.raises(ProviderError):
            index.query([1.0, 0.0, 0.0])
        with pytest.raises(ProviderError):
            index.count()
