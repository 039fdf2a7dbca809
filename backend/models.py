"""
Data models for Raid Scholar.

Source documents (data/mechanics/*.json) hold one Collection each (a raid or
dungeon) with its Encounters and their Mechanics nested inside. The JSON uses
camelCase keys; every model here accepts camelCase or snake_case and dumps
camelCase, so the same shapes travel through files, the API and the vector
index metadata.

SearchResult carries its mechanic data as a tagged union:

    StoredProjection   (kind="full")      full objects from the MechanicStore
    MetadataProjection (kind="metadata")  rebuilt from the flattened vector
                                          metadata when the store has not
                                          loaded yet (description is a
                                          placeholder)
"""

from typing import Annotated, List, Literal, NamedTuple, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

CollectionType = Literal["raid", "dungeon"]
EncounterType = Literal["opening", "encounter", "boss", "secret", "traversal"]
MechanicType = Literal["puzzle", "boss", "traversal", "add-clear", "symbol", "plate", "other"]
Difficulty = Literal["easy", "medium", "hard", "expert"]
Position = Literal["first", "second", "third", "final"]

MISSING_DESCRIPTION = "[Description not available - server needs to reload mechanic data]"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ─────────────────────────────────────────
# SOURCE DOCUMENT SCHEMA
# ─────────────────────────────────────────

class Mechanic(CamelModel):
    id: str
    name: str
    description: str
    type: MechanicType
    solution: Optional[str] = None
    tips: Optional[List[str]] = None
    related_mechanics: Optional[List[str]] = None
    difficulty: Optional[Difficulty] = None
    contest_mode_specific: Optional[bool] = None
    contest_mode_notes: Optional[str] = None


class Encounter(CamelModel):
    id: str
    name: str
    description: str
    type: EncounterType
    mechanics: List[Mechanic]
    order: Optional[int] = None  # position inside the collection; not guaranteed unique


class Collection(CamelModel):
    id: str
    name: str
    type: CollectionType
    description: str
    encounters: List[Encounter]
    release_date: Optional[str] = None
    contest_mode_date: Optional[str] = None


class CollectionRef(CamelModel):
    """The trimmed collection projection attached to search results."""
    id: str
    name: str
    type: CollectionType

    @classmethod
    def from_collection(cls, collection: Collection) -> "CollectionRef":
        return cls(id=collection.id, name=collection.name, type=collection.type)


class MechanicEntry(NamedTuple):
    mechanic: Mechanic
    encounter: Encounter
    collection: Collection


# ─────────────────────────────────────────
# VECTOR INDEX RECORDS
# ─────────────────────────────────────────

class VectorMetadata(CamelModel):
    """
    Flattened {mechanic, encounter, collection} projection stored next to each
    vector. Enough to rebuild a partial result without the MechanicStore.
    """
    mechanic_id: str
    mechanic_name: str
    encounter_id: str
    encounter_name: str
    encounter_order: Optional[int] = None
    collection_id: str
    collection_name: str
    collection_type: CollectionType
    mechanic_type: str
    encounter_type: str
    difficulty: Optional[str] = None
    contest_mode_specific: Optional[bool] = None

    @classmethod
    def from_entry(cls, entry: MechanicEntry) -> "VectorMetadata":
        mechanic, encounter, collection = entry
        return cls(
            mechanic_id=mechanic.id,
            mechanic_name=mechanic.name,
            encounter_id=encounter.id,
            encounter_name=encounter.name,
            encounter_order=encounter.order,
            collection_id=collection.id,
            collection_name=collection.name,
            collection_type=collection.type,
            mechanic_type=mechanic.type,
            encounter_type=encounter.type,
            difficulty=mechanic.difficulty,
            contest_mode_specific=mechanic.contest_mode_specific,
        )

    def to_index_metadata(self) -> dict:
        # Chroma metadata values cannot be None
        return self.model_dump(by_alias=True, exclude_none=True)


class VectorRecord(BaseModel):
    id: str
    values: List[float]
    metadata: VectorMetadata


class VectorMatch(BaseModel):
    id: str
    score: float
    metadata: VectorMetadata


# ─────────────────────────────────────────
# QUERY / RESULT TYPES
# ─────────────────────────────────────────

class SearchFilter(CamelModel):
    collection_name: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("collectionName", "dungeonRaidName", "collection_name"),
    )
    encounter_type: Optional[str] = None
    mechanic_type: Optional[str] = None
    difficulty: Optional[str] = None
    contest_mode_only: Optional[bool] = None


class PositionSpec(BaseModel):
    position: Position
    order_number: Optional[int] = None
    is_boss_query: Optional[bool] = None


class QueryIntent(BaseModel):
    collection_name: Optional[str] = None
    position: Optional[PositionSpec] = None


class StoredProjection(CamelModel):
    kind: Literal["full"] = "full"
    mechanic: Mechanic
    encounter: Encounter
    collection: CollectionRef


class MetadataProjection(CamelModel):
    kind: Literal["metadata"] = "metadata"
    mechanic: Mechanic
    encounter: Encounter
    collection: CollectionRef

    @classmethod
    def from_metadata(cls, metadata: VectorMetadata) -> "MetadataProjection":
        return cls(
            mechanic=Mechanic(
                id=metadata.mechanic_id,
                name=metadata.mechanic_name,
                description=MISSING_DESCRIPTION,
                type=metadata.mechanic_type,
                difficulty=metadata.difficulty,
                contest_mode_specific=metadata.contest_mode_specific,
            ),
            encounter=Encounter(
                id=metadata.encounter_id,
                name=metadata.encounter_name,
                description="",
                type=metadata.encounter_type,
                mechanics=[],
                order=metadata.encounter_order,
            ),
            collection=CollectionRef(
                id=metadata.collection_id,
                name=metadata.collection_name,
                type=metadata.collection_type,
            ),
        )


MechanicProjection = Annotated[
    Union[StoredProjection, MetadataProjection],
    Field(discriminator="kind"),
]


class SearchResult(CamelModel):
    id: str
    score: float
    data: MechanicProjection

    @property
    def mechanic(self) -> Mechanic:
        return self.data.mechanic

    @property
    def encounter(self) -> Encounter:
        return self.data.encounter

    @property
    def collection(self) -> CollectionRef:
        return self.data.collection

    @property
    def is_partial(self) -> bool:
        return self.data.kind == "metadata"


class ChatMessage(BaseModel):
    role: Literal["user", "assistant"]
    content: str
