# RAG (Retrieval-Augmented Generation) core for Raid Scholar.
# Holds the in-memory MechanicStore, the keyword query interpreter, the
# retrieval engine (semantic search + store fallback + position/flow boosts)
# and the context assembler that feeds the answer generator.

import logging
import os
import time
from typing import Dict, Iterable, List, Optional, Tuple

from pydantic import ValidationError

from backend import config
from backend.errors import RetrievalError
from backend.ingest import load_collection_file, iter_collection_entries
from backend.models import (
    Collection,
    CollectionRef,
    Encounter,
    Mechanic,
    MechanicEntry,
    MetadataProjection,
    PositionSpec,
    QueryIntent,
    SearchFilter,
    SearchResult,
    StoredProjection,
    VectorMatch,
    VectorMetadata,
)

logger = logging.getLogger(__name__)

# Score adjustments applied during retrieval. Both boosts can stack up to
# MAX_SCORE.
POSITION_BOOST = 0.8   # mechanic sits in the encounter the query points at
FLOW_BOOST = 0.3       # mechanic describes the overall encounter flow
FALLBACK_SCORE = 0.5   # neutral score for direct store lookups
MAX_SCORE = 1.0

# Over-fetch from the index so position filtering and flow bucketing still
# leave enough candidates to fill top_k.
FILTERED_TOPK_MULTIPLIER = 4
UNFILTERED_TOPK_MULTIPLIER = 2

FLOW_KEYWORDS = ("flow", "strategy", "progression", "overall encounter")

EMPTY_CONTEXT = "No relevant mechanics found."


# ─────────────────────────────────────────
# MECHANIC STORE
# ─────────────────────────────────────────

class MechanicStore:
    """
    Every known mechanic keyed by id, with its encounter and collection.

    Loaded once from data_dir on first use and then grown by register() as
    new mechanics are ingested. Nothing is ever evicted; the corpus is a few
    hundred mechanics.

    The `loaded` flag is not a lock. Two concurrent first requests may both
    run the load; that is harmless because register() is a last-write-wins
    upsert keyed by mechanic id.
    """

    def __init__(self, data_dir: str = config.DATA_DIR):
        self.data_dir = data_dir
        self.loaded = False
        self._entries: Dict[str, MechanicEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def register(self, mechanic: Mechanic, encounter: Encounter, collection: Collection) -> None:
        self._entries[mechanic.id] = MechanicEntry(mechanic, encounter, collection)

    def get(self, mechanic_id: str) -> Optional[MechanicEntry]:
        return self._entries.get(mechanic_id)

    def entries(self) -> List[MechanicEntry]:
        return list(self._entries.values())

    def entries_for_collection(self, collection_name: str) -> List[MechanicEntry]:
        return [e for e in self._entries.values() if e.collection.name == collection_name]

    def ensure_loaded(self) -> None:
        """
        Populate the store from data_dir/*.json the first time it is called.

        A malformed file is logged and skipped so the rest of the corpus still
        loads. If the directory itself can't be read the store stays unloaded
        and the next call tries again; retrieval keeps working off vector
        metadata in the meantime.
        """
        if self.loaded:
            return

        try:
            fnames = sorted(f for f in os.listdir(self.data_dir) if f.endswith(".json"))
        except OSError as e:
            logger.error(f"Error loading mechanic store from {self.data_dir}: {e}")
            return

        for fname in fnames:
            fpath = os.path.join(self.data_dir, fname)
            try:
                collection = load_collection_file(fpath)
            except (OSError, ValueError, ValidationError) as e:
                logger.error(f"Error loading {fname}: {e}")
                continue
            for entry in iter_collection_entries(collection):
                self.register(*entry)

        self.loaded = True
        logger.info(f"Loaded {len(self)} mechanics into store")


# ─────────────────────────────────────────
# QUERY INTERPRETER
# ─────────────────────────────────────────

# Known raids/dungeons: (lowercase alias, canonical name). Checked in order
# with a plain substring test, first hit wins.
COLLECTION_ALIASES: List[Tuple[str, str]] = [
    ("warlord's ruin",    "Warlord's Ruin"),
    ("warlords ruin",     "Warlord's Ruin"),
    ("duality",           "Duality"),
    ("vesper's host",     "Vesper's Host"),
    ("vespers host",      "Vesper's Host"),
    ("sundered doctrine", "Sundered Doctrine"),
    ("equilibrium",       "Equilibrium"),
]

# Encounter position phrases in priority order: final before first/second/
# third, boss-qualified before encounter-qualified. First hit wins; queries
# naming two positions only get the first one.
#
# "Nth boss" carries no order number; it is resolved against the boss-type
# encounters of the collection. "Nth encounter" assumes order == N.
POSITION_PHRASES: List[Tuple[Tuple[str, ...], PositionSpec]] = [
    (("final boss", "last boss"),           PositionSpec(position="final", is_boss_query=True)),
    (("final encounter", "last encounter"), PositionSpec(position="final", is_boss_query=False)),
    (("first boss", "1st boss"),            PositionSpec(position="first", is_boss_query=True)),
    (("first encounter", "1st encounter"),  PositionSpec(position="first", order_number=1, is_boss_query=False)),
    (("second boss", "2nd boss"),           PositionSpec(position="second", is_boss_query=True)),
    (("second encounter", "2nd encounter"), PositionSpec(position="second", order_number=2, is_boss_query=False)),
    (("third boss", "3rd boss"),            PositionSpec(position="third", is_boss_query=True)),
    (("third encounter", "3rd encounter"),  PositionSpec(position="third", order_number=3, is_boss_query=False)),
]

# Literal phrases that also switch on max-order resolution.
FINAL_BOSS_PHRASES = ("final boss", "last boss", "final encounter")

BOSS_RANK = {"first": 1, "second": 2, "third": 3}


def extract_collection_name(query: str) -> Optional[str]:
    """Canonical raid/dungeon name mentioned in the query, or None."""
    query_lower = query.lower()
    for alias, canonical in COLLECTION_ALIASES:
        if alias in query_lower:
            return canonical
    return None


def detect_encounter_position(query: str) -> Optional[PositionSpec]:
    """Which encounter the query points at (first/second/third/final), or None."""
    query_lower = query.lower()
    for phrases, spec in POSITION_PHRASES:
        if any(phrase in query_lower for phrase in phrases):
            return spec.model_copy()
    return None


def is_final_boss_query(query: str) -> bool:
    query_lower = query.lower()
    return any(phrase in query_lower for phrase in FINAL_BOSS_PHRASES)


def interpret_query(query: str) -> QueryIntent:
    return QueryIntent(
        collection_name=extract_collection_name(query),
        position=detect_encounter_position(query),
    )


def is_flow_mechanic(mechanic_name: str) -> bool:
    name_lower = mechanic_name.lower()
    return any(keyword in name_lower for keyword in FLOW_KEYWORDS)


# ─────────────────────────────────────────
# ENCOUNTER POSITION RESOLUTION
# ─────────────────────────────────────────

def _max_order(pairs: Iterable[Tuple[Optional[int], str]], boss_only: bool) -> Optional[int]:
    """Highest encounter order among (order, encounter_type) pairs."""
    orders = [
        order for order, encounter_type in pairs
        if order is not None and (not boss_only or encounter_type == "boss")
    ]
    return max(orders) if orders else None


def _nth_boss_order(entries: Iterable[MechanicEntry], n: int) -> Optional[int]:
    """Order of the n-th boss encounter, or None with fewer than n bosses."""
    boss_orders: Dict[str, int] = {}
    for entry in entries:
        encounter = entry.encounter
        if encounter.type == "boss" and encounter.order is not None:
            boss_orders[encounter.id] = encounter.order
    if len(boss_orders) < n:
        return None
    return sorted(boss_orders.values())[n - 1]


def resolve_target_order(
    store: MechanicStore,
    collection_name: Optional[str],
    position: Optional[PositionSpec],
    final_query: bool = False,
) -> Optional[int]:
    """
    Encounter order the query is really about, looked up in the store.

    Only resolved when the search is scoped to one collection: orders are
    per-collection, so "final boss" across all raids means nothing here.
    """
    if not collection_name or position is None:
        return None

    entries = store.entries_for_collection(collection_name)
    boss_only = bool(position.is_boss_query)

    if position.position == "final" or final_query:
        return _max_order(((e.encounter.order, e.encounter.type) for e in entries), boss_only)
    if position.is_boss_query:
        return _nth_boss_order(entries, BOSS_RANK[position.position])
    return position.order_number


# ─────────────────────────────────────────
# RETRIEVAL ENGINE
# ─────────────────────────────────────────

def _boost(score: float, amount: float) -> float:
    return min(MAX_SCORE, score + amount)


def _clamp(score: float) -> float:
    return max(0.0, min(MAX_SCORE, score))


def index_filter(search_filter: SearchFilter) -> dict:
    """
    SearchFilter → equality filter over index metadata keys. Encounter order
    is never part of it: position filtering happens after retrieval so the
    index can still rank the whole collection.
    """
    return {
        "collectionName": search_filter.collection_name,
        "encounterType": search_filter.encounter_type,
        "mechanicType": search_filter.mechanic_type,
        "difficulty": search_filter.difficulty,
        "contestModeSpecific": True if search_filter.contest_mode_only else None,
    }


class MechanicRetriever:
    """
    Query → ranked SearchResults.

    Flow mechanics always come first, whatever their score; inside each
    bucket results are ordered by score. When the query names an encounter
    position and the search is scoped to a collection, mechanics from other
    encounters are dropped and matching ones are boosted.
    """

    def __init__(self, store: MechanicStore, embedder, index, default_top_k: int = config.DEFAULT_TOP_K):
        self.store = store
        self.embedder = embedder
        self.index = index
        self.default_top_k = default_top_k

    def retrieve(
        self,
        query: str,
        search_filter: Optional[SearchFilter] = None,
        top_k: Optional[int] = None,
    ) -> List[SearchResult]:
        limit = self.default_top_k if top_k is None else top_k
        if limit < 1:
            raise ValueError(f"top_k must be at least 1, got {limit}")
        search_filter = search_filter or SearchFilter()
        collection_name = search_filter.collection_name

        self.store.ensure_loaded()

        position = interpret_query(query).position
        final_query = is_final_boss_query(query)
        final_style = final_query or (position is not None and position.position == "final")
        boss_only = bool(position and position.is_boss_query)

        target_order = resolve_target_order(self.store, collection_name, position, final_query)

        multiplier = FILTERED_TOPK_MULTIPLIER if collection_name else UNFILTERED_TOPK_MULTIPLIER
        t0 = time.time()
        try:
            vector = self.embedder.embed(query)
            matches = self.index.query(vector, top_k=limit * multiplier, filters=index_filter(search_filter))
        except Exception as e:
            logger.error(f"Error retrieving relevant mechanics: {e}")
            raise RetrievalError() from e
        logger.info(f"[TIMING] embed+search={time.time() - t0:.2f}s matches={len(matches)}")

        if not matches and collection_name:
            logger.info(f"No semantic results for '{collection_name}', falling back to direct store lookup")
            matches = self._store_candidates(collection_name)
            if final_style and target_order is None:
                target_order = _max_order(
                    ((m.metadata.encounter_order, m.metadata.encounter_type) for m in matches),
                    boss_only,
                )
        elif final_style and target_order is None:
            target_order = _max_order((self._order_and_type(m) for m in matches), boss_only)

        if target_order is not None:
            logger.info(f"Target encounter order: {target_order}")

        flow_results: List[SearchResult] = []
        other_results: List[SearchResult] = []

        for match in matches:
            result = self._resolve(match)
            order = result.encounter.order
            if order is None:
                order = match.metadata.encounter_order

            if target_order is not None:
                if order == target_order:
                    result.score = _boost(result.score, POSITION_BOOST)
                elif order is not None:
                    continue  # another encounter of the collection

            if is_flow_mechanic(result.mechanic.name):
                result.score = _boost(result.score, FLOW_BOOST)
                flow_results.append(result)
            else:
                other_results.append(result)

        flow_results.sort(key=lambda r: r.score, reverse=True)
        other_results.sort(key=lambda r: r.score, reverse=True)

        return (flow_results + other_results)[:limit]

    def _store_candidates(self, collection_name: str) -> List[VectorMatch]:
        return [
            VectorMatch(
                id=entry.mechanic.id,
                score=FALLBACK_SCORE,
                metadata=VectorMetadata.from_entry(entry),
            )
            for entry in self.store.entries_for_collection(collection_name)
        ]

    def _order_and_type(self, match: VectorMatch) -> Tuple[Optional[int], str]:
        entry = self.store.get(match.metadata.mechanic_id)
        if entry is None:
            return match.metadata.encounter_order, match.metadata.encounter_type
        order = entry.encounter.order
        if order is None:
            order = match.metadata.encounter_order
        return order, entry.encounter.type

    def _resolve(self, match: VectorMatch) -> SearchResult:
        """Full data from the store when we have it, else the metadata projection."""
        entry = self.store.get(match.metadata.mechanic_id)
        if entry is not None:
            data = StoredProjection(
                mechanic=entry.mechanic,
                encounter=entry.encounter,
                collection=CollectionRef.from_collection(entry.collection),
            )
        else:
            data = MetadataProjection.from_metadata(match.metadata)
        return SearchResult(id=match.id, score=_clamp(match.score), data=data)


# ─────────────────────────────────────────
# CONTEXT ASSEMBLY
# ─────────────────────────────────────────

def _format_result(result: SearchResult, flow: bool) -> List[str]:
    mechanic, encounter, collection = result.mechanic, result.encounter, result.collection
    marker = " ⭐ FLOW" if flow else ""

    lines = [
        "\n---\n",
        f"Dungeon/Raid: {collection.name} ({collection.type})",
        f"Encounter: {encounter.name}",
        f"Mechanic: {mechanic.name}{marker}",
        f"Type: {mechanic.type}",
        f"Description: {mechanic.description}",
    ]
    if mechanic.solution:
        lines.append(f"Solution: {mechanic.solution}")
    if mechanic.tips:
        lines.append(f"Tips: {'; '.join(mechanic.tips)}")
    if mechanic.difficulty:
        lines.append(f"Difficulty: {mechanic.difficulty}")
    if mechanic.contest_mode_specific:
        notes = mechanic.contest_mode_notes or "This mechanic is particularly important in contest mode."
        lines.append(f"Contest Mode: {notes}")
    lines.append(f"Similarity Score: {result.score * 100:.1f}%")
    return lines


def build_context(results: List[SearchResult]) -> str:
    """
    Render ranked results as the context block for the generator.

    Flow mechanics get their own section up top. Text is never truncated;
    callers own the model's input budget.
    """
    if not results:
        return EMPTY_CONTEXT

    flow = [r for r in results if is_flow_mechanic(r.mechanic.name)]
    other = [r for r in results if not is_flow_mechanic(r.mechanic.name)]

    parts = [
        "Relevant Destiny 2 mechanics from historical raids and dungeons:\n",
        "⚠️ MOST IMPORTANT: Encounter Flow mechanics are listed first - "
        "these contain the overall encounter flow and strategy.\n",
    ]
    if flow:
        parts.append("\n=== ENCOUNTER FLOW (MOST IMPORTANT) ===\n")
        for result in flow:
            parts.extend(_format_result(result, flow=True))
    if other:
        parts.append("\n=== OTHER MECHANICS ===\n")
        for result in other:
            parts.extend(_format_result(result, flow=False))

    return "\n".join(parts)


# ─────────────────────────────────────────
# QUESTION ANSWERING
# ─────────────────────────────────────────

def scope_filter_to_query(query: str, search_filter: Optional[SearchFilter] = None) -> SearchFilter:
    """Fill in the collection filter from the query text when the caller left it empty."""
    search_filter = search_filter.model_copy() if search_filter else SearchFilter()
    if not search_filter.collection_name:
        search_filter.collection_name = extract_collection_name(query)
    return search_filter


def retrieve_context(
    retriever: MechanicRetriever,
    query: str,
    search_filter: Optional[SearchFilter] = None,
    top_k: int = config.CHAT_TOP_K,
) -> Tuple[List[SearchResult], str]:
    results = retriever.retrieve(query, scope_filter_to_query(query, search_filter), top_k=top_k)
    return results, build_context(results)


def ask(retriever: MechanicRetriever, generator, question: str, search_filter=None, chat_history=None) -> str:
    """Retrieve context for the question and return Claude's complete answer."""
    _results, context = retrieve_context(retriever, question, search_filter)
    return generator.generate(question, context, chat_history)
