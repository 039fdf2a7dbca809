# FastAPI application entry point for the Raid Scholar backend.
# Defines API routes for searching historical mechanics, chatting with the
# RAG pipeline and ingesting new mechanics into the index.

from fastapi import Body, Depends, FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field, ValidationError
from typing import List, Optional
import json
import logging
import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend import config
from backend.errors import RateLimitExceeded, ScholarError
from backend.ingest import ingest_entries
from backend.models import (
    CamelModel,
    ChatMessage,
    Collection,
    Encounter,
    Mechanic,
    MechanicEntry,
    SearchFilter,
)
from backend.rag import ask, retrieve_context
from backend.services import Services, get_services
from backend.utils import RateLimitResult, chat_cache_key, get_client_identifier, search_cache_key

logging.basicConfig(
    level=config.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="Raid Scholar API")

# Allow the frontend to talk to the backend.
# Add deployed frontend URLs to ALLOWED_ORIGINS when running remotely.
app.add_middleware(
    CORSMiddleware,
    allow_origins=config.ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ─────────────────────────────────────────
# REQUEST MODELS
# ─────────────────────────────────────────

class SearchRequest(BaseModel):
    query: str = Field(min_length=1, max_length=500)
    filters: Optional[SearchFilter] = None
    limit: Optional[int] = Field(default=None, ge=1, le=50)

class ChatRequest(BaseModel):
    messages: List[ChatMessage] = []
    query: str = Field(min_length=1, max_length=1000)
    filters: Optional[SearchFilter] = None

class AskRequest(BaseModel):
    question: str = Field(min_length=1, max_length=1000)
    messages: List[ChatMessage] = []
    filters: Optional[SearchFilter] = None

class IngestItem(CamelModel):
    mechanic: Mechanic
    encounter: Encounter
    dungeon_raid: Collection

class IngestRequest(BaseModel):
    mechanics: List[IngestItem]

class EmbedRequest(BaseModel):
    text: str = Field(min_length=1, max_length=8000)


# ─────────────────────────────────────────
# ERROR HANDLERS
# ─────────────────────────────────────────

@app.exception_handler(RateLimitExceeded)
async def rate_limit_handler(request: Request, exc: RateLimitExceeded):
    return JSONResponse(
        status_code=429,
        content={"error": "Rate limit exceeded", "resetAt": int(exc.reset_at * 1000)},
    )


@app.exception_handler(ValidationError)
async def validation_error_handler(request: Request, exc: ValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": json.loads(exc.json())},
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=400,
        content={"error": "Invalid request", "details": jsonable_encoder(exc.errors())},
    )


@app.exception_handler(ScholarError)
async def scholar_error_handler(request: Request, exc: ScholarError):
    logger.error(f"{request.url.path} failed: {exc}")
    return JSONResponse(
        status_code=500,
        content={"error": "Internal server error", "message": str(exc)},
    )


def _check_rate_limit(services: Services, request: Request, scope: str) -> RateLimitResult:
    """
    Per-route gate. Runs before the body is validated, so malformed requests
    still count against the client's budget.
    """
    client_id = get_client_identifier(request.headers)
    return services.rate_limiter.enforce(
        f"{scope}:{client_id}",
        config.RATE_LIMITS[scope],
        config.RATE_LIMIT_WINDOW,
    )


def _dump_results(results) -> list:
    # The stored encounter carries every sibling mechanic; clients only need the encounter itself
    return [
        r.model_dump(by_alias=True, exclude_none=True, exclude={"data": {"encounter": {"mechanics"}}})
        for r in results
    ]


# ─────────────────────────────────────────
# ROUTES
# ─────────────────────────────────────────

@app.get("/health")
def health(services: Services = Depends(get_services)):
    services.store.ensure_loaded()
    return {"status": "ok", "mechanics": len(services.store)}


@app.post("/search")
def search(request: Request, payload: dict = Body(...), services: Services = Depends(get_services)):
    """
    Semantic search over historical mechanics. Results are cached for
    SEARCH_CACHE_TTL seconds per (query, filters, limit).
    """
    rate_limit = _check_rate_limit(services, request, "search")
    search_request = SearchRequest.model_validate(payload)

    limit = config.DEFAULT_TOP_K if search_request.limit is None else search_request.limit
    filters = search_request.filters.model_dump(by_alias=True, exclude_none=True) if search_request.filters else None
    cache_key = search_cache_key(search_request.query, filters, limit)
    cached = services.cache.get(cache_key)
    if cached is not None:
        return {"results": cached, "cached": True, "remaining": rate_limit.remaining}

    results = services.retriever.retrieve(
        search_request.query,
        search_request.filters,
        top_k=limit,
    )
    dumped = _dump_results(results)
    services.cache.set(cache_key, dumped, ttl=config.SEARCH_CACHE_TTL)

    return {"results": dumped, "cached": False, "remaining": rate_limit.remaining}


@app.post("/chat")
def chat(request: Request, payload: dict = Body(...), services: Services = Depends(get_services)):
    """
    Streaming RAG endpoint. Returns Server-Sent Events with text chunks.

    Retrieval happens before the stream opens, so retrieval failures are a
    plain 500. Generation failures after the first byte arrive as a final
    "[Error: ...]" chunk.
    """
    _check_rate_limit(services, request, "chat")
    chat_request = ChatRequest.model_validate(payload)

    _results, context = retrieve_context(services.retriever, chat_request.query, chat_request.filters)

    def generate():
        try:
            for chunk in services.generator.stream(chat_request.query, context, chat_request.messages):
                yield f"data: {json.dumps(chunk)}\n\n"
        except ScholarError as e:
            logger.error(f"Streaming error: {e}")
            error_chunk = f"\n\n[Error: {e}]"
            yield f"data: {json.dumps(error_chunk)}\n\n"

    return StreamingResponse(
        generate(),
        media_type="text/event-stream",
        headers={"Cache-Control": "no-cache", "Connection": "keep-alive"},
    )


@app.post("/ask")
def ask_question(request: Request, payload: dict = Body(...), services: Services = Depends(get_services)):
    """Non-streaming variant of /chat. Complete answers are cached like searches."""
    rate_limit = _check_rate_limit(services, request, "chat")
    ask_request = AskRequest.model_validate(payload)

    history = [m.model_dump() for m in ask_request.messages]
    filters = ask_request.filters.model_dump(by_alias=True, exclude_none=True) if ask_request.filters else None
    cache_key = chat_cache_key(ask_request.question, [history, filters])
    cached = services.cache.get(cache_key)
    if cached is not None:
        return {"answer": cached, "cached": True, "remaining": rate_limit.remaining}

    answer = ask(
        services.retriever,
        services.generator,
        ask_request.question,
        search_filter=ask_request.filters,
        chat_history=ask_request.messages,
    )
    services.cache.set(cache_key, answer, ttl=config.SEARCH_CACHE_TTL)
    return {"answer": answer, "cached": False, "remaining": rate_limit.remaining}


@app.post("/ingest")
def ingest(request: Request, payload: dict = Body(...), services: Services = Depends(get_services)):
    """Embed, index and register new mechanics. Clears the response cache."""
    rate_limit = _check_rate_limit(services, request, "ingest")
    ingest_request = IngestRequest.model_validate(payload)

    services.store.ensure_loaded()
    services.index.ensure_index_exists(services.embedder.dimension)

    entries = [MechanicEntry(i.mechanic, i.encounter, i.dungeon_raid) for i in ingest_request.mechanics]
    ingested = ingest_entries(
        entries,
        services.embedder,
        services.index,
        services.store,
        on_progress=lambda done, total: logger.info(f"Embedding progress: {done}/{total}"),
    )
    services.cache.clear()

    return {"success": True, "ingested": ingested, "remaining": rate_limit.remaining}


@app.post("/embed")
def embed(request: Request, payload: dict = Body(...), services: Services = Depends(get_services)):
    rate_limit = _check_rate_limit(services, request, "embed")
    embed_request = EmbedRequest.model_validate(payload)

    embedding = services.embedder.embed(embed_request.text)
    return {"embedding": embedding, "dimension": len(embedding), "remaining": rate_limit.remaining}


# ─────────────────────────────────────────
# RUN
# ─────────────────────────────────────────

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("backend.main:app", host="0.0.0.0", port=8001, reload=True)
