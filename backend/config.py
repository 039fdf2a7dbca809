# Runtime configuration for Raid Scholar.
# Values come from the environment (optionally a .env file) with local defaults.

import os
from dotenv import load_dotenv

load_dotenv()

# Paths
BASE_DIR = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
DATA_DIR = os.getenv("MECHANICS_DATA_DIR", os.path.join(BASE_DIR, "data", "mechanics"))
DB_DIR = os.getenv("CHROMA_DB_DIR", os.path.join(BASE_DIR, "db"))
CHROMA_COLLECTION = os.getenv("CHROMA_COLLECTION", "destiny_mechanics")

# Anthropic
ANTHROPIC_API_KEY = os.getenv("ANTHROPIC_API_KEY")
CHAT_MODEL = os.getenv("CHAT_MODEL", "claude-sonnet-4-5-20250929")
CHAT_MAX_TOKENS = int(os.getenv("CHAT_MAX_TOKENS", "2048"))

# Embeddings: free local model, same family the index was built with.
# bge-small outputs 384-dimensional vectors; change both together.
EMBED_MODEL_NAME = os.getenv("EMBED_MODEL_NAME", "BAAI/bge-small-en-v1.5")
EMBEDDING_DIMENSION = int(os.getenv("EMBEDDING_DIMENSION", "384"))
EMBED_BATCH_SIZE = int(os.getenv("EMBED_BATCH_SIZE", "100"))
EMBED_BATCH_DELAY = float(os.getenv("EMBED_BATCH_DELAY", "0.1"))  # seconds between batches

# Retrieval
DEFAULT_TOP_K = int(os.getenv("DEFAULT_TOP_K", "10"))
CHAT_TOP_K = int(os.getenv("CHAT_TOP_K", "5"))
SEARCH_CACHE_TTL = float(os.getenv("SEARCH_CACHE_TTL", "300"))  # 5 minutes

# Rate limits: (max requests, window seconds) per route
RATE_LIMIT_WINDOW = float(os.getenv("RATE_LIMIT_WINDOW", "60"))
RATE_LIMITS = {
    "search": int(os.getenv("RATE_LIMIT_SEARCH", "20")),
    "chat": int(os.getenv("RATE_LIMIT_CHAT", "10")),
    "ingest": int(os.getenv("RATE_LIMIT_INGEST", "5")),
    "embed": int(os.getenv("RATE_LIMIT_EMBED", "50")),
}

# HTTP
# ALLOWED_ORIGINS is a comma-separated list of origins (no trailing slashes).
_default_origins = "http://localhost:3000,http://localhost:3001"
ALLOWED_ORIGINS = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", _default_origins).split(",") if o.strip()]

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
