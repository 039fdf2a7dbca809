#!/usr/bin/env python3
"""
Ingest mechanic source documents into the Raid Scholar vector index.

Usage
-----
Ingest every collection file in the data directory:
    python scripts/ingest.py

Ingest specific files:
    python scripts/ingest.py data/mechanics/duality.json data/mechanics/equilibrium.json

Wipe the index first (use after renaming or removing mechanics, since
upserts never delete stale vectors):
    python scripts/ingest.py --wipe

Each file is one raid or dungeon (see backend/models.py for the schema).
Vector ids are mechanic ids, so re-ingesting a file overwrites its vectors
in place. A file that fails to load or embed is reported and skipped; the
script exits non-zero if any file failed.
"""

import argparse
import glob
import os
import sys

# Make sure project root is on the path so we can import backend/
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from pydantic import ValidationError

from backend import config
from backend.embeddings import EmbeddingProvider
from backend.errors import ScholarError
from backend.ingest import ingest_entries, iter_collection_entries, load_collection_file
from backend.vector_store import MechanicIndex


def _print_progress(processed: int, total: int) -> None:
    print(f"    embedded {processed}/{total}", flush=True)


def ingest_file(path: str, embedder: EmbeddingProvider, index: MechanicIndex) -> int:
    collection = load_collection_file(path)
    entries = list(iter_collection_entries(collection))
    print(f"  {collection.name} ({collection.type}): {len(collection.encounters)} encounters, {len(entries)} mechanics")
    return ingest_entries(entries, embedder, index, on_progress=_print_progress)


def main() -> None:
    parser = argparse.ArgumentParser(
        description="Ingest mechanic source documents into the vector index.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "files",
        nargs="*",
        help=f"Collection JSON files to ingest (default: every *.json in {config.DATA_DIR}).",
    )
    parser.add_argument(
        "--wipe",
        action="store_true",
        help="Delete every vector in the index before ingesting.",
    )
    args = parser.parse_args()

    files = args.files or sorted(glob.glob(os.path.join(config.DATA_DIR, "*.json")))
    if not files:
        print(f"No collection files found in {config.DATA_DIR}.")
        sys.exit(1)

    embedder = EmbeddingProvider()
    index = MechanicIndex(config.DB_DIR, config.CHROMA_COLLECTION)
    index.ensure_index_exists(embedder.dimension)

    if args.wipe:
        print(f"Wiping index '{config.CHROMA_COLLECTION}' …")
        index.delete_all()

    total = 0
    failed = []
    for path in files:
        print(f"{os.path.basename(path)} …")
        try:
            total += ingest_file(path, embedder, index)
        except (OSError, ValueError, ValidationError, ScholarError) as e:
            print(f"  FAILED: {e}")
            failed.append(path)

    print(f"\nIngested {total} mechanics from {len(files) - len(failed)}/{len(files)} file(s). "
          f"Index now has {index.count()} vectors.")
    if failed:
        print("Failed files:")
        for path in failed:
            print(f"  - {path}")
        sys.exit(1)


if __name__ == "__main__":
    main()
