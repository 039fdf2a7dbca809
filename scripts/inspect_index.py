#!/usr/bin/env python3
"""
List what is in the Raid Scholar vector index.

    python scripts/inspect_index.py
    python scripts/inspect_index.py --collection "Duality"

Mechanics are grouped by raid/dungeon, then by encounter in encounter order.
"""

import argparse
import os
import sys
from collections import defaultdict

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from backend import config
from backend.vector_store import MechanicIndex


def group_by_encounter(items):
    """(id, VectorMetadata) pairs → {collection: {(order, encounter): [mechanic names]}}"""
    grouped = defaultdict(lambda: defaultdict(list))
    for _vector_id, meta in items:
        key = (meta.encounter_order, meta.encounter_name, meta.encounter_type)
        grouped[f"{meta.collection_name} ({meta.collection_type})"][key].append(meta.mechanic_name)
    return grouped


def _order_key(key):
    order, name, _type = key
    return (order is None, order or 0, name)


def main() -> None:
    parser = argparse.ArgumentParser(description="List mechanics stored in the vector index.")
    parser.add_argument("--collection", help="Only show this raid/dungeon (exact name).")
    args = parser.parse_args()

    index = MechanicIndex(config.DB_DIR, config.CHROMA_COLLECTION)
    items = index.list_all(args.collection)
    if not items:
        print("Index is empty." if not args.collection else f"No mechanics indexed for '{args.collection}'.")
        return

    grouped = group_by_encounter(items)
    for collection in sorted(grouped):
        print(f"\n{collection}")
        for key in sorted(grouped[collection], key=_order_key):
            order, name, encounter_type = key
            label = f"#{order}" if order is not None else "#?"
            print(f"  {label} {name} [{encounter_type}]")
            for mechanic_name in sorted(grouped[collection][key]):
                print(f"      - {mechanic_name}")

    print(f"\n{len(items)} mechanics across {len(grouped)} collection(s).")


if __name__ == "__main__":
    main()
