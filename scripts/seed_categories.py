#!/usr/bin/env python3
"""
Category seeding script for initializing the category reference table.

Loads categories from a JSON export (default: categories_seed.json) and
upserts them into the categories table, or fetches the live list from the
gateway with --fetch.

Schema of the seed file:
    {"items": [{"category_id": 2, "parent_category_id": 0, "category_name": "Food"}, ...]}

A bare list of category objects is accepted too. Entries with a non-numeric
category_id or a blank category_name are skipped with an error line.
"""

import asyncio
import json
import sys
from pathlib import Path
from typing import Any

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from aliprice.db.store import ProductStore
from aliprice.ingest.catalog_client import CatalogClient
from aliprice.ingest.normalizer import CategoryRecord, to_optional_int

DEFAULT_SEED_FILE = Path(__file__).parent / "categories_seed.json"


def parse_seed(data: Any) -> tuple[list[CategoryRecord], list[str]]:
    """
    Validate seed entries.

    Returns:
        (records, error messages); duplicate ids keep the last entry
    """
    items = data.get("items", []) if isinstance(data, dict) else data
    if not isinstance(items, list):
        return [], ["'items' must be a list"]

    records: dict[int, CategoryRecord] = {}
    errors: list[str] = []
    for idx, item in enumerate(items):
        if not isinstance(item, dict):
            errors.append(f"Category {idx}: not an object")
            continue
        raw_id = item.get("category_id")
        category_id = to_optional_int(raw_id) if str(raw_id or "").strip().isdigit() else None
        name = str(item.get("category_name") or "").strip()
        if category_id is None:
            errors.append(f"Category {idx}: non-numeric category_id {raw_id!r}")
            continue
        if not name:
            errors.append(f"Category {idx}: blank category_name")
            continue
        records[category_id] = CategoryRecord(
            category_id=category_id,
            category_name=name,
            parent_category_id=to_optional_int(item.get("parent_category_id")) or None,
        )
    return list(records.values()), errors


async def seed_categories(seed_file: Path = DEFAULT_SEED_FILE):
    """Seed the categories table from a JSON file."""
    try:
        data = json.loads(seed_file.read_text(encoding="utf-8"))
    except FileNotFoundError:
        print(f"Error: {seed_file} not found")
        return
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON in {seed_file}: {e}")
        return

    records, errors = parse_seed(data)
    for error in errors:
        print(f"  [ERROR] {error}")
    if not records:
        print("No valid categories found in seed file")
        return

    print(f"Found {len(records)} categories to seed...")
    async with ProductStore(create_schema=True) as store:
        written = await store.upsert_categories(records)

    print("\nSeeding complete!")
    print(f"  - Upserted: {written}")
    if errors:
        print(f"  - Errors: {len(errors)}")


async def fetch_categories():
    """Fetch the live category list from the gateway and store it."""
    async with CatalogClient() as client:
        records = await client.fetch_categories()
    if not records:
        print("Gateway returned no categories")
        return
    async with ProductStore(create_schema=True) as store:
        written = await store.upsert_categories(records)
    print(f"Stored {written} categories from the gateway")


async def list_categories():
    """List stored categories, children indented under their parent."""
    async with ProductStore(create_schema=True) as store:
        categories = await store.list_categories()
    if not categories:
        print("No categories found.")
        return

    print(f"\nStored Categories ({len(categories)} total):\n")
    children: dict[int, list[CategoryRecord]] = {}
    for cat in categories:
        if not cat.is_top_level:
            children.setdefault(cat.parent_category_id, []).append(cat)
    for cat in categories:
        if cat.is_top_level:
            print(f"  {cat.category_id}  {cat.category_name}")
            for child in children.get(cat.category_id, []):
                print(f"      {child.category_id}  {child.category_name}")


if __name__ == "__main__":
    args = sys.argv[1:]
    if "--help" in args:
        print("Usage: python seed_categories.py [OPTIONS] [SEED_FILE]")
        print("")
        print("Options:")
        print("  --list      List all stored categories")
        print("  --fetch     Fetch the category list from the gateway")
        print("  --help      Show this help message")
    elif "--list" in args:
        asyncio.run(list_categories())
    elif "--fetch" in args:
        asyncio.run(fetch_categories())
    else:
        paths = [a for a in args if not a.startswith("--")]
        asyncio.run(seed_categories(Path(paths[0]) if paths else DEFAULT_SEED_FILE))
