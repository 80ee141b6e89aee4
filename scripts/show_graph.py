#!/usr/bin/env python3
"""
Show a Project's Feature Graph

Loads a project's features from the database and prints the layered
dependency graph, the critical path and per-status counts.

Usage:
    python scripts/show_graph.py <project_id> [--mermaid]

Requires DATABASE_URL (or database.url in featuregraph.yaml).
"""

import asyncio
import sys
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from dotenv import load_dotenv
load_dotenv()


async def show_graph(project_id: str, mermaid: bool = False) -> bool:
    """Print the graph for a project."""
    from featuregraph.config import Config
    from featuregraph.database import FeatureDatabase
    from featuregraph.errors import FeatureGraphError
    from featuregraph.graph import GraphStore, critical_path, to_ascii, to_mermaid

    config = Config.load()
    if not config.database_url:
        print("ERROR: DATABASE_URL is not set")
        return False

    db = FeatureDatabase(config.database_url)
    await db.connect(min_size=1, max_size=2)
    try:
        features = await db.load_features(project_id)
        if not features:
            print(f"No features found for project: {project_id}")
            return False

        print(f"Project: {project_id}")
        print(f"Features: {len(features)}")
        counts = await db.count_by_status(project_id)
        for status, count in sorted(counts.items()):
            print(f"  {status}: {count}")

        try:
            store = GraphStore(features)
            snapshot = store.snapshot()
            print()
            print(to_mermaid(snapshot) if mermaid else to_ascii(snapshot))

            path = critical_path(snapshot)
            print(f"\nCritical path ({len(path)} features):")
            print("  " + " -> ".join(path))
        except FeatureGraphError as e:
            print(f"ERROR: Stored graph is invalid: {e}")
            return False

        return True
    finally:
        await db.disconnect()


if __name__ == "__main__":
    if len(sys.argv) < 2:
        print("Usage: python scripts/show_graph.py <project_id> [--mermaid]")
        sys.exit(1)

    success = asyncio.run(show_graph(sys.argv[1], mermaid='--mermaid' in sys.argv[2:]))
    sys.exit(0 if success else 1)
