#!/usr/bin/env python3
"""
Write the OpenAPI schema of the render API to a JSON file.

Usage:
    python scripts/generate_openapi.py [--out <path>]

Defaults to docs/openapi.json relative to the repository root.
"""

from __future__ import annotations

import argparse
import json
from pathlib import Path

from render_service.render_controller import app

ROOT = Path(__file__).resolve().parents[1]
DEFAULT_OUT = ROOT / "docs" / "openapi.json"


def main() -> None:
    parser = argparse.ArgumentParser(description="Generate OpenAPI JSON from the render API")
    parser.add_argument("--out", type=Path, default=DEFAULT_OUT, help="Output file path for openapi.json")
    args = parser.parse_args()

    schema = app.openapi()

    out_path: Path = args.out
    out_path.parent.mkdir(parents=True, exist_ok=True)

    # Sorted keys keep diffs stable
    with out_path.open("w", encoding="utf-8") as f:
        json.dump(schema, f, ensure_ascii=False, indent=2, sort_keys=True)
        f.write("\n")


if __name__ == "__main__":
    main()
