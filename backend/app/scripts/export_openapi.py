from __future__ import annotations

import argparse
import json
from pathlib import Path

from backend.app.main import create_app

DEFAULT_OUTPUT = Path("openapi") / "shortless.json"


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Write the Shortless API schema as JSON.")
    parser.add_argument(
        "--output",
        type=Path,
        default=DEFAULT_OUTPUT,
        help=f"Schema destination (default: {DEFAULT_OUTPUT}).",
    )
    return parser


def main(argv: list[str] | None = None) -> Path:
    args = build_parser().parse_args(argv)
    output: Path = args.output
    output.parent.mkdir(parents=True, exist_ok=True)
    schema = create_app().openapi()
    output.write_text(json.dumps(schema, indent=2, sort_keys=True), encoding="utf-8")
    print(f"Wrote {len(schema.get('paths', {}))} paths to {output}")
    return output


if __name__ == "__main__":
    main()
