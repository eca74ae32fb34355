#!/usr/bin/env python3
"""Compile a deal condition and optionally evaluate it against a game fact."""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from dealtrigger.conditions import build_parser_from_config
from dealtrigger.errors import ParseError
from dealtrigger.evaluator import evaluate_with_details
from dealtrigger.models import FactRecord


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Compile a deal condition string")
    parser.add_argument("condition", help="Condition text, e.g. 'home win and 10+ strikeouts'")
    parser.add_argument(
        "--fact",
        default=None,
        help="Path to a JSON game fact (camelCase or snake_case keys) to evaluate against",
    )
    parser.add_argument(
        "--json",
        action="store_true",
        help="Output JSON instead of text",
    )
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    parser = build_parser_from_config()
    try:
        condition = parser.compile(args.condition)
    except ParseError as exc:
        print(f"[ERROR] {exc}", file=sys.stderr)
        return 2

    result: dict[str, object] = {
        "normalized": condition.normalized,
        "signature": condition.signature,
        "predicate": condition.predicate.to_dict(),
    }
    if args.fact:
        fact = FactRecord.model_validate(json.loads(Path(args.fact).read_text(encoding="utf-8")))
        passed, missing = evaluate_with_details(condition.predicate, fact)
        result["game_id"] = fact.game_id
        result["condition_met"] = passed
        result["missing_stats"] = missing

    if args.json:
        print(json.dumps(result, ensure_ascii=False, indent=2))
        return 0

    print(f"normalized : {result['normalized']}")
    print(f"signature  : {result['signature']}")
    print(f"canonical  : {condition.predicate.canonical()}")
    if "condition_met" in result:
        print(f"game_id    : {result['game_id']}")
        print(f"met        : {result['condition_met']}")
        if result["missing_stats"]:
            print(f"missing    : {', '.join(result['missing_stats'])}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
