#!/usr/bin/env python3
"""Replace the rule catalogue with the default required-field rules.

Usage:
    python scripts/seed_default_rules.py
"""
from __future__ import annotations

import sys
from pathlib import Path

# Ensure the project root is importable
sys.path.insert(0, str(Path(__file__).resolve().parents[1]))

from feedaudit.config import configure_logging  # noqa: E402
from feedaudit.default_rules import seed_default_rules  # noqa: E402
from feedaudit.store import STORE  # noqa: E402


def main() -> None:
    configure_logging()
    rules = seed_default_rules(STORE)
    print(f"{len(rules)} default rules seeded")
    for rule in rules:
        print(f"  {rule['id']}  [{rule['criticality']}] {rule['name']}")


if __name__ == "__main__":
    main()
