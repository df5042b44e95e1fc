#!/usr/bin/env python3
"""One-shot purge of dead refresh sessions and reset tokens.

For deployments that run cleanup from cron instead of the app's background task.
"""
from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


async def purge() -> dict:
    from sessionguard.service.runtime import get_runtime

    runtime = get_runtime()
    try:
        return await runtime.auth.cleanup_expired()
    finally:
        await runtime.close()


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__)
    parser.parse_args(argv)
    summary = asyncio.run(purge())
    print(json.dumps(summary, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
