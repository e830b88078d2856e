from __future__ import annotations

import argparse
import asyncio
import sys

from doorpro.core.logging import configure_logging
from doorpro.services.auth.tokens import TokenManager


def _build_parser() -> argparse.ArgumentParser:
    # Single sweep pass for deployments that schedule cleanup with cron.
    return argparse.ArgumentParser(description="Delete expired, non-revoked auth tokens")


async def _sweep() -> int:
    deleted = await TokenManager().sweep()
    print(f"Deleted {deleted} expired tokens")
    return 0


def main() -> int:
    _build_parser().parse_args()
    configure_logging()
    try:
        return asyncio.run(_sweep())
    except Exception as exc:  # noqa: BLE001 - surface sweep failures clearly
        print(f"sweep_tokens failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
