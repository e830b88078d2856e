from __future__ import annotations

import argparse
import asyncio
import getpass
import sys

from doorpro.domain.access import AuditAction
from doorpro.persistence.db import SessionLocal
from doorpro.services.audit import AuditRecorder
from doorpro.services.auth.credentials import create_admin_user


def _build_parser() -> argparse.ArgumentParser:
    # Bootstrap the first admin; refuses once any admin exists.
    parser = argparse.ArgumentParser(description="Create the initial admin user")
    parser.add_argument("--username", required=True, help="Login name (case-sensitive)")
    parser.add_argument("--email", required=True, help="Admin email address")
    parser.add_argument("--full-name", required=True, help="Display name")
    parser.add_argument(
        "--password",
        default=None,
        help="Password; prompted for when omitted so it stays out of shell history",
    )
    return parser


async def _create_admin(args: argparse.Namespace, password: str) -> int:
    async with SessionLocal() as session:
        identity = await create_admin_user(
            session,
            username=args.username,
            email=args.email,
            password=password,
            full_name=args.full_name,
        )
    # Provisioning is recorded like any other account change.
    await AuditRecorder().write(
        identity.id,
        AuditAction.CREATE,
        "users",
        resource_id=identity.id,
        details={"event": "admin_bootstrap", "actor": "create_admin"},
    )
    print(f"Admin user created: id={identity.id} username={identity.username}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    password = args.password or getpass.getpass("Admin password: ")
    if len(password) < 8:
        print("create_admin failed: password must be at least 8 characters", file=sys.stderr)
        return 1
    try:
        return asyncio.run(_create_admin(args, password))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_admin failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
