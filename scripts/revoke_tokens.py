from __future__ import annotations

import argparse
import asyncio
import sys

from doorpro.domain.access import AuditAction, TokenKind
from doorpro.services.audit import AuditRecorder
from doorpro.services.auth.tokens import TokenManager


def _build_parser() -> argparse.ArgumentParser:
    # Keep CLI usage minimal to avoid revoking the wrong identity's tokens.
    parser = argparse.ArgumentParser(description="Revoke every live token for an identity")
    parser.add_argument("--identity-id", type=int, required=True, help="Identity whose tokens to revoke")
    parser.add_argument(
        "--token-type",
        choices=[kind.value for kind in TokenKind],
        default=None,
        help="Only revoke tokens of this kind",
    )
    return parser


async def _revoke(identity_id: int, token_type: str | None) -> int:
    # Rows are marked revoked, not deleted, so history stays available for audits.
    count = await TokenManager().revoke_all(identity_id, token_type)
    await AuditRecorder().write(
        identity_id,
        AuditAction.UPDATE,
        "auth_tokens",
        details={"event": "tokens_revoked", "actor": "revoke_tokens", "kind": token_type or "all", "count": count},
    )
    print(f"Revoked {count} tokens for identity {identity_id}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_revoke(args.identity_id, args.token_type))
    except Exception as exc:  # noqa: BLE001 - surface revocation failures clearly
        print(f"revoke_tokens failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
