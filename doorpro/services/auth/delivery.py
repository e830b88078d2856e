from __future__ import annotations

import logging
from typing import Awaitable, Callable

from doorpro.domain.access import Identity, TokenKind


logger = logging.getLogger(__name__)

# Receives the raw single-use token; the only place it exists outside the caller's inbox.
TokenDelivery = Callable[[Identity, TokenKind, str], Awaitable[None]]


async def log_only_delivery(identity: Identity, kind: TokenKind, raw_token: str) -> None:
    # Deployments wire a mailer here; the raw token is never logged.
    logger.warning(
        "token_delivery_unconfigured identity_id=%s token_type=%s",
        identity.id,
        kind.value,
    )
