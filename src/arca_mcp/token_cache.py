"""
WSAA ticket cache backed by the account record.

Tokens live on the persisted AccountConfig, so they survive restarts. All
writes go through ``TokenCache.set``. ``lock`` hands out one asyncio.Lock per
account so a process never runs two logins for the same account at once,
which would trip WSAA's "ticket already exists" fault.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone

from arca_mcp.api.models import CachedToken, TokenStatus
from arca_mcp.errors import ValidationError
from arca_mcp.store import Store

logger = logging.getLogger(__name__)


class TokenCache:
    def __init__(self, store: Store):
        self.store = store
        self._locks: dict[int, asyncio.Lock] = {}

    def lock(self, account_id: int) -> asyncio.Lock:
        """Per-account refresh guard."""
        if account_id not in self._locks:
            self._locks[account_id] = asyncio.Lock()
        return self._locks[account_id]

    def get(self, account_id: int) -> CachedToken | None:
        account = self.store.get_account(account_id)
        if (
            account is None
            or not account.token
            or not account.sign
            or account.token_expiration is None
        ):
            return None
        expiration = account.token_expiration
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)
        return CachedToken(token=account.token, sign=account.sign, expiration=expiration)

    @staticmethod
    def is_valid(entry: CachedToken | None, now: datetime | None = None) -> bool:
        """A token is usable strictly before its expiration."""
        if entry is None:
            return False
        now = now or datetime.now(timezone.utc)
        return now < entry.expiration

    def set(
        self,
        account_id: int,
        token: str,
        sign: str,
        expiration: datetime,
    ) -> CachedToken:
        account = self.store.get_account(account_id)
        if account is None:
            raise ValidationError(f"No ARCA configuration for account {account_id}")
        if expiration.tzinfo is None:
            expiration = expiration.replace(tzinfo=timezone.utc)

        account.token = token
        account.sign = sign
        account.token_expiration = expiration
        self.store.save_account(account)
        logger.info(
            "Stored WSAA ticket for account %s, expires %s",
            account_id, expiration.isoformat(),
        )
        return CachedToken(token=token, sign=sign, expiration=expiration)

    def status(self, account_id: int, now: datetime | None = None) -> TokenStatus:
        entry = self.get(account_id)
        return TokenStatus(
            has_token=entry is not None,
            valid=self.is_valid(entry, now),
            expiration=entry.expiration if entry else None,
        )
