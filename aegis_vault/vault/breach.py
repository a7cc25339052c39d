"""
Breach-count annotation via a k-anonymity password range API.

Only the first five hex characters of the secret's SHA-1 digest leave the
process. The annotation is informational: any network error or unexpected
response counts as zero breaches (fail open) and never affects the engine.
"""
import asyncio
import hashlib
import logging
from typing import TYPE_CHECKING, Optional

import aiohttp

if TYPE_CHECKING:
    from .credential_vault import CredentialVault

logger = logging.getLogger("aegis.vault")

PWNED_RANGE_URL = "https://api.pwnedpasswords.com/range/{prefix}"


class BreachChecker:
    """Looks up how often a secret appears in known breach corpora."""

    def __init__(
        self,
        session: Optional[aiohttp.ClientSession] = None,
        url: str = PWNED_RANGE_URL,
        timeout: float = 10.0,
    ):
        self._session = session
        self._url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout)

    async def _fetch_range(self, session: aiohttp.ClientSession, prefix: str) -> Optional[str]:
        async with session.get(self._url.format(prefix=prefix), timeout=self._timeout) as resp:
            if resp.status != 200:
                logger.warning("Breach range API returned status %s", resp.status)
                return None
            return await resp.text()

    async def count(self, secret: str) -> int:
        """Return the breach count for ``secret``; 0 when unknown or unreachable."""
        if not secret:
            return 0
        digest = hashlib.sha1(secret.encode("utf-8")).hexdigest().upper()
        prefix, suffix = digest[:5], digest[5:]
        try:
            if self._session is not None:
                body = await self._fetch_range(self._session, prefix)
            else:
                async with aiohttp.ClientSession() as session:
                    body = await self._fetch_range(session, prefix)
        except (aiohttp.ClientError, asyncio.TimeoutError) as err:
            logger.warning("Breach range lookup failed: %s", type(err).__name__)
            return 0
        if body is None:
            return 0
        for line in body.splitlines():
            returned, _, count = line.partition(":")
            if returned.strip().upper() == suffix:
                try:
                    return int(count.strip())
                except ValueError:
                    return 0
        return 0


async def annotate_breaches(
    vault: "CredentialVault",
    checker: BreachChecker,
    record_ids: Optional[list[str]] = None,
) -> dict[str, int]:
    """Refresh ``pwned_count`` for active records (or the given ids).

    Returns:
        Mapping of record id to the stored breach count.
    """
    views = vault.list_records()
    if record_ids is not None:
        wanted = set(record_ids)
        views = [view for view in views if view.id in wanted]
    counts: dict[str, int] = {}
    for view in views:
        if not view.password:
            continue
        counts[view.id] = await checker.count(view.password)
        vault.set_breach_count(view.id, counts[view.id])
    logger.info("Breach annotation refreshed for %d record(s)", len(counts))
    return counts
