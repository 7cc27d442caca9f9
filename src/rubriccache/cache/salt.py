"""Per-deployment security salt mixed into every cache key.

The salt lives in durable settings storage, never in the cache itself, and
cannot be derived from any other state. Rotating it orphans every cache
entry at once without enumerating keys.
"""

from __future__ import annotations

import logging
import secrets

from sqlalchemy.ext.asyncio import AsyncSession

from rubriccache.persistence.repositories import CacheSettingRepository
from rubriccache.persistence.tables import SECURITY_SALT_KEY

logger = logging.getLogger(__name__)

SALT_BYTES = 32


def generate_salt() -> str:
    return secrets.token_urlsafe(SALT_BYTES)


class SaltProvider:
    """Reads, lazily creates, and rotates the security salt."""

    def __init__(self, session: AsyncSession):
        self.settings_repo = CacheSettingRepository(session)

    async def get_salt(self) -> str:
        salt = await self.settings_repo.get(SECURITY_SALT_KEY)
        if salt:
            return salt
        if salt is None:
            created = generate_salt()
            salt = await self.settings_repo.put_if_absent(SECURITY_SALT_KEY, created)
            if salt == created:
                logger.info("Created new cache security salt")
            if salt:
                return salt
        salt = generate_salt()
        await self.settings_repo.put(SECURITY_SALT_KEY, salt)
        logger.warning("Stored cache security salt was blank; replaced it")
        return salt

    async def rotate_salt(self) -> str:
        """Replace the salt. Administrative action; orphans the whole cache."""
        salt = generate_salt()
        await self.settings_repo.put(SECURITY_SALT_KEY, salt)
        logger.warning("Cache security salt rotated; all cache entries orphaned")
        return salt
