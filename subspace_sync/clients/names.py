"""Primary-name resolution used to enrich cached profiles."""

from __future__ import annotations

import logging
from typing import Optional, Protocol

from subspace_sync.config import remote

from .remote import RemoteClient

logger = logging.getLogger(__name__)


class NameResolver(Protocol):
    async def resolve(self, address: str) -> Optional[str]: ...


class RemoteNameResolver:
    """Look up an address's primary name in the name registry process."""

    def __init__(self, client: RemoteClient, registry_id: Optional[str] = None) -> None:
        self._client = client
        self._registry_id = registry_id or remote.NAME_REGISTRY_ID

    async def resolve(self, address: str) -> Optional[str]:
        payload = await self._client.call(
            f"{self._registry_id}/primary-name", body={"address": address}
        )
        if not isinstance(payload, dict):
            return None
        name = payload.get("name")
        if name:
            logger.info("Found primary name for %s: %s", address, name)
        return name or None
