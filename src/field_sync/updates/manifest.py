from __future__ import annotations

import asyncio
import json
import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from field_sync.core.errors import ManifestError, NetworkError
from field_sync.core.utils import normalize_resource_key
from field_sync.transport.interfaces import Transport, is_transient_status

logger = logging.getLogger(__name__)


class AssetManifest(BaseModel):
    """One deployed version of the cached asset set."""

    model_config = ConfigDict(frozen=True, extra="ignore")

    generation: int = Field(ge=1)
    assets: tuple[str, ...] = ()


class ManifestClient:
    def __init__(self, *, transport: Transport, manifest_path: str, timeout_seconds: float):
        self._transport = transport
        self._key = normalize_resource_key(manifest_path)
        self._timeout = timeout_seconds

    async def fetch_latest(self) -> AssetManifest:
        try:
            response = await asyncio.wait_for(self._transport.send("GET", self._key), timeout=self._timeout)
        except asyncio.TimeoutError as e:
            raise NetworkError(f"Manifest request timed out: {self._key}") from e

        if is_transient_status(response.status):
            raise NetworkError("Transient manifest response status", status=response.status)
        if not response.ok:
            raise ManifestError(f"Manifest endpoint returned status {response.status}")

        try:
            payload = json.loads(response.body.decode("utf-8"))
            return AssetManifest.model_validate(payload)
        except (UnicodeDecodeError, json.JSONDecodeError, ValidationError) as e:
            raise ManifestError(f"Invalid asset manifest: {e}") from e
