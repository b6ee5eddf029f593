"""Deployed asset generation tracking."""

from field_sync.updates.manager import UpdateManager
from field_sync.updates.manifest import AssetManifest, ManifestClient

__all__ = ["AssetManifest", "ManifestClient", "UpdateManager"]
