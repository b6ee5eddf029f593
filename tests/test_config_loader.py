import os
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from pydantic import ValidationError

from field_sync.config import ConfigLoadRequest, YamlConfigLoader
from field_sync.core.models import StrategyKind


class YamlConfigLoaderTests(unittest.IsolatedAsyncioTestCase):
    async def _load(self, tmp: str, yaml_text: str, env: dict[str, str]):
        yaml_path = Path(tmp) / "config" / "config.yaml"
        yaml_path.parent.mkdir(parents=True, exist_ok=True)
        yaml_path.write_text(yaml_text, encoding="utf-8")
        request = ConfigLoadRequest(yaml_path=str(yaml_path), env_prefix="FIELD_SYNC_TEST__", dotenv_path=None)
        with mock.patch.dict(os.environ, env):
            return await YamlConfigLoader().load(request)

    async def test_omitted_sections_use_defaults(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            config = await self._load(tmp, "app:\n  name: crew-tablet\n", {})

            self.assertEqual(config.app.name, "crew-tablet")
            self.assertEqual(config.sync.max_attempts, 5)
            self.assertEqual(config.cache.max_entries, 350)
            self.assertEqual(config.cache.max_storage_fraction, 0.8)
            self.assertEqual(dict(config.logging.levels), {})
            self.assertEqual([c.name for c in config.cache.resource_classes], ["photos", "static", "session", "jobs"])
            self.assertTrue((Path(tmp) / "store").is_dir())
            self.assertTrue((Path(tmp) / "logs").is_dir())

    async def test_environment_overrides_yaml(self) -> None:
        yaml_text = "sync:\n  max_attempts: 3\nnetwork:\n  base_url: http://yaml.invalid\n"
        env = {
            "FIELD_SYNC_TEST__SYNC__MAX_ATTEMPTS": "8",
            "FIELD_SYNC_TEST__STORAGE__FSYNC": "false",
        }
        with tempfile.TemporaryDirectory() as tmp:
            config = await self._load(tmp, yaml_text, env)

            self.assertEqual(config.sync.max_attempts, 8)
            self.assertFalse(config.storage.fsync)
            self.assertEqual(config.network.base_url, "http://yaml.invalid")

    async def test_resource_classes_from_yaml(self) -> None:
        yaml_text = (
            "cache:\n"
            "  resource_classes:\n"
            "    - name: forms\n"
            "      pattern: '^/api/forms'\n"
            "      strategy: StaleWhileRevalidate\n"
            "      ttl_seconds: 60\n"
        )
        with tempfile.TemporaryDirectory() as tmp:
            config = await self._load(tmp, yaml_text, {})

            [forms] = config.cache.resource_classes
            self.assertIs(forms.strategy, StrategyKind.STALE_WHILE_REVALIDATE)
            self.assertEqual(forms.ttl_seconds, 60)

    async def test_structured_environment_override(self) -> None:
        env = {
            "FIELD_SYNC_TEST__CACHE__RESOURCE_CLASSES": "[{name: forms, pattern: '^/api/forms', strategy: CacheFirst}]",
            "FIELD_SYNC_TEST__NETWORK__BASE_URL": "https://crm.example:8443",
            "FIELD_SYNC_TEST__LOGGING__LEVELS": "{field_sync.sync: DEBUG}",
        }
        with tempfile.TemporaryDirectory() as tmp:
            config = await self._load(tmp, "{}\n", env)

            self.assertEqual([c.name for c in config.cache.resource_classes], ["forms"])
            self.assertEqual(config.network.base_url, "https://crm.example:8443")
            self.assertEqual(dict(config.logging.levels), {"field_sync.sync": "DEBUG"})

    async def test_unknown_keys_are_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ValidationError):
                await self._load(tmp, "sync:\n  retries: 3\n", {})

    async def test_non_mapping_yaml_is_rejected(self) -> None:
        with tempfile.TemporaryDirectory() as tmp:
            with self.assertRaises(ValueError):
                await self._load(tmp, "- just\n- a list\n", {})


if __name__ == "__main__":
    unittest.main()
