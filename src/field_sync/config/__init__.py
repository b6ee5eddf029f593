from field_sync.config.loader import YamlConfigLoader
from field_sync.config.models import AppConfig, ConfigLoadRequest

__all__ = ["AppConfig", "ConfigLoadRequest", "YamlConfigLoader"]
