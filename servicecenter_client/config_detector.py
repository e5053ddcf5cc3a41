# =============================================================================
# Service Center Client -- Config Change Detection
# =============================================================================

from __future__ import annotations

import hashlib

from .registry import SubscriptionRegistry
from .types import ConfigChangeEvent, ConfigEventType, ConfigInfo, SubscriptionKey


def content_md5(config: ConfigInfo) -> str:
    """Hash announced by the server, or the MD5 of the content."""
    if config.content_md5:
        return config.content_md5
    return hashlib.md5(config.content.encode("utf-8")).hexdigest()


def detect_update(previous_md5: str | None, config: ConfigInfo) -> ConfigChangeEvent | None:
    """``CONFIG_UPDATED`` when the hash moved, ``None`` for a repeat push."""
    md5 = content_md5(config)
    if previous_md5 is not None and previous_md5 == md5:
        return None
    return ConfigChangeEvent(
        ConfigEventType.CONFIG_UPDATED,
        config.namespace_id,
        config.group_name,
        config.config_data_id,
        config=config,
        content_md5=md5,
    )


def detect_delete(namespace_id: str, group_name: str, config_data_id: str) -> ConfigChangeEvent:
    """Removal is always reported. The caller clears the stored hash."""
    return ConfigChangeEvent(
        ConfigEventType.CONFIG_DELETED,
        namespace_id,
        group_name,
        config_data_id,
    )


class ConfigChangeDetector:
    """Per-key MD5 dedup on top of the subscription registry.

    Pushes for keys that are not (or no longer) watched are ignored.
    """

    def __init__(self, registry: SubscriptionRegistry) -> None:
        self._registry = registry

    def on_push(self, key: SubscriptionKey, config: ConfigInfo) -> ConfigChangeEvent | None:
        watched, previous = self._registry.swap_config_md5(key, content_md5(config))
        if not watched:
            return None
        return detect_update(previous, config)

    def on_delete(self, key: SubscriptionKey) -> ConfigChangeEvent | None:
        watched, _ = self._registry.swap_config_md5(key, None)
        if not watched:
            return None
        return detect_delete(key.namespace_id, key.group_name, key.name)
