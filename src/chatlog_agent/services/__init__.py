"""Service layer helpers (settings persistence)."""

from .settings import SecretVault, Settings, SettingsStore, coerce_setting

__all__ = ["SecretVault", "Settings", "SettingsStore", "coerce_setting"]
