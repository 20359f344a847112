"""Service layer helpers (settings persistence, secrets)."""

from .settings import SecretVault, SessionConfig, Settings, SettingsStore, redact_secret

__all__ = [
    "SecretVault",
    "SessionConfig",
    "Settings",
    "SettingsStore",
    "redact_secret",
]
