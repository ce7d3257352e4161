"""Credential store backed by the process settings."""

from __future__ import annotations

from copy_trading.config import Settings
from copy_trading.types import Credentials


class SettingsCredentialStore:
    """Serves the configured Binance key pair for a single user.

    At-rest encryption and key rotation belong to the deployment; this store
    only hands out a fresh ``Credentials`` object per call.
    """

    def __init__(self, settings: Settings) -> None:
        self._settings = settings

    async def get_active_credentials(self, user_id: str) -> Credentials | None:
        if user_id != self._settings.credential_user_id or not self._settings.has_credentials:
            return None
        return Credentials(
            api_key=self._settings.binance_api_key,
            api_secret=self._settings.binance_api_secret,
        )
