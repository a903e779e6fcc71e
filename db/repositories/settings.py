"""Digiforma settings repository — singleton row with the encrypted API token.

The bearer token is stored Fernet-encrypted. The Fernet key is derived from
DIGIFORMA_ENCRYPTION_KEY (any passphrase) via SHA-256.
"""
import base64
import hashlib
import logging
import os
from datetime import datetime, timezone
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import DigiformaSettings

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://app.digiforma.com/api/v1/graphql"
SYNC_FREQUENCIES = ("daily", "weekly", "monthly")


def _fernet() -> Fernet:
    secret = os.environ.get("DIGIFORMA_ENCRYPTION_KEY")
    if not secret:
        raise RuntimeError(
            "DIGIFORMA_ENCRYPTION_KEY environment variable is not set. "
            "It is required to store or read the Digiforma API token."
        )
    key = base64.urlsafe_b64encode(hashlib.sha256(secret.encode("utf-8")).digest())
    return Fernet(key)


def encrypt_token(token: str) -> str:
    return _fernet().encrypt(token.encode("utf-8")).decode("ascii")


def decrypt_token(encrypted: str) -> str:
    try:
        return _fernet().decrypt(encrypted.encode("ascii")).decode("utf-8")
    except InvalidToken as exc:
        raise RuntimeError(
            "Stored Digiforma token cannot be decrypted; "
            "DIGIFORMA_ENCRYPTION_KEY has probably changed."
        ) from exc


async def get_settings(session: AsyncSession) -> DigiformaSettings:
    """Return the settings row, creating a disabled, unconfigured one on first use."""
    result = await session.execute(
        select(DigiformaSettings).order_by(DigiformaSettings.created_at).limit(1)
    )
    settings = result.scalar_one_or_none()
    if settings is not None:
        return settings

    now = datetime.now(timezone.utc)
    settings = DigiformaSettings(
        bearer_token="",
        api_url=os.environ.get("DIGIFORMA_API_URL", DEFAULT_API_URL),
        is_enabled=False,
        auto_sync_enabled=False,
        sync_frequency="weekly",
        last_test_date=None,
        last_test_success=None,
        last_test_message=None,
        last_sync_date=None,
        created_at=now,
        updated_at=now,
    )
    session.add(settings)
    await session.flush()
    logger.info("Created default Digiforma settings row %s", settings.id)
    return settings


async def set_bearer_token(
    session: AsyncSession, settings: DigiformaSettings, token: str
) -> DigiformaSettings:
    settings.bearer_token = encrypt_token(token) if token else ""
    await session.flush()
    return settings


def get_decrypted_token(settings: DigiformaSettings) -> Optional[str]:
    if not settings.is_configured():
        return None
    return decrypt_token(settings.bearer_token)


async def update_config(
    session: AsyncSession,
    settings: DigiformaSettings,
    is_enabled: Optional[bool] = None,
    api_url: Optional[str] = None,
    auto_sync_enabled: Optional[bool] = None,
    sync_frequency: Optional[str] = None,
) -> DigiformaSettings:
    """Change any subset of the non-secret settings."""
    if sync_frequency is not None and sync_frequency not in SYNC_FREQUENCIES:
        raise ValueError(f"sync_frequency must be one of {SYNC_FREQUENCIES}")
    if is_enabled is not None:
        settings.is_enabled = is_enabled
    if api_url is not None:
        settings.api_url = api_url
    if auto_sync_enabled is not None:
        settings.auto_sync_enabled = auto_sync_enabled
    if sync_frequency is not None:
        settings.sync_frequency = sync_frequency
    await session.flush()
    return settings


async def update_test_results(
    session: AsyncSession, settings: DigiformaSettings, success: bool, message: str
) -> DigiformaSettings:
    settings.last_test_date = datetime.now(timezone.utc)
    settings.last_test_success = success
    settings.last_test_message = message
    await session.flush()
    return settings


async def update_last_sync(session: AsyncSession, settings: DigiformaSettings) -> DigiformaSettings:
    settings.last_sync_date = datetime.now(timezone.utc)
    await session.flush()
    return settings
