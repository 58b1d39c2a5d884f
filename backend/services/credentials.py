"""
Credential provider.

Reads mailbox accounts from the users collection and hands the sync
worker a MailUser with decrypted tokens. Tokens are stored sealed by the
CredentialVault; refreshing them is the auth layer's job, not ours.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument

from backend.core.credential_vault import CredentialVault, DecryptionError, get_vault
from backend.core.database import USERS_COLLECTION
from backend.providers.email.base import AuthProvider

logger = logging.getLogger(__name__)


class UserNotFoundError(Exception):
    """No usable account for the email; the caller must re-authenticate."""

    def __init__(self, email: str, reason: str = "not found"):
        super().__init__(f"User {email} {reason}")
        self.email = email


@dataclass
class MailUser:
    id: Any
    email: str
    provider: AuthProvider
    access_token: str
    refresh_token: Optional[str] = None
    gmail_history_id: Optional[str] = None
    outlook_delta_token: Optional[str] = None
    last_sync_time: Optional[datetime] = None

    @property
    def cursor(self) -> Optional[str]:
        if self.provider == AuthProvider.GOOGLE:
            return self.gmail_history_id
        return self.outlook_delta_token


class CredentialProvider:
    def __init__(self, db, vault: Optional[CredentialVault] = None):
        self.db = db
        self.vault = vault or get_vault()

    @property
    def users(self):
        return self.db[USERS_COLLECTION]

    def _to_user(self, doc: Dict[str, Any]) -> MailUser:
        try:
            access_token, refresh_token = self.vault.open_tokens(doc["credentials"])
        except (KeyError, DecryptionError) as e:
            logger.error(f"Stored credentials for {doc.get('email')} are unusable: {e}")
            raise UserNotFoundError(doc.get("email", ""), "has no usable credentials")

        return MailUser(
            id=doc["_id"],
            email=doc["email"],
            provider=AuthProvider(doc["provider"]),
            access_token=access_token,
            refresh_token=refresh_token,
            gmail_history_id=doc.get("gmail_history_id"),
            outlook_delta_token=doc.get("outlook_delta_token"),
            last_sync_time=doc.get("last_sync_time"),
        )

    async def get_user(self, email: str) -> MailUser:
        """
        Load an account with its tokens and cursors.

        Raises:
            UserNotFoundError: Unknown email or undecryptable tokens
        """
        doc = await self.users.find_one({"email": email.lower()})
        if not doc:
            raise UserNotFoundError(email)
        return self._to_user(doc)

    async def get_user_by_id(self, user_id: str) -> MailUser:
        try:
            object_id = ObjectId(user_id)
        except (InvalidId, TypeError):
            raise UserNotFoundError(str(user_id), "is not a valid account id")

        doc = await self.users.find_one({"_id": object_id})
        if not doc:
            raise UserNotFoundError(str(user_id))
        return self._to_user(doc)

    async def upsert_user(
        self,
        email: str,
        provider: AuthProvider,
        access_token: str,
        refresh_token: Optional[str] = None,
    ) -> MailUser:
        """Create or refresh an account after a successful sign-in."""
        now = datetime.now(timezone.utc)
        doc = await self.users.find_one_and_update(
            {"email": email.lower()},
            {
                "$set": {
                    "provider": AuthProvider(provider).value,
                    "credentials": self.vault.seal_tokens(access_token, refresh_token),
                    "updated_at": now,
                },
                "$setOnInsert": {"email": email.lower(), "created_at": now},
            },
            upsert=True,
            return_document=ReturnDocument.AFTER,
        )
        logger.info(f"Stored credentials for {email} ({provider})")
        return self._to_user(doc)
