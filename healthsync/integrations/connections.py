"""Connection entity, its store contract, and the lifecycle manager.

A Connection is the stored authorization between one user and one provider.
Tokens are only ever held encrypted; ``ConnectionManager.get_access_token``
is the single place they are decrypted.

Status machine::

    active  ──refresh failure / expiry──▶  expired
    expired ──successful refresh───────▶  active
    active | expired ──revoke──────────▶  revoked   (terminal)
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, Mapping
from uuid import UUID, uuid4

from healthsync.integrations.base import OAuthTokens, Provider, ProviderAdapter
from healthsync.integrations.errors import (
    InvalidOperation,
    InvalidState,
    NotFound,
)
from healthsync.integrations.token_cipher import TokenCipher
from healthsync.models.base import utc_now

logger = logging.getLogger("healthsync.integrations.connections")


class ConnectionStatus(str, Enum):
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"

    def __str__(self) -> str:
        return self.value


_ALLOWED_TRANSITIONS: dict[ConnectionStatus, frozenset[ConnectionStatus]] = {
    ConnectionStatus.ACTIVE: frozenset({ConnectionStatus.EXPIRED, ConnectionStatus.REVOKED}),
    ConnectionStatus.EXPIRED: frozenset({ConnectionStatus.ACTIVE, ConnectionStatus.REVOKED}),
    ConnectionStatus.REVOKED: frozenset(),
}


@dataclass
class Connection:
    """One user's authorization with one provider.

    Attributes:
        user_id:          Internal user UUID.
        provider:         Provider the tokens belong to.
        access_token:     Encrypted access token.
        refresh_token:    Encrypted refresh token, if the provider issues one.
        token_expires_at: UTC expiry of the access token (None = no expiry).
        last_synced_at:   UTC completion time of the last successful sync.
        scopes:           Granted OAuth scopes.
        status:           Lifecycle status.
        metadata:         Provider-specific extras (provider user id, ...).
    """

    user_id: UUID
    provider: Provider
    access_token: str
    refresh_token: str | None = None
    token_expires_at: datetime | None = None
    last_synced_at: datetime | None = None
    scopes: set[str] = field(default_factory=set)
    status: ConnectionStatus = ConnectionStatus.ACTIVE
    metadata: dict = field(default_factory=dict)
    id: UUID = field(default_factory=uuid4)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    @property
    def is_active(self) -> bool:
        return self.status is ConnectionStatus.ACTIVE

    def is_token_expired(self, now: datetime | None = None) -> bool:
        if self.token_expires_at is None:
            return False
        return self.token_expires_at <= (now or utc_now())


# ---------------------------------------------------------------------------
# Store contract
# ---------------------------------------------------------------------------


class ConnectionStore(ABC):
    """Persistence for Connection rows.

    Implementations must keep at most one connection per (user_id, provider).
    """

    @abstractmethod
    async def get(self, connection_id: UUID) -> Connection | None: ...

    @abstractmethod
    async def find_by_user_and_provider(
        self, user_id: UUID, provider: Provider
    ) -> Connection | None: ...

    @abstractmethod
    async def find_by_user(self, user_id: UUID) -> list[Connection]: ...

    async def find_active_by_user(self, user_id: UUID) -> list[Connection]:
        return [c for c in await self.find_by_user(user_id) if c.is_active]

    @abstractmethod
    async def upsert(self, connection: Connection) -> Connection: ...

    @abstractmethod
    async def delete(self, connection_id: UUID) -> bool: ...


class InMemoryConnectionStore(ConnectionStore):
    """Dict-backed store for tests and single-process use."""

    def __init__(self) -> None:
        self._rows: dict[UUID, Connection] = {}

    async def get(self, connection_id: UUID) -> Connection | None:
        return self._rows.get(connection_id)

    async def find_by_user_and_provider(
        self, user_id: UUID, provider: Provider
    ) -> Connection | None:
        for row in self._rows.values():
            if row.user_id == user_id and row.provider == provider:
                return row
        return None

    async def find_by_user(self, user_id: UUID) -> list[Connection]:
        return sorted(
            (row for row in self._rows.values() if row.user_id == user_id),
            key=lambda c: c.provider.value,
        )

    async def upsert(self, connection: Connection) -> Connection:
        existing = await self.find_by_user_and_provider(connection.user_id, connection.provider)
        if existing is not None and existing.id != connection.id:
            raise InvalidState(
                f"User {connection.user_id} already has a {connection.provider} connection"
            )
        self._rows[connection.id] = connection
        return connection

    async def delete(self, connection_id: UUID) -> bool:
        return self._rows.pop(connection_id, None) is not None


# ---------------------------------------------------------------------------
# Manager
# ---------------------------------------------------------------------------


class ConnectionManager:
    """Own the Connection lifecycle and keep tokens encrypted at rest.

    Usage::

        manager = ConnectionManager(store, cipher, adapters)
        conn = await manager.connect_with_code(user_id, Provider.FITBIT, code)
        token = manager.get_access_token(conn)
    """

    def __init__(
        self,
        store: ConnectionStore,
        cipher: TokenCipher,
        adapters: Mapping[Provider, ProviderAdapter],
        *,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._store = store
        self._cipher = cipher
        self._adapters = adapters
        self._clock = clock

    @property
    def store(self) -> ConnectionStore:
        return self._store

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    async def get(self, connection_id: UUID) -> Connection:
        connection = await self._store.get(connection_id)
        if connection is None:
            raise NotFound(f"Connection {connection_id} not found")
        return connection

    async def get_for_user(self, user_id: UUID, provider: Provider) -> Connection:
        connection = await self._store.find_by_user_and_provider(user_id, Provider(provider))
        if connection is None:
            raise NotFound(f"No {provider} connection for user {user_id}")
        return connection

    async def list_for_user(self, user_id: UUID) -> list[Connection]:
        return await self._store.find_by_user(user_id)

    async def active_for_user(self, user_id: UUID) -> list[Connection]:
        return await self._store.find_active_by_user(user_id)

    # ------------------------------------------------------------------
    # Create / connect
    # ------------------------------------------------------------------

    async def create(
        self,
        user_id: UUID,
        provider: Provider,
        tokens: OAuthTokens,
        *,
        scopes: set[str] | None = None,
        metadata: dict | None = None,
    ) -> Connection:
        """Store tokens for (user, provider), updating any existing connection.

        Reconnecting a provider reuses the existing row, resets its status to
        active and merges the new metadata over the old.
        """
        provider = Provider(provider)
        now = self._clock()
        encrypted_access = self._cipher.encrypt(tokens.access_token)
        encrypted_refresh = (
            self._cipher.encrypt(tokens.refresh_token) if tokens.refresh_token else None
        )
        granted = set(scopes if scopes is not None else tokens.scope)

        connection = await self._store.find_by_user_and_provider(user_id, provider)
        if connection is None:
            connection = Connection(
                user_id=user_id,
                provider=provider,
                access_token=encrypted_access,
                refresh_token=encrypted_refresh,
                token_expires_at=tokens.expires_at,
                scopes=granted,
                metadata=dict(metadata or {}),
                created_at=now,
                updated_at=now,
            )
            logger.info("Created %s connection for user %s", provider, user_id)
        else:
            connection.access_token = encrypted_access
            connection.refresh_token = encrypted_refresh
            connection.token_expires_at = tokens.expires_at
            connection.scopes = granted
            connection.status = ConnectionStatus.ACTIVE
            connection.metadata = {**connection.metadata, **(metadata or {})}
            connection.updated_at = now
            logger.info("Updated existing %s connection for user %s", provider, user_id)
        return await self._store.upsert(connection)

    async def get_authorization_url(self, provider: Provider, state: str) -> str:
        """Consent URL that starts the connect flow for ``provider``."""
        return await self._adapter(Provider(provider)).get_authorization_url(state)

    async def connect_with_code(
        self, user_id: UUID, provider: Provider, code: str
    ) -> Connection:
        """Exchange an authorization code and store the resulting connection."""
        provider = Provider(provider)
        adapter = self._adapter(provider)
        tokens = await adapter.get_access_token(code)
        profile = await adapter.get_user_profile(tokens.access_token)
        metadata = {
            **tokens.extra,
            **profile.extra,
            "provider_user_id": profile.provider_user_id,
            "display_name": profile.display_name,
        }
        return await self.create(user_id, provider, tokens, metadata=metadata)

    # ------------------------------------------------------------------
    # Token lifecycle
    # ------------------------------------------------------------------

    async def refresh(self, connection_id: UUID) -> Connection:
        """Refresh the access token through the provider adapter.

        On success the new tokens are stored and the status returns to
        active.  On failure the connection is left exactly as it was and the
        adapter's error propagates.

        Raises:
            NotFound:         Unknown connection.
            InvalidState:     The connection is revoked.
            InvalidOperation: No refresh token is stored.
            CryptoError:      The stored refresh token cannot be decrypted.
            ProviderError:    The provider rejected the refresh.
        """
        connection = await self.get(connection_id)
        if connection.status is ConnectionStatus.REVOKED:
            raise InvalidState(f"Connection {connection_id} is revoked")
        if not connection.refresh_token:
            raise InvalidOperation(
                f"{connection.provider} connection {connection_id} has no refresh token"
            )

        refresh_token = self._cipher.decrypt(connection.refresh_token)
        tokens = await self._adapter(connection.provider).refresh_access_token(refresh_token)

        connection.access_token = self._cipher.encrypt(tokens.access_token)
        if tokens.refresh_token:
            connection.refresh_token = self._cipher.encrypt(tokens.refresh_token)
        connection.token_expires_at = tokens.expires_at
        if tokens.scope:
            connection.scopes = set(tokens.scope)
        if connection.status is not ConnectionStatus.ACTIVE:
            self._transition(connection, ConnectionStatus.ACTIVE)
        connection.updated_at = self._clock()
        logger.info("Refreshed %s token for user %s", connection.provider, connection.user_id)
        return await self._store.upsert(connection)

    async def mark_expired(self, connection_id: UUID) -> Connection:
        connection = await self.get(connection_id)
        if connection.status is ConnectionStatus.EXPIRED:
            return connection
        self._transition(connection, ConnectionStatus.EXPIRED)
        connection.updated_at = self._clock()
        logger.warning(
            "Marked %s connection for user %s as expired",
            connection.provider, connection.user_id,
        )
        return await self._store.upsert(connection)

    async def revoke(self, connection_id: UUID) -> Connection:
        """Revoke a connection.  Revoked is terminal; reconnecting goes through ``create``."""
        connection = await self.get(connection_id)
        self._transition(connection, ConnectionStatus.REVOKED)
        connection.updated_at = self._clock()
        logger.info("Revoked %s connection for user %s", connection.provider, connection.user_id)
        return await self._store.upsert(connection)

    async def disconnect(self, connection_id: UUID) -> None:
        connection = await self.get(connection_id)
        await self._store.delete(connection_id)
        logger.info(
            "Disconnected %s for user %s", connection.provider, connection.user_id
        )

    def get_access_token(self, connection: Connection) -> str:
        """Decrypt the stored access token.

        Raises:
            CryptoError: The stored ciphertext is unusable.
        """
        return self._cipher.decrypt(connection.access_token)

    async def update_last_synced(
        self, connection_id: UUID, synced_at: datetime | None = None
    ) -> Connection:
        connection = await self.get(connection_id)
        connection.last_synced_at = synced_at or self._clock()
        connection.updated_at = connection.last_synced_at
        return await self._store.upsert(connection)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _adapter(self, provider: Provider) -> ProviderAdapter:
        try:
            return self._adapters[provider]
        except KeyError:
            raise NotFound(f"No adapter configured for provider '{provider}'") from None

    @staticmethod
    def _transition(connection: Connection, target: ConnectionStatus) -> None:
        if target not in _ALLOWED_TRANSITIONS[connection.status]:
            raise InvalidState(
                f"Illegal connection transition {connection.status} → {target} "
                f"for {connection.provider} connection {connection.id}"
            )
        connection.status = target
