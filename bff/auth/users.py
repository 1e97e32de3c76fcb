from __future__ import annotations

import threading
from datetime import datetime
from typing import Callable, Dict, Optional, Protocol

from bff.auth.models import Identity, Provider, ProviderProfile, utcnow


class UserDirectory(Protocol):
    """User-management collaborator: maps a provider profile to the application identity."""

    async def resolve(self, profile: ProviderProfile) -> Identity:
        ...


def identity_from_profile(profile: ProviderProfile, *, now: Optional[datetime] = None) -> Identity:
    """
    Fallback policy: build an Identity purely from provider fields.

    Used when no user directory is configured or the directory fails during login.
    """
    ts = now or utcnow()
    return Identity(
        id=profile.id,
        email=profile.email,
        display_name=profile.name or profile.email,
        picture_url=profile.picture,
        provider=Provider.GOOGLE,
        created_at=ts,
        updated_at=ts,
    )


class LocalUserDirectory:
    """In-process directory: remembers when each user was first seen so createdAt stays stable."""

    def __init__(self, *, clock: Optional[Callable[[], datetime]] = None):
        self._clock = clock or utcnow
        self._lock = threading.Lock()
        self._first_seen: Dict[str, datetime] = {}

    async def resolve(self, profile: ProviderProfile) -> Identity:
        now = self._clock()
        with self._lock:
            created = self._first_seen.setdefault(profile.id, now)
        identity = identity_from_profile(profile, now=now)
        return Identity(
            id=identity.id,
            email=identity.email,
            display_name=identity.display_name,
            picture_url=identity.picture_url,
            provider=identity.provider,
            created_at=created,
            updated_at=now,
        )
