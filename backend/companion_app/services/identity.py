from __future__ import annotations

from typing import Optional, Protocol

from fastapi.requests import HTTPConnection


USER_ID_HEADER = "x-user-id"
ANONYMOUS_SCOPE = "anonymous"


class IdentityProvider(Protocol):
    async def resolve_user_id(self) -> Optional[str]: ...


class StaticIdentity:
    """Identity already resolved upstream; ``None`` means unauthenticated."""

    def __init__(self, user_id: Optional[str]) -> None:
        self._user_id = (user_id or "").strip() or None

    @property
    def user_id(self) -> Optional[str]:
        return self._user_id

    @property
    def scope(self) -> str:
        return self._user_id or ANONYMOUS_SCOPE

    async def resolve_user_id(self) -> Optional[str]:
        return self._user_id


def identity_from_request(connection: HTTPConnection) -> StaticIdentity:
    # The auth proxy in front of this service sets the header for signed-in users.
    return StaticIdentity(connection.headers.get(USER_ID_HEADER))
