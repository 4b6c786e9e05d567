"""Sessions consumed by the launch pipeline. Authenticating a player is not done here,
the sessions are given by the caller, already resolved, and are never modified.
"""

from datetime import datetime, timezone
from uuid import UUID, uuid5
import platform

from typing import Optional


class Session:
    """An authenticated session of a player, providing its username, UUID and access
    token for the game's command line.
    """

    __slots__ = "username", "uuid", "access_token", "expires_at", "user_type", "xuid", "client_id"

    def __init__(self,
        username: str,
        uuid: str,
        access_token: str, *,
        expires_at: Optional[datetime] = None,
        user_type: str = "msa",
        xuid: str = "",
        client_id: str = ""
    ) -> None:
        self.username = username
        self.uuid = uuid
        self.access_token = access_token
        self.expires_at = expires_at
        self.user_type = user_type
        self.xuid = xuid
        self.client_id = client_id

    @property
    def valid(self) -> bool:
        """True if the access token has not expired, a session without expiry is always
        considered valid.
        """
        if self.expires_at is None:
            return True
        return self.expires_at > datetime.now(timezone.utc)

    def format_token_argument(self, legacy: bool) -> str:
        """Format the token for the game's command line. Legacy versions use the format
        `token:{access_token}:{uuid}` for their session argument, modern versions use
        `{access_token}`.

        :param legacy: True to enable legacy formatting, used by older versions.
        :return: The formatted token.
        """
        return f"token:{self.access_token}:{self.uuid}" if legacy else self.access_token

    def __repr__(self) -> str:
        return f"<Session {self.username} {self.uuid}>"


class OfflineSession(Session):
    """Offline session, this is quite contradictory but it's actually useful to simplify
    the start logic. It provides optional static username and UUID and random when kept
    unspecified.
    """

    __slots__ = tuple()

    def __init__(self, username: Optional[str] = None, uuid: Optional[str] = None) -> None:
        if uuid is not None and len(uuid) == 32:
            # If the UUID is already valid.
            username = uuid[:8] if username is None else username[:16]
        else:
            namespace_hash = UUID("8df5a464-38de-11ec-aa66-3fd636ee2ed7")
            if username is None:
                uuid = uuid5(namespace_hash, platform.node()).hex
                username = uuid[:8]
            else:
                username = username[:16]
                uuid = uuid5(namespace_hash, username).hex
        super().__init__(username, uuid, "", user_type="")

    def format_token_argument(self, legacy: bool) -> str:
        return ""
