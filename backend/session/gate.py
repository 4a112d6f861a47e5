"""
Session Gate: withholds the catalogue until the password is verified.

The check is a plain equality against the configured secret, with no
hashing and no rate limiting. It is a demo-grade gate, not authentication.
"""

import hmac
import logging
from typing import Callable

from protocol.models import FileMeta, ManifestPayload
from session.models import SessionConfig

logger = logging.getLogger(__name__)


class SessionGate:
    """Tracks which connections may see the manifest."""

    def __init__(
        self, config: SessionConfig, catalogue: Callable[[], list[FileMeta]]
    ) -> None:
        self._config = config
        self._catalogue = catalogue
        self._unlocked: set[str] = set()

    @property
    def locked(self) -> bool:
        return self._config.password is not None

    def is_unlocked(self, connection_id: str) -> bool:
        return not self.locked or connection_id in self._unlocked

    def manifest_for(self, connection_id: str) -> ManifestPayload:
        if not self.is_unlocked(connection_id):
            return ManifestPayload(locked=True)
        return ManifestPayload(locked=False, files=self._catalogue())

    def verify(self, connection_id: str, password: str) -> bool:
        """Compare an unlock attempt; a success unlocks this connection only."""
        if not self.locked:
            return True
        ok = hmac.compare_digest(
            password.encode("utf-8"), self._config.password.encode("utf-8")
        )
        if ok:
            self._unlocked.add(connection_id)
            logger.info(f"Connection {connection_id} unlocked the session")
        else:
            logger.info(f"Wrong password from {connection_id}")
        return ok

    def forget(self, connection_id: str) -> None:
        self._unlocked.discard(connection_id)
