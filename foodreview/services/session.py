import logging
from typing import Optional

from ..core.credentials import is_valid_token

logger = logging.getLogger("foodreview.session")

CREDENTIAL_KEY = "github_pat"


class SessionCache:
    """Process-lifetime key/value store; nothing here is ever written to disk."""

    def __init__(self):
        self._values: dict[str, str] = {}

    def get_credential(self) -> Optional[str]:
        token = self._values.get(CREDENTIAL_KEY)
        if token is not None and not is_valid_token(token):
            logger.warning("Dropping malformed cached credential")
            self._values.pop(CREDENTIAL_KEY, None)
            return None
        return token

    def set_credential(self, token: str) -> None:
        if not is_valid_token(token):
            raise ValueError("Refusing to cache a malformed credential")
        self._values[CREDENTIAL_KEY] = token

    def clear(self) -> None:
        self._values.pop(CREDENTIAL_KEY, None)

    @property
    def logged_in(self) -> bool:
        return self.get_credential() is not None
