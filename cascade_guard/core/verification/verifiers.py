"""
Verification Collaborators - external async predicates.
"""

from typing import Awaitable, Callable, Optional

# (user_id, password) -> accepted
PasswordVerifier = Callable[[str, str], Awaitable[bool]]

# (user_id) -> scan succeeded
BiometricVerifier = Callable[[str], Awaitable[bool]]


class StaticPasswordVerifier:
    """Accepts one fixed password. For local development and tests."""

    def __init__(self, password: str, user_id: Optional[str] = None):
        self._password = password
        self._user_id = user_id

    async def __call__(self, user_id: str, password: str) -> bool:
        if self._user_id is not None and user_id != self._user_id:
            return False
        return password == self._password
