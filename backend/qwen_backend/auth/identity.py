from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional

from .utils import verify_id_token

log = logging.getLogger(__name__)

IdentityListener = Callable[[Optional["Identity"]], None]


@dataclass(frozen=True, slots=True)
class Identity:
    """The signed-in user as seen by the chat core."""

    uid: str
    id_token: Optional[str] = None
    email: Optional[str] = None
    display_name: Optional[str] = None

    @classmethod
    def from_claims(cls, claims: dict[str, Any], token: Optional[str] = None) -> "Identity":
        return cls(
            uid=claims["uid"],
            id_token=token,
            email=claims.get("email"),
            display_name=claims.get("name"),
        )


class IdentityProvider:
    """Holds the current identity and notifies subscribers when it changes.

    Sign-in flows themselves happen elsewhere; callers hand over the result.
    """

    def __init__(self, identity: Optional[Identity] = None) -> None:
        self._current = identity
        self._listeners: list[IdentityListener] = []

    @property
    def current(self) -> Optional[Identity]:
        return self._current

    def subscribe(self, listener: IdentityListener) -> Callable[[], None]:
        """Register ``listener`` and call it right away with the current identity."""
        self._listeners.append(listener)
        listener(self._current)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def sign_in(self, identity: Identity) -> Identity:
        if self._current == identity:
            return identity
        self._current = identity
        log.info("Signed in as %s", identity.uid)
        self._notify()
        return identity

    def sign_in_with_token(self, token: str) -> Identity:
        """Verify a Firebase ID token and sign in as its subject."""
        context = verify_id_token(token)
        return self.sign_in(Identity.from_claims(context.decoded_token, token=context.token))

    def sign_out(self) -> None:
        if self._current is None:
            return
        log.info("Signed out %s", self._current.uid)
        self._current = None
        self._notify()

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._current)
            except Exception:
                log.exception("Identity listener failed")
