"""
Identity store interface.

The resolver only talks to persistence through this contract. Each
write method is one atomic unit: either every record it touches is
written, or none is.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

from ..identity.models import ChangeEvent, DeviceProfile, Identity, MatchLog


class IdentityStore(ABC):
    """Persistence for identities, device profiles and audit records."""

    # --- Lookups ---

    @abstractmethod
    def find_current_by_token(self, client_token: str) -> tuple[Identity, DeviceProfile] | None:
        """Most recently seen current profile carrying the token, with its identity."""

    @abstractmethod
    def find_candidates(
        self, canvas_hash: str | None, audio_hash: str | None, limit: int = 10
    ) -> list[DeviceProfile]:
        """
        Profiles of active identities sharing either hash, most recently
        seen first. Returns an empty list when both hashes are None.
        """

    @abstractmethod
    def get_identity(self, identity_id: str) -> Identity | None: ...

    @abstractmethod
    def get_profile(self, session_id: str) -> DeviceProfile | None: ...

    @abstractmethod
    def get_current_profile(self, identity_id: str) -> DeviceProfile | None: ...

    @abstractmethod
    def list_profiles(self, identity_id: str) -> list[DeviceProfile]:
        """All profiles of an identity, oldest first."""

    # --- Atomic writes ---

    @abstractmethod
    def create_identity(
        self, identity: Identity, profile: DeviceProfile, event: ChangeEvent
    ) -> None:
        """
        Insert a new identity with its initial current profile and change event.

        Raises ConcurrentUpdateError if the profile's client token already
        has a current profile.
        """

    @abstractmethod
    def supersede_profile(
        self,
        identity_id: str,
        expected_session_id: str | None,
        profile: DeviceProfile,
        event: ChangeEvent,
    ) -> Identity:
        """
        Replace the identity's current profile.

        Clears the current flag of ``expected_session_id``, inserts
        ``profile`` as current, appends ``event``, bumps the session count,
        recounts devices and refreshes last-seen. Raises
        ConcurrentUpdateError if ``expected_session_id`` is no longer the
        current profile.
        """

    @abstractmethod
    def touch_profile(self, identity_id: str, session_id: str, seen_at: float) -> Identity:
        """Record a repeat visit on an unchanged profile."""

    @abstractmethod
    def deactivate_identity(self, identity_id: str) -> bool: ...

    # --- Audit ---

    @abstractmethod
    def append_match_log(self, log: MatchLog) -> None: ...

    @abstractmethod
    def list_match_logs(self, limit: int | None = None) -> list[MatchLog]:
        """Newest first."""

    @abstractmethod
    def list_change_events(
        self,
        identity_id: str,
        change_type: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[ChangeEvent]:
        """Newest first."""

    @abstractmethod
    def count_change_events(self, identity_id: str, change_type: str | None = None) -> int: ...

    def ping(self) -> bool:
        return True
