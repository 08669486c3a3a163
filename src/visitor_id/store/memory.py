"""
In-memory identity store.

Keeps identities, device profiles and audit records in process memory
behind a single re-entrant lock. Records are copied on the way in and
out so callers never share state with the store.
"""

from __future__ import annotations

import copy
import threading

from ..errors import ConcurrentUpdateError, PersistenceError
from ..identity.models import ChangeEvent, DeviceProfile, Identity, MatchLog
from .base import IdentityStore


class InMemoryStore(IdentityStore):
    """Identity store backed by plain dictionaries."""

    def __init__(self):
        self.identities: dict[str, Identity] = {}
        self.profiles: dict[str, DeviceProfile] = {}  # session_id -> profile
        self.change_events: list[ChangeEvent] = []
        self.match_logs: list[MatchLog] = []
        self._lock = threading.RLock()

    # --- Lookups ---

    def find_current_by_token(self, client_token: str) -> tuple[Identity, DeviceProfile] | None:
        with self._lock:
            matches = [
                p for p in self.profiles.values()
                if p.client_token == client_token and p.is_current
            ]
            if not matches:
                return None
            profile = max(matches, key=lambda p: p.last_seen)
            identity = self.identities[profile.identity_id]
            return copy.deepcopy(identity), copy.deepcopy(profile)

    def find_candidates(
        self, canvas_hash: str | None, audio_hash: str | None, limit: int = 10
    ) -> list[DeviceProfile]:
        if canvas_hash is None and audio_hash is None:
            return []
        with self._lock:
            matches = [
                p for p in self.profiles.values()
                if self.identities[p.identity_id].active
                and (
                    (canvas_hash is not None and p.canvas_hash == canvas_hash)
                    or (audio_hash is not None and p.audio_hash == audio_hash)
                )
            ]
            matches.sort(key=lambda p: p.last_seen, reverse=True)
            return copy.deepcopy(matches[:limit])

    def get_identity(self, identity_id: str) -> Identity | None:
        with self._lock:
            identity = self.identities.get(identity_id)
            return copy.deepcopy(identity) if identity else None

    def get_profile(self, session_id: str) -> DeviceProfile | None:
        with self._lock:
            profile = self.profiles.get(session_id)
            return copy.deepcopy(profile) if profile else None

    def get_current_profile(self, identity_id: str) -> DeviceProfile | None:
        with self._lock:
            profile = self._current_of(identity_id)
            return copy.deepcopy(profile) if profile else None

    def list_profiles(self, identity_id: str) -> list[DeviceProfile]:
        with self._lock:
            return [
                copy.deepcopy(p) for p in self.profiles.values()
                if p.identity_id == identity_id
            ]

    # --- Atomic writes ---

    def create_identity(
        self, identity: Identity, profile: DeviceProfile, event: ChangeEvent
    ) -> None:
        with self._lock:
            if identity.identity_id in self.identities:
                raise PersistenceError(f"identity {identity.identity_id} already exists")
            if profile.session_id in self.profiles:
                raise PersistenceError(f"session {profile.session_id} already exists")
            if any(
                p.client_token == profile.client_token and p.is_current
                for p in self.profiles.values()
            ):
                raise ConcurrentUpdateError(
                    f"client token {profile.client_token} is already bound to an identity"
                )
            stored_profile = copy.deepcopy(profile)
            stored_profile.identity_id = identity.identity_id
            stored_profile.is_current = True
            self.identities[identity.identity_id] = copy.deepcopy(identity)
            self.profiles[stored_profile.session_id] = stored_profile
            self.change_events.append(copy.deepcopy(event))

    def supersede_profile(
        self,
        identity_id: str,
        expected_session_id: str | None,
        profile: DeviceProfile,
        event: ChangeEvent,
    ) -> Identity:
        with self._lock:
            identity = self.identities.get(identity_id)
            if identity is None:
                raise PersistenceError(f"identity {identity_id} does not exist")
            if profile.session_id in self.profiles:
                raise PersistenceError(f"session {profile.session_id} already exists")

            current = self._current_of(identity_id)
            current_id = current.session_id if current else None
            if current_id != expected_session_id:
                raise ConcurrentUpdateError(
                    f"identity {identity_id} current profile is {current_id}, "
                    f"expected {expected_session_id}"
                )

            if current is not None:
                current.is_current = False
            stored_profile = copy.deepcopy(profile)
            stored_profile.identity_id = identity_id
            stored_profile.is_current = True
            self.profiles[stored_profile.session_id] = stored_profile
            self.change_events.append(copy.deepcopy(event))

            identity.total_sessions += 1
            identity.total_devices = sum(
                1 for p in self.profiles.values() if p.identity_id == identity_id
            )
            identity.last_seen = max(identity.last_seen, stored_profile.last_seen)
            return copy.deepcopy(identity)

    def touch_profile(self, identity_id: str, session_id: str, seen_at: float) -> Identity:
        with self._lock:
            identity = self.identities.get(identity_id)
            profile = self.profiles.get(session_id)
            if identity is None or profile is None or profile.identity_id != identity_id:
                raise PersistenceError(
                    f"profile {session_id} of identity {identity_id} does not exist"
                )
            profile.last_seen = seen_at
            profile.visit_count += 1
            identity.last_seen = seen_at
            return copy.deepcopy(identity)

    def deactivate_identity(self, identity_id: str) -> bool:
        with self._lock:
            identity = self.identities.get(identity_id)
            if identity:
                identity.active = False
                return True
            return False

    # --- Audit ---

    def append_match_log(self, log: MatchLog) -> None:
        with self._lock:
            self.match_logs.append(copy.deepcopy(log))

    def list_match_logs(self, limit: int | None = None) -> list[MatchLog]:
        with self._lock:
            logs = list(reversed(self.match_logs))
            if limit is not None:
                logs = logs[:limit]
            return copy.deepcopy(logs)

    def list_change_events(
        self,
        identity_id: str,
        change_type: str | None = None,
        offset: int = 0,
        limit: int | None = None,
    ) -> list[ChangeEvent]:
        with self._lock:
            events = self._events_of(identity_id, change_type)
            end = None if limit is None else offset + limit
            return copy.deepcopy(events[offset:end])

    def count_change_events(self, identity_id: str, change_type: str | None = None) -> int:
        with self._lock:
            return len(self._events_of(identity_id, change_type))

    # --- Helpers ---

    def _current_of(self, identity_id: str) -> DeviceProfile | None:
        for p in self.profiles.values():
            if p.identity_id == identity_id and p.is_current:
                return p
        return None

    def _events_of(self, identity_id: str, change_type: str | None) -> list[ChangeEvent]:
        events = [
            e for e in reversed(self.change_events)
            if e.identity_id == identity_id
            and (change_type is None or e.change_type.value == change_type)
        ]
        # Stable sort keeps insertion order (newest first) for equal timestamps.
        events.sort(key=lambda e: e.detected_at, reverse=True)
        return events
