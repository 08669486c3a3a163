"""Tests for the identity stores."""

import pytest
from sqlalchemy import inspect

from visitor_id.errors import ConcurrentUpdateError, PersistenceError
from visitor_id.identity.models import (
    ChangeCategory,
    ChangeEvent,
    ChangeType,
    DeviceProfile,
    Identity,
    MatchLog,
    MatchMethod,
    MatchStatus,
)
from visitor_id.store import InMemoryStore, SqlStore, create_store
from visitor_id.store.sql import DeviceProfileRow

from conftest import make_fingerprint


def register(store, token="tok-1", seen_at=100.0, **overrides):
    identity = Identity(created_at=seen_at, last_seen=seen_at)
    profile = DeviceProfile.from_fingerprint(
        make_fingerprint(**overrides), identity.identity_id, token, seen_at=seen_at,
    )
    event = ChangeEvent(
        identity_id=identity.identity_id,
        session_id=profile.session_id,
        change_type=ChangeType.NEW_DEVICE,
        change_category=ChangeCategory.INITIAL_REGISTRATION,
        detected_at=seen_at,
    )
    store.create_identity(identity, profile, event)
    return identity, profile


def successor(identity, previous, token=None, seen_at=200.0, **overrides):
    profile = DeviceProfile.from_fingerprint(
        make_fingerprint(**overrides), identity.identity_id,
        token or previous.client_token, seen_at=seen_at,
    )
    event = ChangeEvent(
        identity_id=identity.identity_id,
        session_id=profile.session_id,
        previous_session_id=previous.session_id,
        change_type=ChangeType.MINOR,
        change_category=ChangeCategory.SCREEN_CHANGE,
        changed_fields=["screen_width"],
        detected_at=seen_at,
    )
    return profile, event


class TestIdentityStore:
    def test_create_and_lookup(self, store):
        identity, profile = register(store)
        found = store.find_current_by_token("tok-1")
        assert found is not None
        found_identity, found_profile = found
        assert found_identity.identity_id == identity.identity_id
        assert found_profile.session_id == profile.session_id
        assert found_profile.fonts == profile.fonts
        assert found_profile.device_memory == 8.0

    def test_unknown_token(self, store):
        assert store.find_current_by_token("tok-missing") is None

    def test_token_can_only_be_bound_once(self, store):
        register(store, token="tok-1")
        with pytest.raises(ConcurrentUpdateError):
            register(store, token="tok-1")

    def test_supersede(self, store):
        identity, first = register(store)
        second, event = successor(identity, first, screen_width=2560)
        updated = store.supersede_profile(identity.identity_id, first.session_id, second, event)

        assert updated.total_sessions == 2
        assert updated.total_devices == 2
        assert updated.last_seen == 200.0
        assert not store.get_profile(first.session_id).is_current
        assert store.get_current_profile(identity.identity_id).session_id == second.session_id
        assert store.find_current_by_token("tok-1")[1].session_id == second.session_id

    def test_supersede_rejects_stale_expectation(self, store):
        identity, first = register(store)
        second, event = successor(identity, first, seen_at=200.0)
        store.supersede_profile(identity.identity_id, first.session_id, second, event)

        third, event = successor(identity, first, seen_at=300.0)
        with pytest.raises(ConcurrentUpdateError):
            store.supersede_profile(identity.identity_id, first.session_id, third, event)

        assert store.get_current_profile(identity.identity_id).session_id == second.session_id
        assert store.count_change_events(identity.identity_id) == 2

    def test_supersede_unknown_identity(self, store):
        identity, first = register(store)
        ghost = Identity()
        profile, event = successor(ghost, first)
        with pytest.raises(PersistenceError):
            store.supersede_profile(ghost.identity_id, None, profile, event)

    def test_touch(self, store):
        identity, profile = register(store)
        updated = store.touch_profile(identity.identity_id, profile.session_id, 150.0)
        assert updated.last_seen == 150.0
        touched = store.get_profile(profile.session_id)
        assert touched.visit_count == 2
        assert touched.last_seen == 150.0

    def test_touch_unknown_profile(self, store):
        identity, _ = register(store)
        with pytest.raises(PersistenceError):
            store.touch_profile(identity.identity_id, "ses_missing", 150.0)

    def test_candidates_by_hash(self, store):
        register(store, token="tok-1", seen_at=100.0)
        register(store, token="tok-2", seen_at=200.0, audio_hash="b" * 64)
        register(store, token="tok-3", seen_at=300.0, canvas_hash="d" * 64, audio_hash="e" * 64)

        candidates = store.find_candidates("c" * 64, None)
        assert [c.client_token for c in candidates] == ["tok-2", "tok-1"]

        by_audio = store.find_candidates("z" * 64, "e" * 64)
        assert [c.client_token for c in by_audio] == ["tok-3"]

    def test_candidates_limit(self, store):
        for i in range(5):
            register(store, token=f"tok-{i}", seen_at=100.0 + i)
        candidates = store.find_candidates("c" * 64, "a" * 64, limit=3)
        assert [c.client_token for c in candidates] == ["tok-4", "tok-3", "tok-2"]

    def test_candidates_without_hashes(self, store):
        register(store)
        assert store.find_candidates(None, None) == []

    def test_candidates_skip_inactive(self, store):
        identity, _ = register(store)
        assert store.deactivate_identity(identity.identity_id)
        assert store.find_candidates("c" * 64, "a" * 64) == []

    def test_deactivate_unknown(self, store):
        assert not store.deactivate_identity("usr_missing")

    def test_change_events_newest_first(self, store):
        identity, first = register(store)
        second, event = successor(identity, first)
        store.supersede_profile(identity.identity_id, first.session_id, second, event)

        events = store.list_change_events(identity.identity_id)
        assert [e.change_type for e in events] == [ChangeType.MINOR, ChangeType.NEW_DEVICE]
        assert events[0].changed_fields == ["screen_width"]
        assert store.count_change_events(identity.identity_id, "new_device") == 1
        assert store.list_change_events(identity.identity_id, offset=1, limit=5)[0].change_type \
            == ChangeType.NEW_DEVICE

    def test_match_logs_newest_first(self, store):
        for i, status in enumerate([MatchStatus.NEW, MatchStatus.RECOGNIZED, MatchStatus.FAILED]):
            store.append_match_log(MatchLog(
                client_token="tok-1",
                status=status,
                method=MatchMethod.NEW_USER if status == MatchStatus.NEW else None,
                attempted_at=100.0 + i,
            ))
        logs = store.list_match_logs()
        assert [log.status for log in logs] == [
            MatchStatus.FAILED, MatchStatus.RECOGNIZED, MatchStatus.NEW,
        ]
        assert logs[-1].method == MatchMethod.NEW_USER
        assert len(store.list_match_logs(limit=2)) == 2

    def test_returned_records_are_detached(self, store):
        identity, profile = register(store)
        fetched = store.get_profile(profile.session_id)
        fetched.fonts.append("Papyrus")
        fetched.visit_count = 99
        again = store.get_profile(profile.session_id)
        assert "Papyrus" not in again.fonts
        assert again.visit_count == 1

    def test_ping(self, store):
        assert store.ping()


class TestSqlStore:
    def test_schema(self, sql_store):
        tables = set(inspect(sql_store.engine).get_table_names())
        assert {"identities", "device_profiles", "change_events", "match_logs"} <= tables

    def test_persists_across_instances(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'data' / 'visitor_id.db'}"
        identity, profile = register(SqlStore(url))
        reopened = SqlStore(url)
        assert reopened.get_identity(identity.identity_id) is not None
        assert reopened.get_profile(profile.session_id).raw == {}

    def test_raw_payload_round_trips(self, sql_store):
        identity = Identity(created_at=1.0, last_seen=1.0, metadata={"source": "web"})
        profile = DeviceProfile.from_fingerprint(
            make_fingerprint(), identity.identity_id, "tok-1", seen_at=1.0,
            raw={"screen": {"width": 1920}},
        )
        event = ChangeEvent(
            identity_id=identity.identity_id,
            session_id=profile.session_id,
            change_type=ChangeType.NEW_DEVICE,
            change_category=ChangeCategory.INITIAL_REGISTRATION,
        )
        sql_store.create_identity(identity, profile, event)
        assert sql_store.get_profile(profile.session_id).raw == {"screen": {"width": 1920}}
        assert sql_store.get_identity(identity.identity_id).metadata == {"source": "web"}

    def test_one_current_profile_per_identity_enforced_by_index(self, sql_store):
        identity, profile = register(sql_store)
        duplicate = DeviceProfile.from_fingerprint(
            make_fingerprint(), identity.identity_id, "tok-other", seen_at=150.0,
        )
        with pytest.raises(ConcurrentUpdateError):
            with sql_store._transaction() as session:
                session.add(DeviceProfileRow(
                    session_id=duplicate.session_id,
                    identity_id=identity.identity_id,
                    client_token=duplicate.client_token,
                    first_seen=150.0,
                    last_seen=150.0,
                    is_current=True,
                ))

    def test_in_memory_database(self):
        store = SqlStore("sqlite://")
        identity, _ = register(store)
        assert store.get_identity(identity.identity_id) is not None


class TestCreateStore:
    def test_memory_url(self):
        assert isinstance(create_store("memory://"), InMemoryStore)

    def test_sql_url(self, tmp_path):
        assert isinstance(create_store(f"sqlite:///{tmp_path / 'v.db'}"), SqlStore)
