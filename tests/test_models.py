"""Tests for identity and audit models."""

from visitor_id.identity.models import (
    ChangeCategory,
    ChangeEvent,
    ChangeType,
    DeviceFingerprint,
    DeviceProfile,
    Identity,
    MatchLog,
    MatchMethod,
    MatchStatus,
    ResolutionResult,
)

from conftest import make_fingerprint


class TestIdentity:
    def test_generated_id(self):
        identity = Identity()
        assert identity.identity_id.startswith("usr_")
        assert len(identity.identity_id) == 16

    def test_ids_are_unique(self):
        assert Identity().identity_id != Identity().identity_id

    def test_to_dict(self):
        d = Identity(identity_id="usr_1", created_at=1.0, last_seen=2.0).to_dict()
        assert d["identity_id"] == "usr_1"
        assert d["total_sessions"] == 1
        assert d["active"] is True


class TestDeviceProfile:
    def test_from_fingerprint(self):
        fp = make_fingerprint()
        profile = DeviceProfile.from_fingerprint(fp, "usr_1", "tok-1", seen_at=10.0, raw={"a": 1})
        assert profile.session_id.startswith("ses_")
        assert profile.identity_id == "usr_1"
        assert profile.client_token == "tok-1"
        assert profile.first_seen == profile.last_seen == 10.0
        assert profile.is_current
        assert profile.visit_count == 1
        assert profile.raw == {"a": 1}
        assert profile.fingerprint_dict() == fp.fingerprint_dict()

    def test_font_list_is_copied(self):
        fp = make_fingerprint()
        profile = DeviceProfile.from_fingerprint(fp, "usr_1", "tok-1")
        fp.fonts.append("Comic Sans MS")
        assert "Comic Sans MS" not in profile.fonts

    def test_fingerprint_dict_excludes_bookkeeping(self):
        profile = DeviceProfile.from_fingerprint(make_fingerprint(), "usr_1", "tok-1")
        data = profile.fingerprint_dict()
        assert "session_id" not in data
        assert "client_token" not in data
        assert "canvas_hash" in data

    def test_summary(self):
        profile = DeviceProfile.from_fingerprint(make_fingerprint(), "usr_1", "tok-1")
        summary = profile.summary()
        assert summary["platform"] == "Win32"
        assert summary["session_id"] == profile.session_id


class TestFingerprint:
    def test_from_dict_ignores_unknown_keys(self):
        fp = DeviceFingerprint.from_dict({"platform": "Win32", "session_id": "ses_x"})
        assert fp.platform == "Win32"


class TestChangeEvent:
    def test_to_dict(self):
        event = ChangeEvent(
            identity_id="usr_1",
            session_id="ses_2",
            previous_session_id="ses_1",
            change_type=ChangeType.MINOR,
            change_category=ChangeCategory.SCREEN_CHANGE,
            changed_fields=["screen_width"],
            confidence=0.95,
        )
        d = event.to_dict()
        assert d["change_type"] == "minor"
        assert d["change_category"] == "screen_change"
        assert d["previous_session_id"] == "ses_1"
        assert d["changed_fields"] == ["screen_width"]


class TestMatchLog:
    def test_failed_log_has_no_method(self):
        log = MatchLog(client_token="tok-1", status=MatchStatus.FAILED)
        d = log.to_dict()
        assert d["status"] == "failed"
        assert d["method"] is None
        assert d["identity_id"] is None

    def test_method_serialized(self):
        log = MatchLog(client_token="tok-1", status=MatchStatus.NEW, method=MatchMethod.NEW_USER)
        assert log.to_dict()["method"] == "new_user"


class TestResolutionResult:
    def test_change_type_omitted_when_unchanged(self):
        result = ResolutionResult("usr_1", "ses_1", MatchStatus.RECOGNIZED, 1.0)
        d = result.to_dict()
        assert d == {
            "user_id": "usr_1",
            "session_id": "ses_1",
            "status": "recognized",
            "confidence": 1.0,
            "is_device_changed": False,
        }

    def test_change_type_included(self):
        result = ResolutionResult(
            "usr_1", "ses_2", MatchStatus.RECOVERED, 0.9, True, ChangeType.RESET,
        )
        assert result.to_dict()["change_type"] == "reset"
