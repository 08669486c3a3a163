"""
Identity resolution.

Resolves an incoming (client token, device fingerprint) pair in three
tiers: direct token recognition, probabilistic recovery by fingerprint
similarity, and finally creation of a new identity. Every attempt is
written to the match log, including failed ones.
"""

from __future__ import annotations

import math
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator

import numpy as np

from ..errors import ValidationError
from ..log import get_logger
from ..matching.scorer import BestMatch, SimilarityScorer, diff_values
from ..store.base import IdentityStore
from .models import (
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

logger = get_logger(__name__)

MAX_PAGE_SIZE = 500


class IdentityResolver:
    """
    Recognizes returning visitors.

    The resolver holds no state between calls apart from a keyed lock
    that serializes concurrent resolutions of the same client token.
    """

    def __init__(
        self,
        store: IdentityStore,
        scorer: SimilarityScorer | None = None,
        candidate_limit: int = 10,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.scorer = scorer or SimilarityScorer()
        self.candidate_limit = candidate_limit
        self.clock = clock
        self._token_locks: dict[str, list[Any]] = {}  # token -> [lock, waiters]
        self._guard = threading.Lock()

    # --- Resolution ---

    def identify(
        self,
        client_token: str,
        fingerprint: DeviceFingerprint | None,
        raw: dict[str, Any] | None = None,
    ) -> ResolutionResult:
        """Resolve a client token and fingerprint to an identity and session."""
        if not isinstance(client_token, str) or not client_token.strip():
            raise ValidationError("client_token is required")
        if fingerprint is None:
            raise ValidationError("device fingerprint is required")

        started = time.perf_counter()
        with self._token_lock(client_token):
            try:
                return self._resolve(client_token, fingerprint, raw or {}, started)
            except Exception:
                logger.exception(f"Identification failed for client token {client_token}")
                self._log_failure(client_token, fingerprint, started)
                raise

    def _resolve(
        self,
        client_token: str,
        fingerprint: DeviceFingerprint,
        raw: dict[str, Any],
        started: float,
    ) -> ResolutionResult:
        found = self.store.find_current_by_token(client_token)
        if found is not None:
            identity, profile = found
            return self._resolve_by_token(client_token, fingerprint, raw, identity, profile, started)

        candidates = self.store.find_candidates(
            fingerprint.canvas_hash, fingerprint.audio_hash, self.candidate_limit
        )
        match = self.scorer.find_best_match(fingerprint, candidates)
        if match is not None:
            return self._recover(client_token, fingerprint, raw, match, len(candidates), started)

        return self._register(client_token, fingerprint, raw, len(candidates), started)

    def _resolve_by_token(
        self,
        client_token: str,
        fingerprint: DeviceFingerprint,
        raw: dict[str, Any],
        identity: Identity,
        profile: DeviceProfile,
        started: float,
    ) -> ResolutionResult:
        now = self.clock()
        changed = self.scorer.detect_changes(profile, fingerprint)

        if not changed:
            self.store.touch_profile(identity.identity_id, profile.session_id, now)
            self._log_match(
                client_token, fingerprint, identity.identity_id,
                MatchStatus.RECOGNIZED, MatchMethod.TOKEN_DIRECT, 1.0, started,
            )
            logger.info(f"Recognized {identity.identity_id} on session {profile.session_id}")
            return ResolutionResult(
                identity_id=identity.identity_id,
                session_id=profile.session_id,
                status=MatchStatus.RECOGNIZED,
                confidence=1.0,
                device_changed=False,
            )

        classification = self.scorer.classify_change(profile, fingerprint)
        new_profile = DeviceProfile.from_fingerprint(
            fingerprint, identity.identity_id, client_token, seen_at=now, raw=raw
        )
        previous_values, new_values = diff_values(profile, fingerprint, changed)
        event = ChangeEvent(
            identity_id=identity.identity_id,
            session_id=new_profile.session_id,
            previous_session_id=profile.session_id,
            change_type=classification.change_type,
            change_category=classification.category,
            changed_fields=changed,
            confidence=classification.confidence,
            method="device_change",
            summary=(
                f"Device {classification.change_type.value} detected: "
                f"{classification.category.value}"
            ),
            previous_values=previous_values,
            new_values=new_values,
            detected_at=now,
        )
        self.store.supersede_profile(identity.identity_id, profile.session_id, new_profile, event)

        # Token certainty, not the change-classification score.
        self._log_match(
            client_token, fingerprint, identity.identity_id,
            MatchStatus.RECOGNIZED, MatchMethod.TOKEN_DIRECT, 1.0, started,
        )
        logger.info(
            f"Recognized {identity.identity_id} with {classification.change_type.value} "
            f"change ({classification.category.value}): {', '.join(changed)}"
        )
        return ResolutionResult(
            identity_id=identity.identity_id,
            session_id=new_profile.session_id,
            status=MatchStatus.RECOGNIZED,
            confidence=1.0,
            device_changed=True,
            change_type=classification.change_type,
        )

    def _recover(
        self,
        client_token: str,
        fingerprint: DeviceFingerprint,
        raw: dict[str, Any],
        match: BestMatch,
        candidates_evaluated: int,
        started: float,
    ) -> ResolutionResult:
        now = self.clock()
        matched = match.candidate
        score = match.similarity.total_score
        current = self.store.get_current_profile(matched.identity_id)

        new_profile = DeviceProfile.from_fingerprint(
            fingerprint, matched.identity_id, client_token, seen_at=now, raw=raw
        )
        event = ChangeEvent(
            identity_id=matched.identity_id,
            session_id=new_profile.session_id,
            previous_session_id=matched.session_id,
            change_type=ChangeType.RESET,
            change_category=ChangeCategory.DEVICE_RESET,
            changed_fields=["client_token"],
            confidence=score,
            method="fingerprint_match",
            summary="Client token lost, identity recovered by device fingerprint",
            previous_values={"client_token": matched.client_token},
            new_values={"client_token": client_token},
            detected_at=now,
        )
        self.store.supersede_profile(
            matched.identity_id,
            current.session_id if current else None,
            new_profile,
            event,
        )

        self._log_match(
            client_token, fingerprint, matched.identity_id,
            MatchStatus.RECOVERED, MatchMethod.FINGERPRINT_MATCH, score, started,
            candidates_evaluated,
        )
        logger.info(
            f"Recovered {matched.identity_id} by fingerprint "
            f"(score={score:.4f}, candidates={candidates_evaluated})"
        )
        return ResolutionResult(
            identity_id=matched.identity_id,
            session_id=new_profile.session_id,
            status=MatchStatus.RECOVERED,
            confidence=score,
            device_changed=True,
            change_type=ChangeType.RESET,
        )

    def _register(
        self,
        client_token: str,
        fingerprint: DeviceFingerprint,
        raw: dict[str, Any],
        candidates_evaluated: int,
        started: float,
    ) -> ResolutionResult:
        now = self.clock()
        identity = Identity(created_at=now, last_seen=now, total_sessions=1, total_devices=1)
        profile = DeviceProfile.from_fingerprint(
            fingerprint, identity.identity_id, client_token, seen_at=now, raw=raw
        )
        event = ChangeEvent(
            identity_id=identity.identity_id,
            session_id=profile.session_id,
            previous_session_id=None,
            change_type=ChangeType.NEW_DEVICE,
            change_category=ChangeCategory.INITIAL_REGISTRATION,
            changed_fields=[],
            confidence=1.0,
            method="new_user",
            summary="Initial user registration",
            detected_at=now,
        )
        self.store.create_identity(identity, profile, event)

        self._log_match(
            client_token, fingerprint, identity.identity_id,
            MatchStatus.NEW, MatchMethod.NEW_USER, 1.0, started, candidates_evaluated,
        )
        logger.info(f"Registered new identity {identity.identity_id}")
        return ResolutionResult(
            identity_id=identity.identity_id,
            session_id=profile.session_id,
            status=MatchStatus.NEW,
            confidence=1.0,
            device_changed=False,
        )

    # --- Audit ---

    def _log_match(
        self,
        client_token: str,
        fingerprint: DeviceFingerprint,
        identity_id: str | None,
        status: MatchStatus,
        method: MatchMethod | None,
        confidence: float,
        started: float,
        candidates_evaluated: int = 0,
    ) -> None:
        self.store.append_match_log(MatchLog(
            client_token=client_token,
            identity_id=identity_id,
            status=status,
            method=method,
            confidence=confidence,
            processing_ms=round((time.perf_counter() - started) * 1000, 3),
            candidates_evaluated=candidates_evaluated,
            canvas_hash=fingerprint.canvas_hash,
            audio_hash=fingerprint.audio_hash,
            user_agent=fingerprint.user_agent,
            ip_address=fingerprint.ip_address,
            attempted_at=self.clock(),
        ))

    def _log_failure(self, client_token: str, fingerprint: DeviceFingerprint, started: float) -> None:
        """Best effort: a broken audit write must not mask the original error."""
        try:
            self._log_match(
                client_token, fingerprint, None, MatchStatus.FAILED, None, 0.0, started,
            )
        except Exception as exc:
            logger.warning(f"Could not record failed match attempt: {exc}")

    @contextmanager
    def _token_lock(self, client_token: str) -> Iterator[None]:
        with self._guard:
            entry = self._token_locks.setdefault(client_token, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._token_locks[client_token]

    # --- Reporting ---

    def device_history(
        self,
        identity_id: str,
        page: int = 1,
        per_page: int = 50,
        change_type: str | None = None,
    ) -> dict[str, Any]:
        """Paginated change history of an identity, newest first."""
        try:
            page = int(page)
            per_page = int(per_page)
        except (TypeError, ValueError) as exc:
            raise ValidationError("page and per_page must be integers") from exc
        if page < 1 or per_page < 1:
            raise ValidationError("page and per_page must be positive")
        if change_type is not None and change_type not in {t.value for t in ChangeType}:
            raise ValidationError(f"unknown change type: {change_type}")
        per_page = min(per_page, MAX_PAGE_SIZE)

        total = self.store.count_change_events(identity_id, change_type)
        events = self.store.list_change_events(
            identity_id, change_type, offset=(page - 1) * per_page, limit=per_page
        )
        return {
            "data": [e.to_dict() for e in events],
            "pagination": {
                "page": page,
                "per_page": per_page,
                "total": total,
                "total_pages": math.ceil(total / per_page),
            },
        }

    def user_statistics(self, identity_id: str) -> dict[str, Any] | None:
        """Counters for an active identity, or None if unknown or deactivated."""
        identity = self.store.get_identity(identity_id)
        if identity is None or not identity.active:
            return None

        latest = self.store.list_change_events(identity_id, limit=1)
        current = self.store.get_current_profile(identity_id)
        return {
            "identity_id": identity.identity_id,
            "created_at": identity.created_at,
            "last_seen": identity.last_seen,
            "total_sessions": identity.total_sessions,
            "total_devices": identity.total_devices,
            "active_devices": 1 if current else 0,
            "current_session_id": current.session_id if current else None,
            "total_changes": self.store.count_change_events(identity_id),
            "last_change_at": latest[0].detected_at if latest else None,
        }

    def compare_sessions(self, session_a: str, session_b: str) -> dict[str, Any] | None:
        """Similarity and changed attributes between two stored profiles."""
        first = self.store.get_profile(session_a)
        second = self.store.get_profile(session_b)
        if first is None or second is None:
            return None
        similarity = self.scorer.calculate_similarity(first, second)
        return {
            "device1": first.summary(),
            "device2": second.summary(),
            "similarity": similarity.to_dict(),
            "changed_fields": self.scorer.detect_changes(first, second),
        }

    def match_summary(self, limit: int | None = None) -> dict[str, Any]:
        """Summarize the match log: outcomes, confidence and latency."""
        logs = self.store.list_match_logs(limit)
        if not logs:
            return {"total_attempts": 0}

        confidences = np.array([entry.confidence for entry in logs])
        latencies = np.array([entry.processing_ms for entry in logs])
        status_counts = {s.value: 0 for s in MatchStatus}
        for entry in logs:
            status_counts[entry.status.value] += 1

        return {
            "total_attempts": len(logs),
            "status_distribution": status_counts,
            "mean_confidence": round(float(confidences.mean()), 4),
            "min_confidence": round(float(confidences.min()), 4),
            "max_confidence": round(float(confidences.max()), 4),
            "mean_processing_ms": round(float(latencies.mean()), 3),
            "p95_processing_ms": round(float(np.percentile(latencies, 95)), 3),
        }
