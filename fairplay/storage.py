"""
STORAGE - Ephemeral keyspace with TTLs and the durable fraud collections

Two stores:

1. ExpiringStore - generic expiring key-value abstraction. Question-start
   markers, response buffers and rate-limit counters live here with explicit
   expirations so abandoned sessions clean themselves up without a reaper.

2. FraudStore - in-memory reference implementation of the durable
   collections (profiles, alerts, fingerprints, IP logs, account links) plus
   the game-session rows, prize ledger and per-user state the engine reads.

KEY RULES:
- Reads return copies; writers go through merge/upsert methods so that
  concurrent sweeps and inline checks converge (max for confidence,
  append for evidence, last-recompute-wins for profiles).
- Any method may raise StorageError. Setting `offline = True` simulates an
  unreachable backend.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple

from .models import (
    AccountLink, AlertStatus, AuditEvent, BehaviorProfile, DeviceFingerprint,
    FraudAlert, GameSessionRecord, IpLogEntry, LinkType, PrizeEntry,
    RestrictionState, UserCounters,
)
from .outcome import StorageError

logger = logging.getLogger(__name__)

Clock = Callable[[], datetime]


class ExpiringStore:
    """
    Minimal TTL key-value store (Redis-like semantics).

    Entries are (value, expires_at). Expired entries read as absent and are
    dropped on access.
    """

    def __init__(self, clock: Clock = datetime.now):
        self.clock = clock
        self.offline = False
        self._data: Dict[str, Tuple[Any, Optional[datetime]]] = {}

    def _check(self):
        if self.offline:
            raise StorageError("ephemeral store unreachable")

    def _live(self, key: str) -> Optional[Tuple[Any, Optional[datetime]]]:
        entry = self._data.get(key)
        if entry is None:
            return None
        _, expires_at = entry
        if expires_at is not None and expires_at <= self.clock():
            del self._data[key]
            return None
        return entry

    def get(self, key: str) -> Any:
        self._check()
        entry = self._live(key)
        return entry[0] if entry else None

    def set(self, key: str, value: Any, ttl_seconds: Optional[int] = None):
        self._check()
        expires_at = self.clock() + timedelta(seconds=ttl_seconds) if ttl_seconds else None
        self._data[key] = (value, expires_at)

    def incr(self, key: str) -> int:
        """Increment a counter; a new counter starts at 1 with no expiry."""
        self._check()
        entry = self._live(key)
        if entry is None:
            self._data[key] = (1, None)
            return 1
        value, expires_at = entry
        self._data[key] = (int(value) + 1, expires_at)
        return int(value) + 1

    def expire(self, key: str, ttl_seconds: int) -> bool:
        self._check()
        entry = self._live(key)
        if entry is None:
            return False
        self._data[key] = (entry[0], self.clock() + timedelta(seconds=ttl_seconds))
        return True

    def ttl(self, key: str) -> Optional[int]:
        self._check()
        entry = self._live(key)
        if entry is None or entry[1] is None:
            return None
        return int((entry[1] - self.clock()).total_seconds())

    def delete(self, key: str):
        self._check()
        self._data.pop(key, None)


class FraudStore:
    """In-memory durable collections."""

    def __init__(self, clock: Clock = datetime.now):
        self.clock = clock
        self.offline = False

        self.profiles: Dict[str, BehaviorProfile] = {}
        self.alerts: List[FraudAlert] = []
        self.fingerprints: Dict[Tuple[str, str], DeviceFingerprint] = {}
        self.ip_logs: List[IpLogEntry] = []
        self.links: Dict[Tuple[str, str, LinkType], AccountLink] = {}
        self.sessions: Dict[str, GameSessionRecord] = {}
        self.prizes: List[PrizeEntry] = []
        self.restrictions: Dict[str, RestrictionState] = {}
        self.counters: Dict[str, UserCounters] = {}
        self.audit: List[AuditEvent] = []
        self.admin_log: List[Dict] = []
        self.captcha_attempts: List[Dict] = []

        self._alert_seq = 0
        self._link_seq = 0

    def _check(self):
        if self.offline:
            raise StorageError("fraud store unreachable")

    # ------------------------------------------------------------------
    # Behavior profiles (one per user, upsert)
    # ------------------------------------------------------------------

    def upsert_profile(self, profile: BehaviorProfile):
        self._check()
        self.profiles[profile.user_id] = profile.model_copy(deep=True)

    def get_profile(self, user_id: str) -> Optional[BehaviorProfile]:
        self._check()
        profile = self.profiles.get(user_id)
        return profile.model_copy(deep=True) if profile else None

    def list_profiles(self) -> List[BehaviorProfile]:
        self._check()
        return [p.model_copy(deep=True) for p in self.profiles.values()]

    # ------------------------------------------------------------------
    # Fraud alerts (append + mutable status)
    # ------------------------------------------------------------------

    def insert_alert(self, **fields) -> FraudAlert:
        self._check()
        self._alert_seq += 1
        alert = FraudAlert(id=self._alert_seq, created_at=self.clock(), **fields)
        self.alerts.append(alert)
        return alert.model_copy(deep=True)

    def find_alerts(self, status: Optional[AlertStatus] = None,
                    user_id: Optional[str] = None) -> List[FraudAlert]:
        self._check()
        return [
            a.model_copy(deep=True) for a in self.alerts
            if (status is None or a.status == status)
            and (user_id is None or a.user_id == user_id)
        ]

    def update_alert(self, alert_id: int, **changes) -> Optional[FraudAlert]:
        self._check()
        for i, alert in enumerate(self.alerts):
            if alert.id == alert_id:
                self.alerts[i] = alert.model_copy(update=changes)
                return self.alerts[i].model_copy(deep=True)
        return None

    # ------------------------------------------------------------------
    # Device fingerprints (one per user x device)
    # ------------------------------------------------------------------

    def upsert_device(self, user_id: str, device_id: str, platform: str,
                      device_info: Optional[Dict[str, str]] = None) -> DeviceFingerprint:
        self._check()
        now = self.clock()
        key = (user_id, device_id)
        existing = self.fingerprints.get(key)
        if existing is None:
            record = DeviceFingerprint(
                user_id=user_id, device_id=device_id, platform=platform,
                device_info=dict(device_info or {}),
                first_seen_at=now, last_seen_at=now,
            )
        else:
            merged = dict(existing.device_info)
            merged.update(device_info or {})
            record = existing.model_copy(update={"last_seen_at": now, "device_info": merged})
        self.fingerprints[key] = record
        return record.model_copy(deep=True)

    def devices_for_user(self, user_id: str) -> List[DeviceFingerprint]:
        self._check()
        return [d.model_copy(deep=True) for (uid, _), d in self.fingerprints.items() if uid == user_id]

    def users_on_device(self, device_id: str) -> List[str]:
        self._check()
        return sorted({uid for (uid, did) in self.fingerprints if did == device_id})

    def flag_device(self, device_id: str, reason: str):
        self._check()
        for key, record in self.fingerprints.items():
            if record.device_id == device_id:
                self.fingerprints[key] = record.model_copy(
                    update={"is_flagged": True, "flag_reason": reason})

    def all_devices(self) -> List[DeviceFingerprint]:
        self._check()
        return [d.model_copy(deep=True) for d in self.fingerprints.values()]

    # ------------------------------------------------------------------
    # IP logs (append-only)
    # ------------------------------------------------------------------

    def append_ip_log(self, entry: IpLogEntry):
        self._check()
        self.ip_logs.append(entry.model_copy(deep=True))

    def ip_logs_since(self, since: datetime, ip_address: Optional[str] = None,
                      user_id: Optional[str] = None) -> List[IpLogEntry]:
        self._check()
        return [
            e.model_copy(deep=True) for e in self.ip_logs
            if e.created_at >= since
            and (ip_address is None or e.ip_address == ip_address)
            and (user_id is None or e.user_id == user_id)
        ]

    # ------------------------------------------------------------------
    # Account links (one per unordered pair x type)
    # ------------------------------------------------------------------

    def merge_link(self, user_a: str, user_b: str, link_type: LinkType,
                   confidence: float, evidence: Iterable) -> AccountLink:
        """Insert or merge: confidence = max(old, new); evidence appended."""
        self._check()
        u1, u2 = (user_a, user_b) if user_a < user_b else (user_b, user_a)
        key = (u1, u2, link_type)
        now = self.clock()
        existing = self.links.get(key)
        if existing is None:
            self._link_seq += 1
            link = AccountLink(
                id=self._link_seq, user_id_1=u1, user_id_2=u2, link_type=link_type,
                confidence=confidence, evidence=list(evidence), detected_at=now,
            )
        else:
            link = existing.model_copy(update={
                "confidence": max(existing.confidence, confidence),
                "evidence": existing.evidence + list(evidence),
                "detected_at": now,
            })
        self.links[key] = link
        return link.model_copy(deep=True)

    def links_for_user(self, user_id: str) -> List[AccountLink]:
        self._check()
        return [
            l.model_copy(deep=True) for l in self.links.values()
            if user_id in (l.user_id_1, l.user_id_2)
        ]

    def update_link(self, link_id: int, **changes) -> Optional[AccountLink]:
        self._check()
        for key, link in self.links.items():
            if link.id == link_id:
                self.links[key] = link.model_copy(update=changes)
                return self.links[key].model_copy(deep=True)
        return None

    # ------------------------------------------------------------------
    # Game sessions (written by the game engine)
    # ------------------------------------------------------------------

    def save_session(self, record: GameSessionRecord):
        self._check()
        self.sessions[record.session_id] = record.model_copy(deep=True)

    def get_session(self, session_id: str) -> Optional[GameSessionRecord]:
        self._check()
        record = self.sessions.get(session_id)
        return record.model_copy(deep=True) if record else None

    def sessions_for_user(self, user_id: str, since: Optional[datetime] = None) -> List[GameSessionRecord]:
        self._check()
        rows = [
            s.model_copy(deep=True) for s in self.sessions.values()
            if s.user_id == user_id and (since is None or s.started_at >= since)
        ]
        rows.sort(key=lambda s: s.started_at, reverse=True)
        return rows

    def active_users_since(self, since: datetime) -> List[str]:
        self._check()
        return sorted({s.user_id for s in self.sessions.values() if s.started_at >= since})

    # ------------------------------------------------------------------
    # Prize ledger (read-only for the engine; daily total is derived)
    # ------------------------------------------------------------------

    def add_prize(self, user_id: str, amount: float, at: Optional[datetime] = None):
        self._check()
        self.prizes.append(PrizeEntry(user_id=user_id, amount=amount, created_at=at or self.clock()))

    def prizes_on(self, day, user_id: Optional[str] = None) -> List[PrizeEntry]:
        self._check()
        return [
            p for p in self.prizes
            if p.created_at.date() == day and (user_id is None or p.user_id == user_id)
        ]

    # ------------------------------------------------------------------
    # Per-user state
    # ------------------------------------------------------------------

    def load_restriction(self, user_id: str) -> RestrictionState:
        self._check()
        state = self.restrictions.get(user_id)
        return state.model_copy(deep=True) if state else RestrictionState(user_id=user_id)

    def save_restriction(self, state: RestrictionState):
        self._check()
        self.restrictions[state.user_id] = state.model_copy(deep=True)

    def all_restrictions(self) -> List[RestrictionState]:
        self._check()
        return [s.model_copy(deep=True) for s in self.restrictions.values()]

    def load_counters(self, user_id: str) -> UserCounters:
        self._check()
        counters = self.counters.get(user_id)
        return counters.model_copy() if counters else UserCounters(user_id=user_id)

    def bump_counter(self, user_id: str, field: str, amount: int = 1) -> UserCounters:
        self._check()
        counters = self.counters.get(user_id) or UserCounters(user_id=user_id)
        update = {field: getattr(counters, field) + amount}
        if field == "fraud_flags":
            update["last_fraud_check"] = self.clock()
        self.counters[user_id] = counters.model_copy(update=update)
        return self.counters[user_id].model_copy()

    def reset_counters(self, user_id: str):
        self._check()
        self.counters[user_id] = UserCounters(user_id=user_id)

    def all_counters(self) -> List[UserCounters]:
        self._check()
        return [c.model_copy() for c in self.counters.values()]

    # ------------------------------------------------------------------
    # Audit / admin activity
    # ------------------------------------------------------------------

    def append_audit(self, event: AuditEvent):
        self._check()
        self.audit.append(event)

    def audit_events(self, session_id: Optional[str] = None,
                     user_id: Optional[str] = None) -> List[AuditEvent]:
        self._check()
        return [
            e for e in self.audit
            if (session_id is None or e.session_id == session_id)
            and (user_id is None or e.user_id == user_id)
        ]

    def purge_audit_before(self, cutoff: datetime) -> int:
        self._check()
        before = len(self.audit)
        self.audit = [e for e in self.audit if e.created_at >= cutoff]
        return before - len(self.audit)

    def log_admin_activity(self, admin_id: Optional[str], action_type: str,
                           target_id: str, details: Dict):
        self._check()
        self.admin_log.append({
            "admin_id": admin_id,
            "action_type": action_type,
            "target_id": target_id,
            "details": details,
            "created_at": self.clock(),
        })

    def admin_activity_for(self, target_id: str) -> List[Dict]:
        self._check()
        return [dict(a) for a in self.admin_log if a["target_id"] == target_id]

    # ------------------------------------------------------------------
    # CAPTCHA attempts
    # ------------------------------------------------------------------

    def append_captcha_attempt(self, attempt: Dict):
        self._check()
        self.captcha_attempts.append(dict(attempt))

    def captcha_attempts_for_user(self, user_id: str) -> List[Dict]:
        self._check()
        return [dict(a) for a in self.captcha_attempts if a["user_id"] == user_id]
