"""
DEVICE / IDENTITY CORRELATION - Links accounts likely run by the same actor

SIGNALS:
1. Device fingerprint  - same fingerprint on another account  -> 0.9 link
2. Shared IP (7 days)  - base 0.4 link, 0.7 when both users started a
                         session within 5 minutes of each other (30 days)
3. IP hygiene          - private/reserved ranges are a weak proxy signal

LINK STORAGE:
Undirected edge per (ordered pair, link type). Confidence merges with max,
evidence accumulates. Only an explicit admin override may lower confidence.

Everything here is enrichment: failures are logged and never propagate.
"""

import hashlib
import ipaddress
import logging
import re
from collections import defaultdict
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from .alerts import AlertBook
from .config import CorrelationThresholds
from .models import (
    AccountLink, DeviceEvidence, DeviceFingerprint, IpEvidence, IpLogEntry, LinkType,
    NetworkEvidence, Severity,
)
from .outcome import Ok, Outcome, Skipped, best_effort
from .storage import Clock, FraudStore

logger = logging.getLogger(__name__)

CGNAT = ipaddress.ip_network("100.64.0.0/10")
_IDENTIFIER_PUNCTUATION = re.compile(r"[\s\-().+]")


def normalize_identifier(identifier: Optional[str]) -> str:
    """Trim, lower-case and strip phone punctuation."""
    if not identifier:
        return ""
    return _IDENTIFIER_PUNCTUATION.sub("", identifier.strip().lower())


def fingerprint(platform: Optional[str], user_identifier: Optional[str],
                device_type: Optional[str] = None, os_version: Optional[str] = None,
                app_version: Optional[str] = None) -> str:
    components = [
        platform or "unknown",
        normalize_identifier(user_identifier) or "unknown",
        device_type or "",
        os_version or "",
        app_version or "",
    ]
    digest = hashlib.sha256("|".join(c for c in components if c).encode("utf-8")).hexdigest()
    return digest[:32]


def classify_ip(address: str) -> Dict:
    """Heuristic proxy check. Private and reserved ranges count as proxy."""
    ip = ipaddress.ip_address(address)
    private = (
        ip.is_private or ip.is_loopback or ip.is_link_local or ip.is_reserved
        or ip.is_unspecified or (ip.version == 4 and ip in CGNAT)
    )
    return {
        "is_vpn": False,
        "is_proxy": private,
        "reason": "private_ip_range" if private else None,
    }


class DeviceCorrelationGraph:

    def __init__(self, thresholds: CorrelationThresholds, store: FraudStore,
                 alerts: AlertBook, clock: Clock = datetime.now):
        self.thresholds = thresholds
        self.store = store
        self.alerts = alerts
        self.clock = clock

    # ------------------------------------------------------------------
    # Observations
    # ------------------------------------------------------------------

    def record_device(self, user_id: str, device_id: str, platform: str,
                      info: Optional[Dict[str, str]] = None) -> Outcome:
        outcome = best_effort("device fingerprint", self.store.upsert_device,
                              user_id, device_id, platform, info)
        if not outcome.ok:
            return outcome
        best_effort("device correlation", self._correlate_device, user_id, device_id)
        return outcome

    def _correlate_device(self, user_id: str, device_id: str):
        others = [u for u in self.store.users_on_device(device_id) if u != user_id]
        if not others:
            return

        now = self.clock()
        for other in others:
            self._link(user_id, other, LinkType.SAME_DEVICE, self.thresholds.device_confidence,
                       DeviceEvidence(device_id=device_id, observed_at=now))

        self.store.flag_device(device_id, "multi_account_detected")
        for uid in [user_id] + others:
            self.store.bump_counter(uid, "multi_account_flags")

        logger.warning(f"👥 Multi-account detected by device {device_id}: "
                       f"{user_id}, {', '.join(others)}")

    def record_ip(self, user_id: str, address: str, action: str) -> Outcome:
        try:
            flags = classify_ip(address)
        except ValueError:
            logger.warning(f"Ignoring unparseable IP address for user {user_id}: {address!r}")
            return Skipped(reason="invalid ip address")

        entry = IpLogEntry(
            user_id=user_id, ip_address=address, action_type=action,
            is_vpn=flags["is_vpn"], is_proxy=flags["is_proxy"], created_at=self.clock(),
        )
        outcome = best_effort("ip log", self.store.append_ip_log, entry)
        if not outcome.ok:
            return outcome

        best_effort("ip correlation", self._correlate_ip, user_id, address)

        if flags["is_vpn"] or flags["is_proxy"]:
            self.alerts.raise_alert(
                user_id, "vpn_usage", Severity.LOW, f"VPN/Proxy detected: {address}",
                [NetworkEvidence(ip_address=address, is_vpn=flags["is_vpn"],
                                 is_proxy=flags["is_proxy"], reason=flags["reason"])],
            )
        return Ok(entry)

    def _correlate_ip(self, user_id: str, address: str):
        since = self.clock() - timedelta(days=self.thresholds.ip_window_days)
        others = sorted({
            e.user_id for e in self.store.ip_logs_since(since, ip_address=address)
            if e.user_id != user_id
        })
        if not others:
            return

        now = self.clock()
        for other in others:
            overlap = self.time_overlap(user_id, other)
            confidence = (self.thresholds.ip_overlap_confidence if overlap
                          else self.thresholds.ip_confidence)
            self._link(user_id, other, LinkType.SAME_IP, confidence,
                       IpEvidence(ip_address=address, time_overlap=overlap, observed_at=now))

        if len(others) + 1 >= self.thresholds.multi_account_users:
            self.alerts.raise_alert(
                user_id, "multi_account", Severity.MEDIUM,
                f"Multiple accounts ({len(others) + 1}) detected from IP {address}",
                [NetworkEvidence(ip_address=address, linked_users=others)],
            )

    def time_overlap(self, user_a: str, user_b: str) -> bool:
        """True when both users started a session within the overlap window of each other."""
        since = self.clock() - timedelta(days=self.thresholds.overlap_window_days)
        starts_a = [s.started_at for s in self.store.sessions_for_user(user_a, since)]
        starts_b = [s.started_at for s in self.store.sessions_for_user(user_b, since)]
        window = self.thresholds.overlap_seconds
        return any(abs((a - b).total_seconds()) < window for a in starts_a for b in starts_b)

    def _link(self, user_a: str, user_b: str, link_type: LinkType, confidence: float, evidence):
        link = self.store.merge_link(user_a, user_b, link_type, confidence, [evidence])
        logger.info(f"🔗 Account link {link.user_id_1} <-> {link.user_id_2} "
                    f"({link_type.value}, confidence {link.confidence})")
        return link

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def linked_accounts(self, user_id: str) -> List[AccountLink]:
        outcome = best_effort("linked accounts", self.store.links_for_user, user_id)
        if not outcome.ok:
            return []
        return sorted(outcome.value, key=lambda l: l.confidence, reverse=True)

    def user_devices(self, user_id: str) -> List[DeviceFingerprint]:
        outcome = best_effort("user devices", self.store.devices_for_user, user_id)
        if not outcome.ok:
            return []
        return sorted(outcome.value, key=lambda d: d.last_seen_at, reverse=True)

    def user_ips(self, user_id: str, days: int = 30) -> List[Dict]:
        since = self.clock() - timedelta(days=days)
        outcome = best_effort("user ips", self.store.ip_logs_since, since, user_id=user_id)
        if not outcome.ok:
            return []

        grouped = defaultdict(list)
        for entry in outcome.value:
            grouped[entry.ip_address].append(entry)
        rows = [
            {
                "ip_address": ip,
                "usage_count": len(entries),
                "last_used": max(e.created_at for e in entries),
                "has_vpn": any(e.is_vpn for e in entries),
                "has_proxy": any(e.is_proxy for e in entries),
            }
            for ip, entries in grouped.items()
        ]
        return sorted(rows, key=lambda r: r["last_used"], reverse=True)

    def shared_device_users(self) -> List[Dict]:
        outcome = best_effort("shared devices", self.store.all_devices)
        if not outcome.ok:
            return []

        users_by_device = defaultdict(set)
        for record in outcome.value:
            users_by_device[record.device_id].add(record.user_id)
        rows = [
            {"device_id": device_id, "user_count": len(users), "user_ids": sorted(users)}
            for device_id, users in users_by_device.items() if len(users) > 1
        ]
        return sorted(rows, key=lambda r: r["user_count"], reverse=True)

    # ------------------------------------------------------------------
    # Admin review
    # ------------------------------------------------------------------

    def review_link(self, link_id: int, admin_id: str, confirmed: bool) -> Optional[AccountLink]:
        outcome = best_effort("link review", self.store.update_link, link_id,
                              is_confirmed=confirmed, reviewed_by=admin_id, reviewed_at=self.clock())
        if not outcome.ok or outcome.value is None:
            return None

        link: AccountLink = outcome.value
        if confirmed:
            for uid in (link.user_id_1, link.user_id_2):
                self.alerts.flag_for_review(uid, f"Confirmed linked account (link #{link_id})")
        best_effort("admin log", self.store.log_admin_activity, admin_id,
                    "confirm_account_link" if confirmed else "deny_account_link",
                    str(link_id), {"user_id_1": link.user_id_1, "user_id_2": link.user_id_2})
        logger.info(f"Account link #{link_id} {'confirmed' if confirmed else 'denied'} by admin {admin_id}")
        return link

    def override_link_confidence(self, link_id: int, confidence: float,
                                 admin_id: str) -> Optional[AccountLink]:
        """The only path that may lower a link's confidence."""
        if not 0.0 <= confidence <= 1.0:
            raise ValueError("confidence must be within [0, 1]")
        outcome = best_effort("link override", self.store.update_link, link_id, confidence=confidence)
        if not outcome.ok or outcome.value is None:
            return None
        best_effort("admin log", self.store.log_admin_activity, admin_id,
                    "override_link_confidence", str(link_id), {"confidence": confidence})
        logger.info(f"Account link #{link_id} confidence set to {confidence} by admin {admin_id}")
        return outcome.value
