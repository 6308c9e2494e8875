"""
FRAUD ALERTS - Shared alert book for every enrichment subsystem

Alerts are append-only records with a mutable status (new -> resolved).
Raising an alert is best-effort: it returns an Outcome and never raises
into the caller. Listeners (e.g. the webhook dispatcher) are notified after
a successful insert; a failing listener is logged and ignored.
"""

import logging
from datetime import datetime
from typing import Callable, List, Optional, Sequence

from .audit import AuditEventType, AuditTrail
from .models import SEVERITY_RANK, AlertStatus, FraudAlert, Severity, UserCounters
from .outcome import Outcome, best_effort
from .storage import Clock, FraudStore

logger = logging.getLogger(__name__)

AlertListener = Callable[[FraudAlert], None]


class AlertBook:

    def __init__(self, store: FraudStore, audit: AuditTrail, clock: Clock = datetime.now):
        self.store = store
        self.audit = audit
        self.clock = clock
        self.listeners: List[AlertListener] = []

    def subscribe(self, listener: AlertListener):
        self.listeners.append(listener)

    def raise_alert(self, user_id: str, alert_type: str, severity: Severity,
                    description: str, evidence: Sequence = ()) -> Outcome:
        outcome = best_effort(
            "fraud alert",
            self.store.insert_alert,
            user_id=user_id,
            alert_type=alert_type,
            severity=Severity(severity),
            description=description,
            evidence=list(evidence),
        )
        if not outcome.ok:
            return outcome

        alert: FraudAlert = outcome.value
        logger.warning(f"🚨 Fraud alert #{alert.id} for user {user_id}: {alert_type} ({alert.severity.value})")
        for listener in self.listeners:
            try:
                listener(alert)
            except Exception as e:
                logger.error(f"Alert listener failed for alert #{alert.id}: {e}")
        return outcome

    def list_alerts(self, status: Optional[str] = AlertStatus.NEW.value,
                    severity: Optional[str] = None, limit: int = 50) -> List[FraudAlert]:
        """Critical first, then high, medium, low; newest first within a tier."""
        wanted = Severity(severity) if severity else None
        outcome = best_effort(
            "list alerts", self.store.find_alerts,
            status=AlertStatus(status) if status else None,
        )
        if not outcome.ok:
            return []
        alerts = [a for a in outcome.value if wanted is None or a.severity == wanted]
        alerts.sort(key=lambda a: (SEVERITY_RANK[a.severity], -a.created_at.timestamp(), -a.id))
        return alerts[:limit]

    def alerts_for_user(self, user_id: str) -> List[FraudAlert]:
        outcome = best_effort("user alerts", self.store.find_alerts, user_id=user_id)
        return outcome.value if outcome.ok else []

    def resolve(self, alert_id: int, admin_id: str, notes: str = "") -> Optional[FraudAlert]:
        outcome = best_effort(
            "resolve alert", self.store.update_alert, alert_id,
            status=AlertStatus.RESOLVED,
            resolved_by=admin_id,
            resolved_at=self.clock(),
            resolution_notes=notes,
        )
        if outcome.ok and outcome.value is not None:
            logger.info(f"Alert #{alert_id} resolved by admin {admin_id}")
        return outcome.value if outcome.ok else None

    # ------------------------------------------------------------------
    # Permanent fraud-flag counter
    # ------------------------------------------------------------------

    def flag_for_review(self, user_id: str, reason: str,
                        session_id: Optional[str] = None) -> Outcome:
        outcome = best_effort("fraud flag", self.store.bump_counter, user_id, "fraud_flags")
        if not outcome.ok:
            return outcome
        counters: UserCounters = outcome.value
        self.audit.log_event(session_id, user_id, AuditEventType.FRAUD_FLAG,
                             {"reason": reason, "automated": True, "fraud_flags": counters.fraud_flags})
        logger.warning(f"🚩 User {user_id} flagged for fraud review: {reason}")
        return outcome

    def clear_flags(self, user_id: str, admin_id: str) -> bool:
        outcome = best_effort("clear fraud flags", self.store.reset_counters, user_id)
        if not outcome.ok:
            return False
        best_effort("admin log", self.store.log_admin_activity, admin_id,
                    "clear_fraud_flags", user_id, {"cleared_at": self.clock().isoformat()})
        logger.info(f"Fraud flags cleared for user {user_id} by admin {admin_id}")
        return True
