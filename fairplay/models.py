from datetime import datetime
from enum import Enum
from typing import Annotated, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, Field


class Severity(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


SEVERITY_RANK = {
    Severity.CRITICAL: 1,
    Severity.HIGH: 2,
    Severity.MEDIUM: 3,
    Severity.LOW: 4,
}


class AlertStatus(str, Enum):
    NEW = "new"
    RESOLVED = "resolved"


class LinkType(str, Enum):
    SAME_DEVICE = "same_device"
    SAME_IP = "same_ip"


class SkillTrend(str, Enum):
    IMPROVING = "improving"
    DECLINING = "declining"
    STABLE = "stable"
    SUSPICIOUS_JUMP = "suspicious_jump"


# ---------------------------------------------------------------------------
# Evidence - one variant per source, discriminated on "kind"
# ---------------------------------------------------------------------------

class DeviceEvidence(BaseModel):
    kind: Literal["device"] = "device"
    device_id: str
    observed_at: datetime


class IpEvidence(BaseModel):
    kind: Literal["ip"] = "ip"
    ip_address: str
    time_overlap: bool = False
    observed_at: datetime


class BehavioralEvidence(BaseModel):
    kind: Literal["behavioral"] = "behavioral"
    anomaly_score: int
    reasons: List[str] = Field(default_factory=list)
    skill_trend: Optional[SkillTrend] = None


class TimeoutEvidence(BaseModel):
    kind: Literal["timeout"] = "timeout"
    session_id: Optional[str] = None
    streak: int
    action: str


class SessionEvidence(BaseModel):
    kind: Literal["session"] = "session"
    session_id: str
    avg_response_ms: int
    fastest_response_ms: int
    fast_answers: int


class NetworkEvidence(BaseModel):
    kind: Literal["network"] = "network"
    ip_address: str
    is_vpn: bool = False
    is_proxy: bool = False
    reason: Optional[str] = None
    linked_users: List[str] = Field(default_factory=list)


Evidence = Annotated[
    Union[DeviceEvidence, IpEvidence, BehavioralEvidence, TimeoutEvidence,
          SessionEvidence, NetworkEvidence],
    Field(discriminator="kind"),
]


# ---------------------------------------------------------------------------
# Durable records
# ---------------------------------------------------------------------------

class FraudAlert(BaseModel):
    id: int
    user_id: str
    alert_type: str
    severity: Severity
    description: str
    evidence: List[Evidence] = Field(default_factory=list)
    status: AlertStatus = AlertStatus.NEW
    created_at: datetime
    resolved_by: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolution_notes: Optional[str] = None


class DeviceFingerprint(BaseModel):
    user_id: str
    device_id: str
    platform: str
    device_info: Dict[str, str] = Field(default_factory=dict)
    first_seen_at: datetime
    last_seen_at: datetime
    is_flagged: bool = False
    flag_reason: Optional[str] = None


class IpLogEntry(BaseModel):
    user_id: str
    ip_address: str
    action_type: str
    is_vpn: bool = False
    is_proxy: bool = False
    created_at: datetime


class AccountLink(BaseModel):
    id: int
    user_id_1: str
    user_id_2: str
    link_type: LinkType
    confidence: float = Field(ge=0.0, le=1.0)
    evidence: List[Evidence] = Field(default_factory=list)
    detected_at: datetime
    is_confirmed: Optional[bool] = None
    reviewed_by: Optional[str] = None
    reviewed_at: Optional[datetime] = None

    def other(self, user_id: str) -> str:
        return self.user_id_2 if self.user_id_1 == user_id else self.user_id_1


class AnomalyReason(BaseModel):
    type: str
    severity: Severity
    description: str
    score: int


class BehaviorProfile(BaseModel):
    user_id: str
    avg_response_time_ms: Optional[int] = None
    min_response_time_ms: Optional[int] = None
    max_response_time_ms: Optional[int] = None
    response_time_stddev: float = 0.0
    win_rate: float = 0.0
    avg_highest_question: float = 0.0
    avg_games_per_day: float = 0.0
    play_hours: Dict[int, int] = Field(default_factory=dict)
    play_days: Dict[int, int] = Field(default_factory=dict)
    total_games: int = 0
    completed_games: int = 0
    skill_trend: SkillTrend = SkillTrend.STABLE
    anomaly_score: int = Field(default=0, ge=0, le=100)
    anomaly_reasons: List[AnomalyReason] = Field(default_factory=list)
    last_updated: datetime


class SessionSummary(BaseModel):
    avg_response_ms: int
    fastest_response_ms: int
    total_questions: int
    fast_answers: int
    is_suspicious: bool


class GameSessionRecord(BaseModel):
    """Game session row as the game engine records it."""
    session_id: str
    user_id: str
    mode: str = "classic"
    started_at: datetime
    completed_at: Optional[datetime] = None
    status: str = "active"          # active | completed | won | abandoned
    score: float = 0.0
    highest_question: int = 0
    avg_response_time_ms: Optional[int] = None
    fastest_response_ms: Optional[int] = None
    suspicious: bool = False
    response_times: List[Dict] = Field(default_factory=list)


class PrizeEntry(BaseModel):
    user_id: str
    amount: float
    created_at: datetime


class AuditEvent(BaseModel):
    session_id: Optional[str]
    user_id: str
    event_type: str
    event_data: Dict = Field(default_factory=dict)
    created_at: datetime


# ---------------------------------------------------------------------------
# API payloads
# ---------------------------------------------------------------------------

class GateRequest(BaseModel):
    userId: str
    mode: str = "classic"


class GateResponse(BaseModel):
    allowed: bool
    reason: Optional[str] = None
    userMessage: Optional[str] = None


class AnswerRequest(BaseModel):
    sessionId: str
    userId: str
    questionNumber: int = Field(ge=1)
    responseTimeMs: int = Field(ge=0)


class FinalizeRequest(BaseModel):
    userId: str


class ChallengeRequest(BaseModel):
    sessionId: str
    userId: str
    questionNumber: int = Field(ge=1)
    shownAt: List[int] = Field(default_factory=list)


class ChallengePayload(BaseModel):
    type: str
    prompt: str
    options: Optional[List[str]] = None
    expiresInSeconds: int


class ResolveRequest(BaseModel):
    adminId: str
    notes: str = ""


class LinkReviewRequest(BaseModel):
    adminId: str
    confirmed: bool


# ---------------------------------------------------------------------------
# Per-user state rows
# ---------------------------------------------------------------------------

class SuspiciousFlag(BaseModel):
    type: str
    details: Dict = Field(default_factory=dict)
    timestamp: datetime


class RestrictionState(BaseModel):
    """Independent restriction flags for one user (one row per user)."""
    user_id: str
    is_suspended: bool = False
    suspension_reason: Optional[str] = None
    suspended_at: Optional[datetime] = None
    suspended_by: Optional[str] = None
    temp_suspended_until: Optional[datetime] = None
    temp_suspension_reason: Optional[str] = None
    q1_timeout_streak: int = 0
    q1_timeout_last: Optional[datetime] = None
    penalty_games_remaining: int = 0
    penalty_timer_seconds: Optional[int] = None
    suspicious_user: bool = False
    suspicious_flags: List[SuspiciousFlag] = Field(default_factory=list)
    last_grand_prize_win: Optional[datetime] = None
    grand_prize_cooldown_until: Optional[datetime] = None


class UserCounters(BaseModel):
    user_id: str
    fraud_flags: int = 0
    multi_account_flags: int = 0
    last_fraud_check: Optional[datetime] = None
