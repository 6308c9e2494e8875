"""
ENGINE CONFIGURATION - Immutable thresholds and catalog data

All tunables are loaded ONCE into frozen dataclasses and injected into the
components that need them. Nothing here is mutated after load_config().

Environment (read through python-dotenv):
- GRAND_PRIZE_COOLDOWN_DAYS  default 7
- DAILY_WIN_LIMIT            default 30000
- MAINTENANCE_MODE           "true" to close competitive play
- MAINTENANCE_MESSAGE        optional custom maintenance text
- FAIRPLAY_API_KEY           admin API key for the HTTP surface
- ALERT_WEBHOOK_URL          optional outbound fraud-alert hook
- LOG_LEVEL                  default INFO
"""

import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


@dataclass(frozen=True)
class TelemetryThresholds:
    min_response_ms: int = 1500          # Minimum realistic human response
    suspicious_avg_ms: int = 2500        # Suspiciously fast session average
    suspicious_fast_count: int = 5       # Fast answers before review
    question_start_ttl: int = 60
    response_buffer_ttl: int = 3600
    fast_counter_ttl: int = 86400        # 24h window
    max_games_per_hour: int = 15
    max_perfect_games_per_day: int = 3
    questions_per_game: int = 15


@dataclass(frozen=True)
class CaptchaCatalog:
    """Challenge types, weights and the symbol tables the generators draw from."""

    weights: Tuple[Tuple[str, int], ...] = (
        ("category_match", 15),
        ("arithmetic", 15),
        ("symbol_count", 10),
        ("word_reversal", 10),
        ("noisy_grid_count", 20),
        ("odd_one_out", 15),
        ("pattern_completion", 15),
    )
    zones: Tuple[Tuple[int, int], ...] = ((6, 8), (11, 12))
    early_slot_probability: float = 0.5
    expiry_seconds: int = 12
    grid_width: int = 5

    categories: Dict[str, Tuple[str, ...]] = field(default_factory=lambda: {
        "ANIMAL": ("🐘", "🦁", "🐕", "🐈", "🐟", "🦅", "🐍", "🦋", "🐢", "🐰"),
        "FRUIT": ("🍎", "🍊", "🍋", "🍇", "🍓", "🍑", "🍒", "🥭", "🍍", "🍌"),
        "VEHICLE": ("🚗", "🚌", "✈️", "🚂", "🚢", "🏍️", "🚁", "🚲", "🛵", "🚀"),
        "FOOD": ("🍕", "🍔", "🌮", "🍜", "🍣", "🥘", "🍳", "🥗", "🍝", "🥪"),
        "SPORT": ("⚽", "🏀", "🎾", "🏈", "⚾", "🏐", "🎱", "🏓", "🏸", "🥊"),
        "WEATHER": ("☀️", "🌧️", "❄️", "⛈️", "🌈", "💨", "🌪️", "☁️", "⚡", "🌊"),
        "MUSIC": ("🎵", "🎸", "🎹", "🥁", "🎺", "🎷", "🎻", "🪕", "🎤", "🎧"),
        "BUILDING": ("🏠", "🏢", "🏥", "🏫", "🏰", "⛪", "🕌", "🏛️", "🏪", "🏨"),
    })
    distractors: Tuple[str, ...] = (
        "💡", "📱", "💻", "📚", "🔑", "💎", "🎁", "🎈", "🎯", "🔔",
        "⭐", "❤️", "🌍", "🔥", "💧", "🌸", "🍀", "🌙", "🎭", "🎪",
        "🧩", "🪄", "🧸", "📌", "🗝️", "🎀", "🧲", "🪁", "📎", "🔮",
    )
    reverse_words: Tuple[str, ...] = (
        "PLAY", "GAME", "QUIZ", "CASH", "LUCK", "BEST", "STAR", "GOLD",
        "FAST", "COOL", "NICE", "HOPE", "LOVE", "KING", "HERO", "MEGA",
    )
    count_symbols: Tuple[str, ...] = ("⭐", "❤️", "🔥", "💎", "🎯", "🌟", "💫", "✨")
    sequence_symbols: Tuple[str, ...] = ("🔴", "🟡", "🟢", "🔵", "🟣", "🟠", "⚫", "⚪")


@dataclass(frozen=True)
class BehaviorThresholds:
    min_sessions: int = 10
    window_days: int = 30
    min_response_ms: int = 1500
    suspicious_avg_ms: int = 2500
    suspicious_perfect_games: int = 3
    skill_jump: float = 0.30
    skill_trend_step: float = 0.10
    skill_baseline_sessions: int = 5
    low_stddev_ms: float = 500.0
    low_stddev_min_games: int = 20
    broad_hours: int = 18
    broad_hours_min_games: int = 50
    max_games_per_day: float = 20.0
    alert_score: int = 50
    fraud_flag_score: int = 70
    # Real-time per-session check
    session_fast_responses: int = 3
    performance_margin: float = 5.0
    performance_baseline_cap: float = 10.0
    session_flag_warnings: int = 2


@dataclass(frozen=True)
class CorrelationThresholds:
    device_confidence: float = 0.9
    ip_confidence: float = 0.4
    ip_overlap_confidence: float = 0.7
    ip_window_days: int = 7
    overlap_window_days: int = 30
    overlap_seconds: int = 300
    multi_account_users: int = 3


@dataclass(frozen=True)
class RestrictionPolicy:
    q1_warning_streak: int = 2
    q1_suspend_streak: int = 3
    q1_suspension_hours: int = 36
    q1_streak_reset_hours: int = 24
    penalty_games: int = 5
    penalty_timer_seconds: int = 10
    normal_timer_seconds: int = 12
    grand_prize_cooldown_days: int = 7
    daily_win_limit: float = 30000.0
    practice_mode: str = "practice"
    maintenance_mode: bool = False
    maintenance_message: Optional[str] = None


@dataclass(frozen=True)
class EngineConfig:
    telemetry: TelemetryThresholds = field(default_factory=TelemetryThresholds)
    captcha: CaptchaCatalog = field(default_factory=CaptchaCatalog)
    behavior: BehaviorThresholds = field(default_factory=BehaviorThresholds)
    correlation: CorrelationThresholds = field(default_factory=CorrelationThresholds)
    restrictions: RestrictionPolicy = field(default_factory=RestrictionPolicy)
    api_key: Optional[str] = None
    alert_webhook_url: Optional[str] = None
    log_level: str = "INFO"


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def load_config() -> EngineConfig:
    """Build the engine configuration from the environment."""
    restrictions = RestrictionPolicy(
        grand_prize_cooldown_days=_int_env("GRAND_PRIZE_COOLDOWN_DAYS", 7),
        daily_win_limit=float(_int_env("DAILY_WIN_LIMIT", 30000)),
        maintenance_mode=os.getenv("MAINTENANCE_MODE", "false").lower() == "true",
        maintenance_message=os.getenv("MAINTENANCE_MESSAGE") or None,
    )
    return EngineConfig(
        restrictions=restrictions,
        api_key=os.getenv("FAIRPLAY_API_KEY"),
        alert_webhook_url=os.getenv("ALERT_WEBHOOK_URL") or None,
        log_level=os.getenv("LOG_LEVEL", "INFO"),
    )
