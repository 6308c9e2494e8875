"""
CAPTCHA CHALLENGES - Scheduled anti-bot puzzles inside a 15-question game

SCHEDULING:
Two zones per session, {6, 8} and {11, 12}. At the first unseen question of
a zone the early slot fires with probability 0.5; if it did not fire, the
late slot fires unconditionally. One challenge per zone, two per session.

GENERATION:
Seven generators picked by weight (category match 15, arithmetic 15,
symbol count 10, word reversal 10, noisy grid 20, odd one out 15,
pattern completion 15). Every challenge carries a canonical answer, a
non-empty accepted set and a plain-text summary for the logs.

VALIDATION:
Trim + case-fold, then exact membership in the accepted set. No partial
credit. The 12s deadline is enforced by the caller; we only record whether
it was met.
"""

import bisect
import itertools
import logging
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from .audit import AuditEventType, AuditTrail
from .config import CaptchaCatalog
from .outcome import best_effort
from .storage import Clock, ExpiringStore, FraudStore

logger = logging.getLogger(__name__)

HEADER = "🔐 SECURITY CHECK 🔐"
BLANK = "❓"


@dataclass(frozen=True)
class Challenge:
    type: str
    prompt: str
    answer: str
    accepted_answers: FrozenSet[str]
    summary: str
    options: Optional[Tuple[str, ...]] = None
    expires_in_seconds: int = 12

    def __post_init__(self):
        if not self.accepted_answers or self.answer not in self.accepted_answers:
            raise ValueError(f"Challenge {self.type} must accept its canonical answer")


@dataclass
class CaptchaResult:
    passed: bool
    timed_out: bool
    challenge_type: Optional[str] = None
    response_ms: Optional[int] = None


@dataclass
class CaptchaStats:
    total: int = 0
    passed: int = 0
    failed: int = 0
    avg_response_ms: Optional[float] = None
    min_response_ms: Optional[int] = None


@dataclass
class CaptchaPatternCheck:
    suspicious: bool
    flags: List[str] = field(default_factory=list)
    pass_rate: Optional[float] = None
    avg_response_ms: Optional[float] = None
    total: int = 0


class WeightedSampler:
    """Cumulative-distribution sampler; P(item) = weight / sum(weights)."""

    def __init__(self, weighted: Sequence[Tuple[str, float]], rng: random.Random):
        if not weighted:
            raise ValueError("WeightedSampler needs at least one item")
        items, weights = zip(*weighted)
        if any(w < 0 for w in weights):
            raise ValueError("Weights must be non-negative")
        self.items = list(items)
        self.cumulative = list(itertools.accumulate(weights))
        self.total = self.cumulative[-1]
        if self.total <= 0:
            raise ValueError("Weights must sum to a positive value")
        self.rng = rng

    def sample(self) -> str:
        point = self.rng.random() * self.total
        return self.items[bisect.bisect_right(self.cumulative, point)]


def validate(challenge: Optional[Challenge], answer) -> bool:
    """Exact, case-insensitive match against the accepted set."""
    if challenge is None or isinstance(answer, bool) or not isinstance(answer, (str, int)):
        return False
    normalized = str(answer).strip().casefold()
    if not normalized:
        return False
    return normalized in {a.casefold() for a in challenge.accepted_answers}


class CaptchaGenerator:

    def __init__(self, catalog: CaptchaCatalog, rng: Optional[random.Random] = None):
        self.catalog = catalog
        self.rng = rng or random.Random()
        self.sampler = WeightedSampler(catalog.weights, self.rng)
        self.generators: Dict[str, Callable[[], Challenge]] = {
            "category_match": self.category_match,
            "arithmetic": self.arithmetic,
            "symbol_count": self.symbol_count,
            "word_reversal": self.word_reversal,
            "noisy_grid_count": self.noisy_grid_count,
            "odd_one_out": self.odd_one_out,
            "pattern_completion": self.pattern_completion,
        }

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def should_show(self, question_number: int, shown: Iterable[int]) -> bool:
        shown = set(shown)
        for early, late in self.catalog.zones:
            if question_number not in (early, late):
                continue
            if early in shown or late in shown:
                return False
            if question_number == early:
                return self.rng.random() < self.catalog.early_slot_probability
            return True
        return False

    def generate(self, challenge_type: Optional[str] = None) -> Challenge:
        kind = challenge_type or self.sampler.sample()
        return self.generators[kind]()

    # ------------------------------------------------------------------
    # Generators
    # ------------------------------------------------------------------

    def _challenge(self, kind: str, body: str, answer: str, summary: str,
                   options: Optional[List[str]] = None, accepted: Iterable[str] = ()) -> Challenge:
        prompt = f"{HEADER}\n\n{body}\n\n⏱️ {self.catalog.expiry_seconds} seconds"
        return Challenge(
            type=kind,
            prompt=prompt,
            answer=answer,
            accepted_answers=frozenset({answer, *accepted}),
            summary=summary,
            options=tuple(options) if options else None,
            expires_in_seconds=self.catalog.expiry_seconds,
        )

    @staticmethod
    def _numbered(options: Sequence[str]) -> str:
        return "\n".join(f"{i}. {o}" for i, o in enumerate(options, 1))

    def category_match(self) -> Challenge:
        category = self.rng.choice(sorted(self.catalog.categories))
        correct = self.rng.choice(self.catalog.categories[category])
        pool = list(self.catalog.distractors) + [
            s for name, symbols in sorted(self.catalog.categories.items())
            if name != category for s in symbols
        ]
        decoys = self.rng.sample([s for s in dict.fromkeys(pool) if s != correct], 3)
        options = [correct] + decoys
        self.rng.shuffle(options)
        answer = str(options.index(correct) + 1)
        article = "an" if category[0] in "AEIOU" else "a"
        body = (f"Which one is {article} {category}?\n\n{self._numbered(options)}\n\n"
                f"Reply with 1, 2, 3 or 4")
        return self._challenge("category_match", body, answer,
                               f"Which is {article} {category}? ({correct})", options)

    def arithmetic(self) -> Challenge:
        op = self.rng.choice(("+", "-", "×"))
        if op == "+":
            a, b = self.rng.randint(3, 17), self.rng.randint(3, 17)
            result = a + b
        elif op == "-":
            a = self.rng.randint(10, 24)
            b = self.rng.randint(1, a)
            result = a - b
        else:
            a, b = self.rng.randint(2, 10), self.rng.randint(2, 10)
            result = a * b
        question = f"What is {a} {op} {b}?"
        return self._challenge("arithmetic", f"Solve this:\n\n{question}\n\nReply with the answer",
                               str(result), question)

    def _mixed(self, target: str, count: int) -> List[str]:
        noise_pool = [s for s in self.catalog.distractors if s != target]
        noise = [self.rng.choice(noise_pool) for _ in range(self.rng.randint(5, 10))]
        items = [target] * count + noise
        self.rng.shuffle(items)
        return items

    def symbol_count(self) -> Challenge:
        target = self.rng.choice(self.catalog.count_symbols)
        count = self.rng.randint(3, 9)
        line = "".join(self._mixed(target, count))
        body = f"Count carefully:\n\n{line}\n\nHow many {target} are there?"
        return self._challenge("symbol_count", body, str(count), f"How many {target} are there?")

    def noisy_grid_count(self) -> Challenge:
        target = self.rng.choice(self.catalog.count_symbols)
        count = self.rng.randint(3, 7)
        items = self._mixed(target, count)
        width = self.catalog.grid_width
        grid = "\n".join("".join(items[i:i + width]) for i in range(0, len(items), width))
        body = f"Count the {target} in this grid:\n\n{grid}\n\nHow many {target} are there?"
        return self._challenge("noisy_grid_count", body, str(count), f"Count {target} in mixed grid")

    def word_reversal(self) -> Challenge:
        word = self.rng.choice(self.catalog.reverse_words)
        reversed_word = word[::-1]
        body = f"Type this word BACKWARDS:\n\n{word}\n\nReply with the reversed word"
        return self._challenge("word_reversal", body, reversed_word, f"Type {word} backwards",
                               accepted=[reversed_word.lower()])

    def odd_one_out(self) -> Challenge:
        symbols = self.catalog.categories[self.rng.choice(sorted(self.catalog.categories))]
        majority, odd = self.rng.sample(symbols, 2)
        length = self.rng.randint(5, 7)
        position = self.rng.randint(1, length)
        row = [odd if i == position else majority for i in range(1, length + 1)]
        display = "  ".join(f"{i}:{s}" for i, s in enumerate(row, 1))
        body = (f"Find the ODD one out!\n\n{display}\n\n"
                f"Which position is different? Reply 1-{length}")
        return self._challenge("odd_one_out", body, str(position),
                               f"Find the odd one out (position {position})")

    def pattern_completion(self) -> Challenge:
        cycle = self.rng.sample(self.catalog.sequence_symbols, self.rng.randint(2, 3))
        sequence = cycle * 3
        blank = self.rng.randint(len(cycle), len(sequence) - 1)
        correct = sequence[blank]
        sequence[blank] = BLANK
        decoys = self.rng.sample([s for s in self.catalog.sequence_symbols if s != correct], 2)
        options = [correct] + decoys
        self.rng.shuffle(options)
        answer = str(options.index(correct) + 1)
        body = (f"Complete the pattern:\n\n{' '.join(sequence)}\n\nReplace the {BLANK}:\n\n"
                f"{self._numbered(options)}\n\nReply with 1, 2 or 3")
        return self._challenge("pattern_completion", body, answer,
                               f"Complete the pattern ({BLANK} = {correct})", options)


class CaptchaService:
    """Schedules challenges per session, keeps the pending one server-side, logs outcomes."""

    def __init__(
        self,
        catalog: CaptchaCatalog,
        ephemeral: ExpiringStore,
        store: FraudStore,
        audit: AuditTrail,
        rng: Optional[random.Random] = None,
        clock: Clock = datetime.now,
    ):
        self.catalog = catalog
        self.ephemeral = ephemeral
        self.store = store
        self.audit = audit
        self.clock = clock
        self.generator = CaptchaGenerator(catalog, rng)

    @staticmethod
    def _pending_key(session_id: str) -> str:
        return f"captcha_pending:{session_id}"

    @staticmethod
    def _shown_key(session_id: str) -> str:
        return f"captcha_shown:{session_id}"

    @staticmethod
    def _skipped_key(session_id: str) -> str:
        return f"captcha_skipped:{session_id}"

    def shown_questions(self, session_id: str) -> List[int]:
        outcome = best_effort("captcha schedule read", self.ephemeral.get, self._shown_key(session_id))
        return list(outcome.value or []) if outcome.ok else []

    def pending(self, session_id: str) -> Optional[Challenge]:
        outcome = best_effort("pending captcha read", self.ephemeral.get, self._pending_key(session_id))
        return outcome.value if outcome.ok else None

    def maybe_challenge(self, session_id: str, user_id: str, question_number: int,
                        shown: Optional[Iterable[int]] = None) -> Optional[Challenge]:
        """Return a challenge to show before this question, or None."""
        shown = set(self.shown_questions(session_id) if shown is None else shown)
        skipped = best_effort("captcha skip read", self.ephemeral.get, self._skipped_key(session_id))
        if skipped.ok and question_number in (skipped.value or []):
            return None

        if not self.generator.should_show(question_number, shown):
            # An early slot rolls once; the zone's late slot takes over.
            if question_number in {early for early, _ in self.catalog.zones}:
                best_effort("captcha skip", self.ephemeral.set, self._skipped_key(session_id),
                            sorted(set(skipped.value or []) | {question_number}), 3600)
            return None

        challenge = self.generator.generate()
        # Long enough to outlive the client deadline; lateness is judged on response_ms.
        ttl = self.catalog.expiry_seconds * 5
        best_effort("pending captcha", self.ephemeral.set, self._pending_key(session_id), challenge, ttl)
        best_effort("captcha schedule", self.ephemeral.set, self._shown_key(session_id),
                    sorted(shown | {question_number}), 3600)

        self.audit.log_event(session_id, user_id, AuditEventType.CAPTCHA_SHOWN, {
            "question_number": question_number,
            "captcha_type": challenge.type,
            "question": challenge.summary,
        })
        logger.info(f"🔐 CAPTCHA ({challenge.type}) shown to user {user_id} before Q{question_number}")
        return challenge

    def submit(self, session_id: str, user_id: str, question_number: int,
               challenge: Optional[Challenge], answer, response_ms: int) -> CaptchaResult:
        if challenge is None:
            challenge = self.pending(session_id)
        best_effort("pending captcha cleanup", self.ephemeral.delete, self._pending_key(session_id))

        timed_out = challenge is None or response_ms > challenge.expires_in_seconds * 1000
        passed = not timed_out and validate(challenge, answer)
        challenge_type = challenge.type if challenge else None

        if timed_out:
            event = AuditEventType.CAPTCHA_TIMEOUT
        elif passed:
            event = AuditEventType.CAPTCHA_PASSED
        else:
            event = AuditEventType.CAPTCHA_FAILED
        self.audit.log_event(session_id, user_id, event, {
            "question_number": question_number,
            "captcha_type": challenge_type,
            "response_time_ms": response_ms,
        })

        best_effort("captcha attempt", self.store.append_captcha_attempt, {
            "user_id": user_id,
            "session_id": session_id,
            "question_number": question_number,
            "captcha_type": challenge_type,
            "question": challenge.summary if challenge else None,
            "correct_answer": challenge.answer if challenge else None,
            "user_answer": None if answer is None else str(answer),
            "is_correct": passed,
            "timed_out": timed_out,
            "response_time_ms": response_ms,
            "created_at": self.clock(),
        })

        if passed:
            logger.info(f"✅ CAPTCHA passed by user {user_id} in {response_ms}ms")
        else:
            logger.warning(f"❌ CAPTCHA {'timed out' if timed_out else 'failed'} for user {user_id} "
                           f"(session {session_id}, Q{question_number})")
        return CaptchaResult(passed=passed, timed_out=timed_out,
                             challenge_type=challenge_type, response_ms=response_ms)

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    def user_stats(self, user_id: str) -> Optional[CaptchaStats]:
        outcome = best_effort("captcha stats", self.store.captcha_attempts_for_user, user_id)
        if not outcome.ok:
            return None
        attempts = outcome.value
        if not attempts:
            return CaptchaStats()
        times = [a["response_time_ms"] for a in attempts]
        passed = sum(1 for a in attempts if a["is_correct"])
        return CaptchaStats(
            total=len(attempts),
            passed=passed,
            failed=len(attempts) - passed,
            avg_response_ms=sum(times) / len(times),
            min_response_ms=min(times),
        )

    def check_suspicious_patterns(self, user_id: str) -> CaptchaPatternCheck:
        stats = self.user_stats(user_id)
        if stats is None or stats.total < 5:
            return CaptchaPatternCheck(suspicious=False, total=stats.total if stats else 0)

        pass_rate = stats.passed / stats.total
        flags = []
        if stats.min_response_ms < 500:
            flags.append("captcha_too_fast")
        if stats.avg_response_ms < 1500 and stats.total > 10:
            flags.append("captcha_consistently_fast")
        if pass_rate < 0.5 and stats.total > 10:
            flags.append("captcha_high_failure")

        if flags:
            logger.warning(f"⚠️ Suspicious CAPTCHA pattern for user {user_id}: {', '.join(flags)}")
        return CaptchaPatternCheck(
            suspicious=bool(flags),
            flags=flags,
            pass_rate=round(pass_rate, 3),
            avg_response_ms=round(stats.avg_response_ms),
            total=stats.total,
        )
