"""FSRS (Free Spaced Repetition Scheduler) algorithm implementation.

An FSRS-5 style scheduler with short-term learning steps.
Reference: https://github.com/open-spaced-repetition/fsrs4anki

Key concepts:
- Stability (S): The number of days after which retention drops to 90%.
- Difficulty (D): A value between 1 and 10 representing inherent item difficulty.
- Retrievability (R): The probability of recall at a given time since last review.
  Memory decays exponentially: R(t) = 0.9 ** (t / S).
- Rating: 1=Again, 2=Hard, 3=Good, 4=Easy

The scheduler keeps no state between calls. Every operation takes a complete
card and returns a new one, so the same (card, grade, time) always produces
the same result, fuzz included.
"""

import logging
import math
import random
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta

from backend.config import Settings, as_naive_utc, settings, utcnow
from backend.domain import Card, Rating, State
from backend.errors import InvalidGrade

logger = logging.getLogger(__name__)

# FSRS-5 default parameters
# w[0..3]: initial stability for ratings Again/Hard/Good/Easy on first review
# w[4..5]: initial difficulty
# w[6]: difficulty change per rating step
# w[7]: difficulty mean reversion weight
# w[8..10]: stability increase on successful recall
# w[11..14]: stability after a lapse
# w[15..16]: hard penalty / easy bonus
# w[17..18]: same-day (short-term) stability change
DEFAULT_WEIGHTS = (
    0.40255,
    1.18385,
    3.173,
    15.69105,
    7.1949,
    0.5345,
    1.4604,
    0.0046,
    1.54575,
    0.1192,
    1.01925,
    1.9395,
    0.11,
    0.29605,
    2.2698,
    0.2315,
    2.9898,
    0.51655,
    0.6621,
)

DEFAULT_REQUEST_RETENTION = 0.9
DEFAULT_MAXIMUM_INTERVAL = 36500  # 100 years

# Stability is defined as the time for R to fall to this value
STABILITY_RETENTION = 0.9

# Bounds
MIN_DIFFICULTY = 1.0
MAX_DIFFICULTY = 10.0
MIN_STABILITY = 0.01

MINUTES_PER_DAY = 24 * 60

# (start, end, factor): fuzz grows by `factor` per day of interval within each band
FUZZ_RANGES = (
    (2.5, 7.0, 0.15),
    (7.0, 20.0, 0.1),
    (20.0, math.inf, 0.05),
)


def parse_grade(grade: object) -> Rating:
    """Validate a grade. Out-of-range values are rejected, never clamped."""
    if isinstance(grade, bool) or not isinstance(grade, int):
        raise InvalidGrade(grade)
    try:
        return Rating(grade)
    except ValueError:
        raise InvalidGrade(grade) from None


def format_interval(days: float) -> str:
    """Render an interval in days as a short label like ``10m``, ``3h``, ``4d``, ``2mo``, ``1y``."""
    if days < 1:
        minutes = round(days * MINUTES_PER_DAY)
        if minutes < 60:
            return f"{max(minutes, 1)}m"
        return f"{round(minutes / 60)}h"
    if days < 30:
        return f"{round(days)}d"
    if days < 365:
        return f"{round(days / 30)}mo"
    return f"{round(days / 365)}y"


@dataclass(frozen=True)
class SchedulerParameters:
    """Memory-model coefficients and scheduling policy.

    Learning steps are in minutes. A learning card graduates to Review once its
    steps are exhausted or the next step would reach ``graduation_threshold_days``.
    """

    weights: tuple[float, ...] = DEFAULT_WEIGHTS
    request_retention: float = DEFAULT_REQUEST_RETENTION
    maximum_interval: int = DEFAULT_MAXIMUM_INTERVAL
    enable_fuzz: bool = True
    learning_steps: tuple[float, ...] = (1.0, 10.0)
    relearning_steps: tuple[float, ...] = (10.0,)
    graduation_threshold_days: float = 1.0

    def __post_init__(self) -> None:
        if len(self.weights) != len(DEFAULT_WEIGHTS):
            raise ValueError(f"Expected {len(DEFAULT_WEIGHTS)} weights, got {len(self.weights)}")
        if not 0 < self.request_retention < 1:
            raise ValueError("request_retention must be between 0 and 1")
        if self.maximum_interval < 1:
            raise ValueError("maximum_interval must be at least 1 day")
        if any(step <= 0 for step in (*self.learning_steps, *self.relearning_steps)):
            raise ValueError("Learning steps must be positive")


@dataclass
class ReviewOption:
    """The projected outcome of one grade."""

    card: Card
    interval: str
    due: datetime


@dataclass
class ReviewOptions:
    """Projected outcomes for all four grades."""

    again: ReviewOption
    hard: ReviewOption
    good: ReviewOption
    easy: ReviewOption

    def __getitem__(self, rating: Rating | int) -> ReviewOption:
        return getattr(self, parse_grade(rating).name.lower())


@dataclass
class DueStatus:
    """Cards bucketed by scheduling status."""

    due: list[Card] = field(default_factory=list)
    new: list[Card] = field(default_factory=list)
    learning: list[Card] = field(default_factory=list)
    review: list[Card] = field(default_factory=list)


class FSRS:
    """Free Spaced Repetition Scheduler."""

    def __init__(self, parameters: SchedulerParameters | None = None) -> None:
        """Initialize FSRS with optional custom parameters."""
        self.params = parameters or SchedulerParameters()
        self.w = self.params.weights
        # Converts elapsed days to ln(R): R = exp(decay * t / S)
        self._decay = math.log(STABILITY_RETENTION)

    @classmethod
    def from_settings(cls, config: Settings = settings) -> "FSRS":
        """Build a scheduler from application settings."""
        return cls(
            SchedulerParameters(
                request_retention=config.request_retention,
                maximum_interval=config.maximum_interval,
                enable_fuzz=config.enable_fuzz,
                learning_steps=tuple(float(s) for s in config.learning_steps_minutes),
                relearning_steps=tuple(float(s) for s in config.relearning_steps_minutes),
            )
        )

    # --- Public API ---

    def create_card(
        self,
        front: str,
        back: str,
        deck_id: str,
        tags: list[str] | None = None,
        now: datetime | None = None,
    ) -> Card:
        """Create a New card that is due immediately and has no review history.

        The card starts from the model's prior: the stability of a first-review
        lapse and the difficulty of a first-review Good.
        """
        now = as_naive_utc(now) if now else utcnow()
        return Card(
            front=front,
            back=back,
            deck_id=deck_id,
            tags=list(tags or []),
            state=State.NEW,
            due=now,
            stability=self.w[0],
            difficulty=self._initial_difficulty(Rating.GOOD),
            created_at=now,
            updated_at=now,
        )

    def review_card(self, card: Card, grade: Rating | int, at: datetime | None = None) -> Card:
        """Apply a grade and return the updated card. The input card is not modified."""
        rating = parse_grade(grade)
        at = as_naive_utc(at) if at else utcnow()
        updated = self._schedule(card, at)[rating]
        logger.debug(
            "Reviewed card %s: %s %s -> %s, S=%.2f D=%.2f, next in %s",
            card.id,
            rating.name,
            card.state.name,
            updated.state.name,
            updated.stability,
            updated.difficulty,
            format_interval(updated.scheduled_days),
        )
        return updated

    def next_review_options(self, card: Card, at: datetime | None = None) -> ReviewOptions:
        """Project all four grades without modifying the card."""
        at = as_naive_utc(at) if at else utcnow()
        projected = self._schedule(card, at)
        options = {
            rating.name.lower(): ReviewOption(
                card=next_card,
                interval=format_interval(next_card.scheduled_days),
                due=next_card.due,
            )
            for rating, next_card in projected.items()
        }
        return ReviewOptions(**options)

    def calculate_retention(self, card: Card, at: datetime | None = None) -> float:
        """Estimate the probability of recalling the card at ``at``."""
        if card.last_review is None or card.state == State.NEW:
            return 1.0
        at = as_naive_utc(at) if at else utcnow()
        return self._retrievability(self._elapsed_days(card, at), card.stability)

    def is_card_due(self, card: Card, at: datetime | None = None) -> bool:
        """Return True if the card's due time has been reached."""
        at = as_naive_utc(at) if at else utcnow()
        return card.due <= at

    def cards_by_due_status(self, cards: list[Card], at: datetime | None = None) -> DueStatus:
        """Split cards into due, new, learning and not-yet-due review buckets."""
        at = as_naive_utc(at) if at else utcnow()
        status = DueStatus()
        for card in cards:
            due = self.is_card_due(card, at)
            if due:
                status.due.append(card)
            if card.state == State.NEW:
                status.new.append(card)
            elif card.state in (State.LEARNING, State.RELEARNING):
                status.learning.append(card)
            elif not due:
                status.review.append(card)
        return status

    # --- Scheduling ---

    def _schedule(self, card: Card, at: datetime) -> dict[Rating, Card]:
        """Compute the next card for every grade in one projection."""
        elapsed = self._elapsed_days(card, at)
        if card.state == State.NEW:
            return self._schedule_new(card, at)
        if card.state in (State.LEARNING, State.RELEARNING):
            return self._schedule_learning(card, at, elapsed)
        return self._schedule_review(card, at, elapsed)

    def _schedule_new(self, card: Card, at: datetime) -> dict[Rating, Card]:
        options = {}
        for rating in Rating:
            stability = self.w[rating - 1]
            if rating == Rating.AGAIN and math.isfinite(card.stability) and card.stability > 0:
                # Imported New cards may already carry a lower stability
                stability = min(stability, card.stability)
            difficulty = self._initial_difficulty(rating)
            options[rating] = self._step(
                card,
                rating,
                at,
                stability=stability,
                difficulty=difficulty,
                elapsed=0.0,
                steps=self.params.learning_steps,
                step_index=0,
                learning_state=State.LEARNING,
            )
        return self._order_graduations(options)

    def _schedule_learning(self, card: Card, at: datetime, elapsed: float) -> dict[Rating, Card]:
        if card.state == State.RELEARNING:
            steps = self.params.relearning_steps
        else:
            steps = self.params.learning_steps
        stability = self._current_stability(card)
        difficulty = self._current_difficulty(card)

        options = {}
        for rating in Rating:
            new_stability = self._short_term_stability(stability, rating)
            if rating == Rating.AGAIN:
                new_stability = min(new_stability, stability)
            options[rating] = self._step(
                card,
                rating,
                at,
                stability=new_stability,
                difficulty=self._next_difficulty(difficulty, rating),
                elapsed=elapsed,
                steps=steps,
                step_index=card.learning_steps,
                learning_state=card.state,
            )
        return self._order_graduations(options)

    def _schedule_review(self, card: Card, at: datetime, elapsed: float) -> dict[Rating, Card]:
        stability = self._current_stability(card)
        difficulty = self._current_difficulty(card)
        retrievability = self._retrievability(elapsed, stability)

        new_stability: dict[Rating, float] = {}
        for rating in Rating:
            if elapsed < 1:
                # Same-day review: memory has not had time to consolidate
                s = self._short_term_stability(stability, rating)
            elif rating == Rating.AGAIN:
                s = self._stability_after_fail(stability, difficulty, retrievability)
            else:
                s = self._stability_after_success(stability, difficulty, retrievability, rating)
            new_stability[rating] = s
        new_stability[Rating.AGAIN] = min(new_stability[Rating.AGAIN], stability)

        hard = self._next_interval(new_stability[Rating.HARD])
        good = self._next_interval(new_stability[Rating.GOOD])
        easy = self._next_interval(new_stability[Rating.EASY])
        if self.params.enable_fuzz:
            fraction = self._fuzz_fraction(card, at)
            hard = self._apply_fuzz(hard, elapsed, fraction)
            good = self._apply_fuzz(good, elapsed, fraction)
            easy = self._apply_fuzz(easy, elapsed, fraction)
        hard = min(hard, good)
        good = max(good, hard + 1)
        easy = max(easy, good + 1)
        intervals = {
            Rating.HARD: min(hard, self.params.maximum_interval),
            Rating.GOOD: min(good, self.params.maximum_interval),
            Rating.EASY: min(easy, self.params.maximum_interval),
        }

        options = {}
        for rating in Rating:
            difficulty_after = self._next_difficulty(difficulty, rating)
            if rating == Rating.AGAIN:
                # Lapse: fall back into relearning
                options[rating] = self._step(
                    card,
                    rating,
                    at,
                    stability=new_stability[rating],
                    difficulty=difficulty_after,
                    elapsed=elapsed,
                    steps=self.params.relearning_steps,
                    step_index=0,
                    learning_state=State.RELEARNING,
                    lapse=True,
                )
                continue
            options[rating] = self._next_card(
                card,
                at,
                state=State.REVIEW,
                stability=new_stability[rating],
                difficulty=difficulty_after,
                elapsed=elapsed,
                scheduled_days=float(intervals[rating]),
                step_index=0,
            )
        return options

    def _step(
        self,
        card: Card,
        rating: Rating,
        at: datetime,
        *,
        stability: float,
        difficulty: float,
        elapsed: float,
        steps: tuple[float, ...],
        step_index: int,
        learning_state: State,
        lapse: bool = False,
    ) -> Card:
        """Advance a card through its (re)learning steps, graduating when they run out."""
        step_minutes: float | None
        if not steps or rating == Rating.EASY:
            step_minutes = None
        elif rating == Rating.AGAIN:
            step_index = 0
            step_minutes = steps[0]
        elif rating == Rating.HARD:
            step_index = min(step_index, len(steps) - 1)
            if step_index == 0 and len(steps) > 1:
                step_minutes = (steps[0] + steps[1]) / 2
            elif step_index == 0:
                step_minutes = min(steps[0] * 1.5, steps[0] + MINUTES_PER_DAY)
            else:
                step_minutes = steps[step_index]
        else:
            step_index += 1
            step_minutes = steps[step_index] if step_index < len(steps) else None

        if step_minutes is not None:
            days = max(1, round(step_minutes)) / MINUTES_PER_DAY
            # Never wait past the point where recall drops below the target
            days = min(days, self._ideal_interval(stability))
            days = max(1, round(days * MINUTES_PER_DAY)) / MINUTES_PER_DAY
            if days < self.params.graduation_threshold_days or rating == Rating.AGAIN:
                return self._next_card(
                    card,
                    at,
                    state=learning_state,
                    stability=stability,
                    difficulty=difficulty,
                    elapsed=elapsed,
                    scheduled_days=days,
                    step_index=step_index,
                    lapse=lapse,
                )

        return self._next_card(
            card,
            at,
            state=State.REVIEW,
            stability=stability,
            difficulty=difficulty,
            elapsed=elapsed,
            scheduled_days=float(self._next_interval(stability)),
            step_index=0,
            lapse=lapse,
        )

    def _order_graduations(self, options: dict[Rating, Card]) -> dict[Rating, Card]:
        """Keep Easy strictly longer than Good when both graduate to Review."""
        good, easy = options[Rating.GOOD], options[Rating.EASY]
        if good.state == State.REVIEW and easy.state == State.REVIEW:
            if easy.scheduled_days <= good.scheduled_days:
                days = min(good.scheduled_days + 1, float(self.params.maximum_interval))
                options[Rating.EASY] = replace(
                    easy, scheduled_days=days, due=easy.last_review + timedelta(days=days)
                )
        return options

    def _next_card(
        self,
        card: Card,
        at: datetime,
        *,
        state: State,
        stability: float,
        difficulty: float,
        elapsed: float,
        scheduled_days: float,
        step_index: int,
        lapse: bool = False,
    ) -> Card:
        return replace(
            card,
            state=state,
            stability=stability,
            difficulty=difficulty,
            elapsed_days=elapsed,
            scheduled_days=scheduled_days,
            learning_steps=step_index,
            due=at + timedelta(days=scheduled_days),
            reps=card.reps + 1,
            lapses=card.lapses + 1 if lapse else card.lapses,
            last_review=at,
            updated_at=at,
            media=list(card.media),
        )

    # --- Memory model ---

    def _elapsed_days(self, card: Card, at: datetime) -> float:
        if card.last_review is None:
            return 0.0
        return max(0.0, (at - card.last_review).total_seconds() / 86400)

    def _current_stability(self, card: Card) -> float:
        if not math.isfinite(card.stability) or card.stability < MIN_STABILITY:
            return MIN_STABILITY
        return card.stability

    def _current_difficulty(self, card: Card) -> float:
        if not math.isfinite(card.difficulty):
            return self._initial_difficulty(Rating.GOOD)
        return self._clamp_difficulty(card.difficulty)

    def _retrievability(self, elapsed_days: float, stability: float) -> float:
        """Probability of recall after ``elapsed_days``: R = 0.9 ** (t / S)."""
        if elapsed_days <= 0:
            return 1.0
        stability = max(stability, MIN_STABILITY)
        return min(1.0, max(0.0, math.exp(self._decay * elapsed_days / stability)))

    def _ideal_interval(self, stability: float) -> float:
        """Days until R falls to the requested retention.

        Solving request_retention = 0.9 ** (t / S) for t.
        """
        return stability * math.log(self.params.request_retention) / self._decay

    def _next_interval(self, stability: float) -> int:
        """Whole-day review interval, clamped to [1, maximum_interval]."""
        interval = round(self._ideal_interval(stability))
        return int(min(max(interval, 1), self.params.maximum_interval))

    def _fuzz_fraction(self, card: Card, at: datetime) -> float:
        # Seeded from the review itself so repeated projections agree
        seed = f"{card.id}:{card.reps}:{at.isoformat()}"
        return random.Random(seed).random()

    def _apply_fuzz(self, interval: int, elapsed_days: float, fraction: float) -> int:
        if interval < 2.5:
            return interval
        delta = 1.0
        for start, end, factor in FUZZ_RANGES:
            delta += factor * max(min(interval, end) - start, 0.0)
        low = max(2, round(interval - delta))
        high = min(round(interval + delta), self.params.maximum_interval)
        if interval > elapsed_days:
            low = max(low, math.floor(elapsed_days) + 1)
        low = min(low, high)
        return int(math.floor(fraction * (high - low + 1) + low))

    def _initial_difficulty(self, rating: Rating) -> float:
        """D0 = w4 - e^(w5 * (rating - 1)) + 1"""
        d = self.w[4] - math.exp(self.w[5] * (rating - 1)) + 1
        return self._clamp_difficulty(d)

    def _next_difficulty(self, difficulty: float, rating: Rating) -> float:
        """Move difficulty by rating, damped near the ceiling, then revert toward D0(Easy)."""
        delta = -self.w[6] * (rating - 3)
        d = difficulty + delta * (MAX_DIFFICULTY - difficulty) / 9
        d = self.w[7] * self._initial_difficulty(Rating.EASY) + (1 - self.w[7]) * d
        return self._clamp_difficulty(d)

    def _clamp_difficulty(self, difficulty: float) -> float:
        return max(MIN_DIFFICULTY, min(MAX_DIFFICULTY, difficulty))

    def _short_term_stability(self, stability: float, rating: Rating) -> float:
        """S' = S * e^(w17 * (rating - 3 + w18))"""
        s = stability * math.exp(self.w[17] * (rating - 3 + self.w[18]))
        return self._floor_stability(s, stability)

    def _stability_after_success(
        self,
        stability: float,
        difficulty: float,
        retrievability: float,
        rating: Rating,
    ) -> float:
        """Calculate new stability after a successful review (rating >= 2).

        S' = S * (1 + e^(w8) * (11 - D) * S^(-w9) * (e^(w10*(1-R)) - 1) * penalty * bonus)
        """
        hard_penalty = self.w[15] if rating == Rating.HARD else 1.0
        easy_bonus = self.w[16] if rating == Rating.EASY else 1.0
        factor = (
            math.exp(self.w[8])
            * (11 - difficulty)
            * stability ** (-self.w[9])
            * (math.exp(self.w[10] * (1 - retrievability)) - 1)
            * hard_penalty
            * easy_bonus
        )
        return self._floor_stability(stability * (1 + factor), stability)

    def _stability_after_fail(
        self,
        stability: float,
        difficulty: float,
        retrievability: float,
    ) -> float:
        """Calculate new stability after a lapse (rating = 1).

        S' = w11 * D^(-w12) * ((S+1)^w13 - 1) * e^(w14*(1-R))
        """
        s = (
            self.w[11]
            * difficulty ** (-self.w[12])
            * ((stability + 1) ** self.w[13] - 1)
            * math.exp(self.w[14] * (1 - retrievability))
        )
        return self._floor_stability(s, stability)

    def _floor_stability(self, value: float, fallback: float) -> float:
        if not math.isfinite(value):
            value = fallback
        return max(MIN_STABILITY, value)
