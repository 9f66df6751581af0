"""Built-in sample deck for trying the scheduler without importing anything."""

from datetime import datetime

from backend.config import utcnow
from backend.domain import Card, Deck
from backend.srs.fsrs import FSRS
from ingestion.pipeline import stamp_positions

SAMPLE_CARDS = [
    (
        "What is a closure in JavaScript?",
        "A closure is a function that has access to variables from its outer (enclosing) scope "
        "even after the outer function has returned.",
        ["functions", "scope", "intermediate"],
    ),
    (
        "What is the difference between `let`, `const`, and `var`?",
        "`var` is function-scoped and hoisted, `let` and `const` are block-scoped. "
        "`const` creates immutable bindings.",
        ["variables", "es6", "basic"],
    ),
    (
        "What is event bubbling?",
        "Event bubbling is when an event starts from the target element and bubbles up "
        "through its parent elements.",
        ["dom", "events", "intermediate"],
    ),
    (
        "What does `this` refer to in JavaScript?",
        "`this` refers to the context in which a function is called. "
        "Its value depends on how the function is invoked.",
        ["context", "functions", "intermediate"],
    ),
    (
        "What is the purpose of `async`/`await`?",
        "`async`/`await` provides a cleaner way to work with Promises, making asynchronous "
        "code look more like synchronous code.",
        ["async", "promises", "es2017"],
    ),
    (
        "What is the difference between `==` and `===`?",
        "`==` performs type coercion before comparison, while `===` compares both value "
        "and type without coercion.",
        ["comparison", "operators", "basic"],
    ),
    (
        "What is destructuring in JavaScript?",
        "Destructuring is a syntax that allows unpacking values from arrays or properties "
        "from objects into distinct variables.",
        ["es6", "syntax", "arrays", "objects"],
    ),
    (
        "What is the spread operator (...)?",
        "The spread operator expands iterables (arrays, strings, objects) into individual "
        "elements or properties.",
        ["es6", "operators", "arrays", "objects"],
    ),
]


def create_sample_deck(scheduler: FSRS | None = None, now: datetime | None = None) -> tuple[Deck, list[Card]]:
    scheduler = scheduler or FSRS()
    now = now or utcnow()
    deck = Deck(
        name="JavaScript Fundamentals",
        description="Essential JavaScript concepts for web development",
        created_at=now,
        updated_at=now,
    )
    cards = stamp_positions(
        [scheduler.create_card(front, back, deck.id, tags, now=now) for front, back, tags in SAMPLE_CARDS], now
    )
    deck.recount(cards, now)
    return deck, cards
