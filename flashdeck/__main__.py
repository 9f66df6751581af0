"""CLI interface for Flashdeck.

Usage:
    python -m flashdeck import deck.apkg          Import a deck file (.apkg, .csv, .tsv, .txt, .json)
    python -m flashdeck export DECK -f csv        Export a deck as json, csv or apkg
    python -m flashdeck decks                     List decks with card counts
    python -m flashdeck due                       Show how many cards are due
    python -m flashdeck review DECK               Start a review session
    python -m flashdeck stats                     Show your statistics
    python -m flashdeck sample                    Create the sample deck
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from backend.config import utcnow
from backend.domain import Deck
from backend.errors import DeckImportError
from backend.srs.fsrs import FSRS
from backend.srs.queue import build_queue
from backend.srs.stats import compute_stats
from backend.storage import Storage, ensure_db
from flashdeck.sample import create_sample_deck
from ingestion.normalizer import strip_html
from ingestion.pipeline import ExportFormat, export_deck, export_filename, import_path

logger = logging.getLogger(__name__)


async def resolve_deck(storage: Storage, key: str) -> Deck | None:
    """Find a deck by id, id prefix or exact name."""
    deck = await storage.get_deck(key)
    if deck is not None:
        return deck
    for candidate in await storage.get_decks():
        if candidate.id.startswith(key) or candidate.name == key:
            return candidate
    return None


async def _require_deck(storage: Storage, key: str) -> Deck:
    deck = await resolve_deck(storage, key)
    if deck is None:
        print(f"  No deck matching '{key}'.")
        raise SystemExit(1)
    return deck


def _progress(percent: float) -> None:
    print(f"\r  Importing... {percent:3.0f}%", end="", flush=True)


async def cmd_import(args: argparse.Namespace) -> None:
    """Import a deck file into a new deck."""
    await ensure_db()
    try:
        result = import_path(Path(args.path), deck_name=args.deck_name, progress=_progress)
    except (DeckImportError, OSError) as e:
        print(f"\n  Import failed: {e}")
        raise SystemExit(1) from e
    print()

    await Storage().save_import(result.deck, result.cards)
    print(f"  Imported {len(result.cards)} cards into '{result.deck.name}' ({result.format.value})")
    if result.skipped:
        print(f"  Skipped {result.skipped} lines:")
        for warning in result.warnings[:10]:
            print(f"    {warning}")


async def cmd_export(args: argparse.Namespace) -> None:
    """Write a deck to a file."""
    await ensure_db()
    storage = Storage()
    deck = await _require_deck(storage, args.deck)
    fmt = ExportFormat(args.format)
    content = export_deck(deck, await storage.get_cards(deck.id), fmt)
    output = Path(args.output) if args.output else Path(export_filename(deck, fmt))
    output.write_bytes(content)
    print(f"  Exported '{deck.name}' to {output}")


async def cmd_decks(args: argparse.Namespace) -> None:
    """List decks with their card counts."""
    await ensure_db()
    decks = await Storage().get_decks()
    if not decks:
        print("  No decks yet. Import a file or run 'sample'.")
        return
    print(f"\n  {'ID':<10} {'Name':<36} {'Cards':>6} {'New':>6} {'Due':>6}")
    for deck in decks:
        print(f"  {deck.id[:8]:<10} {deck.name[:36]:<36} {deck.card_count:>6} {deck.new_card_count:>6} {deck.due_card_count:>6}")
    print()


async def cmd_due(args: argparse.Namespace) -> None:
    """Show how many cards are due."""
    await ensure_db()
    storage = Storage()
    deck_id = (await _require_deck(storage, args.deck)).id if args.deck else None
    stats = compute_stats(await storage.get_cards(deck_id), utcnow())
    print(f"  {stats.due_cards} cards due, {stats.new_cards} new cards available")


async def cmd_review(args: argparse.Namespace) -> None:
    """Run an interactive review session."""
    await ensure_db()
    storage = Storage()
    deck = await _require_deck(storage, args.deck)
    scheduler = FSRS.from_settings()
    queue = build_queue(await storage.get_cards(deck.id), deck.settings, utcnow())
    cards = queue.interleaved()[: args.max_cards]

    if not cards:
        print("\nNo cards due for review. You're all caught up!")
        return

    print(f"\n  Review Session: {deck.name}")
    print(f"  {len(queue.due_cards)} due + {len(queue.new_cards)} new, reviewing {len(cards)}\n")
    print("  Ratings: 1=Again  2=Hard  3=Good  4=Easy")
    print("  Type 'q' to quit\n")

    reviewed = 0
    for i, card in enumerate(cards, 1):
        label = f"  [{i}/{len(cards)}]"
        if card.reps == 0:
            label += " (NEW)"
        print(label)
        print(f"  {strip_html(card.front)}")
        if input("\n  Press enter to show the answer ").strip().lower() == "q":
            print("\n  Session ended early.")
            break
        print(f"  {strip_html(card.back)}\n")

        now = utcnow()
        options = scheduler.next_review_options(card, now)
        print(
            f"  1={options.again.interval}  2={options.hard.interval}  "
            f"3={options.good.interval}  4={options.easy.interval}"
        )
        rate_input = input("  Rate [1-4, enter=3]: ").strip().lower()
        if rate_input == "q":
            print("\n  Session ended early.")
            break
        grade = int(rate_input) if rate_input in {"1", "2", "3", "4"} else 3

        updated = scheduler.review_card(card, grade, now)
        await storage.save_card(updated)
        reviewed += 1
        print(f"  Next review in {options[grade].interval}\n")

    print("\n  Session Complete!")
    print(f"  Reviewed: {reviewed}\n")


async def cmd_stats(args: argparse.Namespace) -> None:
    """Show study statistics."""
    await ensure_db()
    storage = Storage()
    deck_id = (await _require_deck(storage, args.deck)).id if args.deck else None
    stats = compute_stats(await storage.get_cards(deck_id), utcnow())

    print("\n  Flashdeck Statistics")
    print(f"  {'Total cards:':<20} {stats.total_cards}")
    print(f"  {'Due now:':<20} {stats.due_cards}")
    print(f"  {'New (unseen):':<20} {stats.new_cards}")
    print(f"  {'Learning:':<20} {stats.learning_cards}")
    print(f"  {'Mature (S > 21d):':<20} {stats.mature_cards}")
    print(f"  {'Total reviews:':<20} {stats.total_reviews}")
    print(f"  {'Total lapses:':<20} {stats.total_lapses}")
    print()


async def cmd_sample(args: argparse.Namespace) -> None:
    """Create the built-in sample deck."""
    await ensure_db()
    deck, cards = create_sample_deck(FSRS.from_settings())
    await Storage().save_import(deck, cards)
    print(f"  Created '{deck.name}' with {len(cards)} cards ({deck.id[:8]})")


def main() -> None:
    """Entry point for the Flashdeck CLI application."""
    parser = argparse.ArgumentParser(
        prog="flashdeck",
        description="Flashcards with FSRS scheduling and deck import/export",
    )
    parser.add_argument("-v", "--verbose", action="store_true")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # import
    import_parser = subparsers.add_parser("import", help="Import a deck file")
    import_parser.add_argument("path", help="Path to an .apkg, .csv, .tsv, .txt or .json file")
    import_parser.add_argument("-n", "--deck-name", default=None, help="Name for the new deck")

    # export
    export_parser = subparsers.add_parser("export", help="Export a deck")
    export_parser.add_argument("deck", help="Deck id, id prefix or name")
    export_parser.add_argument(
        "-f", "--format", choices=[f.value for f in ExportFormat], default=ExportFormat.JSON.value
    )
    export_parser.add_argument("-o", "--output", default=None, help="Output file path")

    # decks
    subparsers.add_parser("decks", help="List decks")

    # due
    due_parser = subparsers.add_parser("due", help="Show cards due for review")
    due_parser.add_argument("--deck", default=None, help="Limit to one deck")

    # review
    review_parser = subparsers.add_parser("review", help="Start a review session")
    review_parser.add_argument("deck", help="Deck id, id prefix or name")
    review_parser.add_argument("--max-cards", type=int, default=50, help="Max cards per session")

    # stats
    stats_parser = subparsers.add_parser("stats", help="Show your statistics")
    stats_parser.add_argument("--deck", default=None, help="Limit to one deck")

    # sample
    subparsers.add_parser("sample", help="Create the sample deck")

    args = parser.parse_args()

    logging.basicConfig(level=logging.DEBUG if args.verbose else logging.WARNING)

    if not args.command:
        parser.print_help()
        return

    cmd_map = {
        "import": cmd_import,
        "export": cmd_export,
        "decks": cmd_decks,
        "due": cmd_due,
        "review": cmd_review,
        "stats": cmd_stats,
        "sample": cmd_sample,
    }

    try:
        asyncio.run(cmd_map[args.command](args))
    except KeyboardInterrupt:
        print("\n  Interrupted.")
        sys.exit(130)


if __name__ == "__main__":
    main()
