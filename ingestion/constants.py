"""Shared constants for the interchange pipeline."""

# Container archive layout
COLLECTION_MEMBERS = ("collection.anki21", "collection.anki2")
MEDIA_MEMBER = "media"
FIELD_SEPARATOR = "\x1f"
ZIP_SIGNATURE = b"PK\x03\x04"

# Canonical JSON export
EXPORT_VERSION = "1.0"

# Content normalization
MAX_WRAPPER_PASSES = 10  # Iterations of font/span/div/p unwrapping

# Progress checkpoints for line-based parsers
PROGRESS_EVERY_LINES = 100
