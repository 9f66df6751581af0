"""Media extraction for container imports.

A container ships its media as numbered archive members plus a ``media`` JSON
mapping of member name to original filename. Card fields reference media by
filename (``[sound:x.mp3]``, ``<img src="x.jpg">``); the extractor rewrites those
references into self-contained tags carrying a base64 data URI, and can turn
them back into plain references for export.
"""

import base64
import html
import json
import logging
import re
import zipfile

from backend.domain import MediaFile
from ingestion.constants import MEDIA_MEMBER

logger = logging.getLogger(__name__)

SOUND_REF = re.compile(r"\[sound:([^\]]+)\]")
IMAGE_REF = re.compile(r"""<img\b[^>]*?\bsrc\s*=\s*["']([^"']+)["'][^>]*>""", re.IGNORECASE)

_EMBEDDED_PLAYER = re.compile(
    r"""<(audio|video)\b[^>]*?\bdata-media\s*=\s*"([^"]+)"[^>]*>(?:\s*</\1\s*>)?""",
    re.IGNORECASE,
)
_EMBEDDED_IMAGE = re.compile(r"""<img\b[^>]*?\bdata-media\s*=\s*"([^"]+)"[^>]*>""", re.IGNORECASE)


def data_uri(media: MediaFile) -> str:
    return f"data:{media.mime_type};base64,{base64.b64encode(media.data).decode('ascii')}"


def embed(media: MediaFile) -> str:
    """Render a media file as a self-contained HTML tag."""
    name = html.escape(media.filename, quote=True)
    src = data_uri(media)
    if media.media_type == "audio":
        return f'<audio controls data-media="{name}" src="{src}"></audio>'
    if media.media_type == "video":
        return f'<video controls data-media="{name}" src="{src}"></video>'
    return f'<img data-media="{name}" alt="{name}" src="{src}">'


class MediaExtractor:
    """Resolves media references in card content against one import's media files.

    Each import builds its own extractor; nothing is shared between imports.
    """

    def __init__(self, files: dict[str, MediaFile] | None = None) -> None:
        self.files: dict[str, MediaFile] = dict(files or {})

    def __len__(self) -> int:
        return len(self.files)

    @classmethod
    def from_archive(cls, archive: zipfile.ZipFile) -> "MediaExtractor":
        """Load the media mapping and member payloads from an open container archive.

        A missing or unreadable mapping yields an empty extractor; the import
        continues without media.
        """
        try:
            raw = archive.read(MEDIA_MEMBER)
        except KeyError:
            logger.debug("Container has no media mapping")
            return cls()

        try:
            mapping = json.loads(raw.decode("utf-8")) if raw.strip() else {}
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            logger.warning("Failed to parse container media mapping: %s", e)
            return cls()
        if not isinstance(mapping, dict):
            logger.warning("Container media mapping is not an object, ignoring media")
            return cls()

        files: dict[str, MediaFile] = {}
        for member, filename in mapping.items():
            try:
                data = archive.read(str(member))
            except KeyError:
                logger.warning("Media member %s (%s) missing from container", member, filename)
                continue
            files[str(filename)] = MediaFile(filename=str(filename), data=data)

        logger.info("Extracted %d media files", len(files))
        return cls(files)

    def rewrite(self, content: str) -> tuple[str, list[MediaFile]]:
        """Embed known media references; returns the new content and the files used.

        References to filenames not in the container are left untouched.
        """
        used: dict[str, MediaFile] = {}

        def replace(match: re.Match) -> str:
            filename = html.unescape(match.group(1))
            media = self.files.get(filename)
            if media is None:
                return match.group(0)
            used[filename] = media
            return embed(media)

        content = SOUND_REF.sub(replace, content)
        content = IMAGE_REF.sub(replace, content)
        return content, list(used.values())


def restore_references(content: str) -> str:
    """Turn embedded media tags back into plain filename references."""
    content = _EMBEDDED_PLAYER.sub(lambda m: f"[sound:{html.unescape(m.group(2))}]", content)
    return _EMBEDDED_IMAGE.sub(lambda m: f'<img src="{m.group(1)}">', content)
