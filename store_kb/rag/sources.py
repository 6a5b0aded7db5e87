"""Content source adapters.

A source yields the :class:`ContentRecord` objects of one content type.
Platform-specific adapters implement :class:`ContentSource`; the classes
here serve fixtures, exports and tests.
"""

import json
import logging
from collections.abc import Iterable, Iterator
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from ..errors import SourceError
from .models import ContentRecord

logger = logging.getLogger(__name__)


@runtime_checkable
class ContentSource(Protocol):
    """Protocol for per-content-type sources.

    ``list_all`` must be restartable: every full pass calls it again from the
    beginning.
    """

    content_type: str

    def list_all(self) -> Iterator[ContentRecord]: ...

    def get_one(self, content_id: str) -> ContentRecord | None: ...


class StaticContentSource:
    """Serves a fixed list of records."""

    def __init__(self, content_type: str, records: Iterable[ContentRecord] = ()):
        self.content_type = content_type
        self.records = list(records)

    def __len__(self) -> int:
        return len(self.records)

    def list_all(self) -> Iterator[ContentRecord]:
        return iter(list(self.records))

    def get_one(self, content_id: str) -> ContentRecord | None:
        return next((record for record in self.records if record.content_id == str(content_id)), None)


class JsonContentSource:
    """Reads records of one content type from a ``.json`` array or ``.jsonl`` file.

    Each object may use ``id`` or ``content_id``, and ``body`` or ``content``.
    ``last_modified`` is parsed from ISO 8601.
    """

    def __init__(self, path: str | Path, content_type: str | None = None):
        self.path = Path(path)
        self.content_type = content_type or self.path.stem

    def __len__(self) -> int:
        return len(self._load())

    def list_all(self) -> Iterator[ContentRecord]:
        for item in self._load():
            yield self._to_record(item)

    def get_one(self, content_id: str) -> ContentRecord | None:
        for item in self._load():
            if str(item.get("content_id", item.get("id"))) == str(content_id):
                return self._to_record(item)
        return None

    def _load(self) -> list[dict[str, Any]]:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError as e:
            raise SourceError(f"Cannot read content source {self.path}: {e}") from e

        try:
            if self.path.suffix == ".jsonl":
                items = [json.loads(line) for line in raw.splitlines() if line.strip()]
            else:
                items = json.loads(raw)
        except json.JSONDecodeError as e:
            raise SourceError(f"Invalid JSON in {self.path}: {e}") from e

        if not isinstance(items, list) or not all(isinstance(item, dict) for item in items):
            raise SourceError(f"{self.path} must contain a list of objects")
        return items

    def _to_record(self, item: dict[str, Any]) -> ContentRecord:
        content_id = item.get("content_id", item.get("id"))
        last_modified = item.get("last_modified")
        if isinstance(last_modified, str) and last_modified:
            try:
                last_modified = datetime.fromisoformat(last_modified.replace("Z", "+00:00"))
            except ValueError:
                logger.warning(f"[SOURCE] Ignoring invalid last_modified for {self.content_type}/{content_id}")
                last_modified = None
        return ContentRecord(
            content_id="" if content_id is None else str(content_id),
            content_type=item.get("content_type", item.get("type", self.content_type)),
            body=item.get("body", item.get("content", "")) or "",
            title=item.get("title", ""),
            url=item.get("url", ""),
            metadata=item.get("metadata") or {},
            language=item.get("language"),
            last_modified=last_modified or None,
        )


def discover_json_sources(directory: str | Path) -> dict[str, JsonContentSource]:
    """Build one JsonContentSource per ``<content_type>.json[l]`` file in a directory."""
    directory = Path(directory)
    if not directory.is_dir():
        raise SourceError(f"Sources directory not found: {directory}")
    sources = {}
    for path in sorted(directory.iterdir()):
        if path.suffix in (".json", ".jsonl"):
            sources[path.stem] = JsonContentSource(path)
    return sources
