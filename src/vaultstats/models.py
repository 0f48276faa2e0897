from __future__ import annotations

import os
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


@dataclass(frozen=True)
class FileStat:
    """File metadata as reported by the event source."""
    size: int
    ctime: float
    mtime: float

    @staticmethod
    def from_path(path: str | Path) -> "FileStat":
        st = os.stat(path)
        # st_birthtime is the creation time where the platform has one
        ctime = getattr(st, "st_birthtime", st.st_ctime)
        return FileStat(size=int(st.st_size), ctime=float(ctime), mtime=float(st.st_mtime))


@dataclass(frozen=True)
class Contribution:
    """Per-file delta applied to the aggregate.

    Every tracked file counts once toward ``files``; ``is_note`` and
    ``is_attachment`` select the category counter.
    """
    is_note: bool = False
    is_attachment: bool = False
    size: int = 0
    link_count: int = 0
    word_count: int = 0
    tracked: bool = True

    @staticmethod
    def empty() -> "Contribution":
        return Contribution(tracked=False)


@dataclass(frozen=True)
class TypedRegion:
    """Span of a document tagged with its structural type.

    Offsets index into the exact text snapshot the region was parsed from.
    """
    type: str
    start_offset: int
    end_offset: int


@dataclass(frozen=True)
class FileEvent:
    kind: str  # created|deleted|renamed|modified|active
    rel_path: str
    stat: Optional[FileStat] = None
    new_rel_path: Optional[str] = None
    is_directory: bool = False


@dataclass(frozen=True)
class MetricsSnapshot:
    files: int = 0
    notes: int = 0
    attachments: int = 0
    size: int = 0
    links: int = 0
    words: int = 0
    note_words: int = 0
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    def to_dict(self) -> dict:
        out = {}
        for f in fields(self):
            value = getattr(self, f.name)
            out[f.name] = value.isoformat() if isinstance(value, datetime) else value
        return out


def timestamp_to_datetime(ts: float | None) -> datetime | None:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc)
