"""
Local mood history and profile store (SQLite).
"""
from __future__ import annotations
import logging
import sqlite3
from collections import Counter
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from typing import Dict, Iterable, Iterator, List, Optional

from aurasync.models import (
    DetectionEvent,
    MoodHistoryEntry,
    MusicSuggestion,
    Profile,
    SpotifyTokens,
    Track,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS profile (
    id INTEGER PRIMARY KEY CHECK (id = 1),
    display_name TEXT,
    avatar_url TEXT,
    spotify_user_id TEXT,
    access_token TEXT,
    refresh_token TEXT,
    updated_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS mood_history (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    emotion TEXT NOT NULL,
    source TEXT NOT NULL CHECK (source IN ('webcam', 'manual-selection', 'uploaded-image')),
    score REAL,
    created_at TEXT NOT NULL
);
CREATE TABLE IF NOT EXISTS music_suggestions (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    mood_history_id INTEGER NOT NULL REFERENCES mood_history(id) ON DELETE CASCADE,
    track_id TEXT NOT NULL,
    track_name TEXT NOT NULL,
    artist_name TEXT NOT NULL,
    album_name TEXT,
    image_url TEXT,
    preview_url TEXT,
    spotify_url TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_mood_history_created ON mood_history(created_at);
"""

PERIODS = {"week": timedelta(days=7), "month": timedelta(days=30), "all": None}
PROFILE_FIELDS = ("display_name", "avatar_url", "spotify_user_id", "access_token", "refresh_token")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _since(period: str) -> Optional[str]:
    if period not in PERIODS:
        raise ValueError(f"unknown period: {period}")
    delta = PERIODS[period]
    return None if delta is None else (datetime.now(timezone.utc) - delta).isoformat()


class HistoryStore:
    def __init__(self, path: str):
        self.path = path
        with self._conn() as c:
            c.executescript(SCHEMA)
            c.execute("INSERT OR IGNORE INTO profile (id, updated_at) VALUES (1, ?)", (_now(),))
        logger.debug(f"[history] store ready path={path}")

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        """One transaction on a fresh connection; always closed afterwards."""
        conn = sqlite3.connect(self.path, check_same_thread=False)
        try:
            conn.row_factory = sqlite3.Row
            conn.execute("PRAGMA foreign_keys = ON")
            with conn:
                yield conn
        finally:
            conn.close()

    # ---- mood history ----
    def record(self, event: DetectionEvent) -> int:
        created = datetime.fromtimestamp(event.ts, tz=timezone.utc).isoformat()
        with self._conn() as c:
            cur = c.execute(
                "INSERT INTO mood_history (emotion, source, score, created_at) VALUES (?, ?, ?, ?)",
                (event.emotion.value, event.source.value, event.score, created),
            )
            return int(cur.lastrowid)

    def add_suggestions(self, mood_history_id: int, tracks: Iterable[Track]) -> int:
        rows = [
            (mood_history_id, t.id, t.name, t.artist, t.album or None, t.image or None,
             t.preview_url, t.spotify_url or None, _now())
            for t in tracks
        ]
        if not rows:
            return 0
        with self._conn() as c:
            c.executemany(
                """INSERT INTO music_suggestions
                   (mood_history_id, track_id, track_name, artist_name, album_name,
                    image_url, preview_url, spotify_url, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                rows,
            )
        return len(rows)

    def list(self, period: str = "week", limit: int = 50) -> List[MoodHistoryEntry]:
        """Newest first, with attached music suggestions."""
        since = _since(period)
        sql = "SELECT * FROM mood_history"
        args: list = []
        if since:
            sql += " WHERE created_at >= ?"
            args.append(since)
        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        args.append(int(limit))

        with self._conn() as c:
            rows = c.execute(sql, args).fetchall()
            ids = [r["id"] for r in rows]
            by_entry: Dict[int, List[MusicSuggestion]] = {i: [] for i in ids}
            if ids:
                marks = ",".join("?" * len(ids))
                for s in c.execute(
                    f"SELECT * FROM music_suggestions WHERE mood_history_id IN ({marks}) ORDER BY id",
                    ids,
                ):
                    by_entry[s["mood_history_id"]].append(MusicSuggestion(
                        id=s["id"], track_id=s["track_id"], track_name=s["track_name"],
                        artist_name=s["artist_name"], album_name=s["album_name"],
                        image_url=s["image_url"], preview_url=s["preview_url"],
                        spotify_url=s["spotify_url"], created_at=s["created_at"],
                    ))
        return [
            MoodHistoryEntry(id=r["id"], emotion=r["emotion"], source=r["source"],
                             created_at=r["created_at"], music_suggestions=by_entry[r["id"]])
            for r in rows
        ]

    def stats(self, period: str = "week") -> Dict:
        entries = self.list(period, limit=10_000)
        counts = Counter(e.emotion for e in entries)
        top = counts.most_common(1)[0][0] if counts else None
        return {
            "period": period,
            "total": len(entries),
            "counts": dict(counts),
            "most_common": top,
            "with_music": sum(1 for e in entries if e.music_suggestions),
        }

    # ---- profile ----
    def profile(self) -> Profile:
        with self._conn() as c:
            row = c.execute("SELECT * FROM profile WHERE id = 1").fetchone()
        return Profile(**{k: row[k] for k in PROFILE_FIELDS}, updated_at=row["updated_at"])

    def update_profile(self, **fields) -> Profile:
        unknown = set(fields) - set(PROFILE_FIELDS)
        if unknown:
            raise ValueError(f"unknown profile fields: {sorted(unknown)}")
        if fields:
            cols = ", ".join(f"{k} = ?" for k in fields)
            with self._conn() as c:
                c.execute(f"UPDATE profile SET {cols}, updated_at = ? WHERE id = 1",
                          (*fields.values(), _now()))
        return self.profile()

    def save_spotify_tokens(self, tokens: SpotifyTokens, spotify_user_id: Optional[str] = None) -> Profile:
        fields = {"access_token": tokens.access_token, "refresh_token": tokens.refresh_token}
        if spotify_user_id is not None:
            fields["spotify_user_id"] = spotify_user_id
        return self.update_profile(**fields)

    def clear_spotify(self) -> Profile:
        return self.update_profile(spotify_user_id=None, access_token=None, refresh_token=None)
