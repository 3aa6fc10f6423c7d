# Path: core/storage/result_store.py
# Purpose: Persist per-image analysis results and compute aggregate statistics over them.
# Layer: core/storage.
# Details: SQLite-backed, shared between worker threads behind a single lock; ":memory:" works for tests.

from __future__ import annotations

import json
import sqlite3
import threading
from pathlib import Path
from typing import Dict, List, Optional

from core.models.domain import (
    CATEGORY_KEYS,
    CategoryKey,
    Distribution,
    DistributionMode,
    ExportStatus,
    PhotoResult,
    ScoreVector,
    ValueStats,
)

_COLUMNS = (
    "id, path, file_name, category, scores, top_score, tags, caption, text_in_image, model, "
    "is_valuable, valuable_score, export_status, error_message, analysis_log, duration_ms"
)


class PhotoResultStore:
    """Result table keyed by result id.

    Rows are immutable once written; a re-inserted id replaces the previous row.
    """

    def __init__(self, path: Path | str = ":memory:") -> None:
        if str(path) != ":memory:":
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        self._conn = sqlite3.connect(str(path), check_same_thread=False)
        self._lock = threading.Lock()
        self._migrate()

    def _migrate(self) -> None:
        with self._lock:
            self._conn.execute(
                """
                CREATE TABLE IF NOT EXISTS photos (
                    id TEXT PRIMARY KEY,
                    seq INTEGER NOT NULL,
                    path TEXT NOT NULL,
                    file_name TEXT NOT NULL,
                    category TEXT NOT NULL,
                    scores TEXT NOT NULL,
                    top_score REAL NOT NULL,
                    tags TEXT,
                    caption TEXT,
                    text_in_image TEXT,
                    model TEXT,
                    is_valuable INTEGER,
                    valuable_score REAL,
                    export_status TEXT NOT NULL,
                    error_message TEXT,
                    analysis_log TEXT,
                    duration_ms INTEGER
                )
                """
            )
            self._conn.execute("CREATE INDEX IF NOT EXISTS idx_photos_seq ON photos(seq)")
            self._conn.commit()

    def insert(self, result: PhotoResult) -> None:
        with self._lock:
            (next_seq,) = self._conn.execute("SELECT COALESCE(MAX(seq), 0) + 1 FROM photos").fetchone()
            self._conn.execute(
                f"""
                INSERT OR REPLACE INTO photos (seq, {_COLUMNS})
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    next_seq,
                    result.id,
                    result.path,
                    result.file_name,
                    result.category.value,
                    json.dumps(result.scores.as_dict()),
                    result.top_score,
                    json.dumps(list(result.tags)),
                    result.caption,
                    result.text_in_image,
                    result.model,
                    None if result.is_valuable is None else int(result.is_valuable),
                    result.valuable_score,
                    result.export_status.value,
                    result.error_message,
                    result.analysis_log,
                    result.duration_ms,
                ),
            )
            self._conn.commit()

    def list_photos(self) -> List[PhotoResult]:
        """Return all results, newest first, without their analysis logs."""

        with self._lock:
            rows = self._conn.execute(f"SELECT {_COLUMNS} FROM photos ORDER BY seq DESC").fetchall()
        return [self._row_to_result(row, include_log=False) for row in rows]

    def get_photo_detail(self, result_id: str) -> Optional[PhotoResult]:
        with self._lock:
            row = self._conn.execute(f"SELECT {_COLUMNS} FROM photos WHERE id = ?", (result_id,)).fetchone()
        return self._row_to_result(row, include_log=True) if row else None

    def get_value_stats(self) -> ValueStats:
        with self._lock:
            row = self._conn.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN is_valuable = 1 THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN is_valuable = 0 THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN is_valuable IS NULL THEN 1 ELSE 0 END), 0)
                FROM photos
                """
            ).fetchone()
        return ValueStats(valuable=int(row[0]), not_valuable=int(row[1]), unknown=int(row[2]))

    def get_distribution(self, mode: DistributionMode) -> Distribution:
        """Aggregate every stored result per category, failed ones included."""

        with self._lock:
            rows = self._conn.execute("SELECT category, scores FROM photos").fetchall()
        totals: Dict[str, float] = {key.value: 0.0 for key in CATEGORY_KEYS}
        if not rows:
            return Distribution(mode=mode, by_category=totals)
        for category, scores in rows:
            if mode is DistributionMode.COUNT_RATIO:
                totals[CategoryKey.parse(category).value] += 1.0
            else:
                for key, value in ScoreVector.from_mapping(json.loads(scores)).as_dict().items():
                    totals[key] += value
        count = float(len(rows))
        return Distribution(mode=mode, by_category={key: round(value / count, 4) for key, value in totals.items()})

    def clear(self) -> None:
        with self._lock:
            self._conn.execute("DELETE FROM photos")
            self._conn.commit()

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @staticmethod
    def _row_to_result(row: tuple, include_log: bool) -> PhotoResult:
        (
            result_id,
            path,
            file_name,
            category,
            scores,
            top_score,
            tags,
            caption,
            text_in_image,
            model,
            is_valuable,
            valuable_score,
            export_status,
            error_message,
            analysis_log,
            duration_ms,
        ) = row
        try:
            status = ExportStatus(export_status)
        except ValueError:
            status = ExportStatus.ERROR
        return PhotoResult(
            id=result_id,
            path=path,
            file_name=file_name,
            scores=ScoreVector.from_mapping(json.loads(scores)),
            category=CategoryKey.parse(category),
            top_score=float(top_score),
            export_status=status,
            error_message=error_message,
            duration_ms=duration_ms,
            is_valuable=None if is_valuable is None else bool(is_valuable),
            valuable_score=valuable_score,
            model=model,
            tags=tuple(json.loads(tags)) if tags else (),
            caption=caption,
            text_in_image=text_in_image,
            analysis_log=analysis_log if include_log else None,
        )
