"""Task records, request/response shapes and SQLite-backed task storage."""

from __future__ import annotations

import sqlite3
import threading
from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any

TABLE_NAME = "task_requests"

_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {TABLE_NAME} (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    created_at TEXT,
    updated_at TEXT,
    deleted_at TEXT,
    task_type VARCHAR(100) NOT NULL,
    model VARCHAR(100) NOT NULL,
    prompt TEXT,
    image_url TEXT,
    end_image_url TEXT,
    task_id VARCHAR(100),
    status VARCHAR(50) DEFAULT 'pending',
    video_url TEXT,
    error TEXT,
    request_id VARCHAR(100),
    duration INTEGER DEFAULT 5,
    resolution VARCHAR(20) DEFAULT '720P',
    size VARCHAR(20),
    success_time TEXT,
    expire_time TEXT,
    seed INTEGER,
    prompt_extend BOOLEAN,
    ref_images_url TEXT,
    obj_or_bg TEXT,
    video_url_input TEXT,
    control_condition VARCHAR(50),
    strength DECIMAL(3, 2),
    watermark BOOLEAN
);
CREATE INDEX IF NOT EXISTS idx_{TABLE_NAME}_deleted_at ON {TABLE_NAME} (deleted_at);
"""


def _now() -> datetime:
    return datetime.now().astimezone()


@dataclass
class TaskRequest:
    """A stored video generation task."""

    id: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None
    deleted_at: datetime | None = None
    task_type: str = ""
    model: str = ""
    prompt: str = ""
    image_url: str = ""
    end_image_url: str = ""
    task_id: str = ""
    status: str = ""
    video_url: str = ""
    error: str = ""
    request_id: str = ""
    duration: int = 0
    resolution: str = ""
    size: str = ""
    success_time: datetime | None = None
    expire_time: datetime | None = None
    seed: int | None = None
    prompt_extend: bool | None = None
    ref_images_url: str = ""
    obj_or_bg: str = ""
    video_url_input: str = ""
    control_condition: str = ""
    strength: float = 0.0
    watermark: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form of the record; the deletion mark is left out."""
        out: dict[str, Any] = {}
        for f in fields(self):
            if f.name == "deleted_at":
                continue
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            out[f.name] = value
        return out


@dataclass
class TaskStatusResponse:
    """Status summary of a task as returned to clients."""

    task_id: str = ""
    status: str = ""
    video_url: str = ""
    error: str = ""
    request_id: str = ""
    submit_time: str = ""
    end_time: str = ""

    _OPTIONAL = ("video_url", "error", "submit_time", "end_time")

    def to_dict(self) -> dict[str, Any]:
        """Return the JSON form, omitting empty optional fields."""
        return {
            f.name: getattr(self, f.name)
            for f in fields(self)
            if f.name not in self._OPTIONAL or getattr(self, f.name)
        }


def _text(data: dict[str, Any], key: str) -> str:
    value = data.get(key)
    return value if isinstance(value, str) else ""


def _integer(data: dict[str, Any], key: str) -> int:
    value = data.get(key)
    return value if isinstance(value, int) and not isinstance(value, bool) else 0


@dataclass
class VideoOutput:
    task_id: str = ""
    task_status: str = ""
    video_url: str = ""
    submit_time: str = ""
    end_time: str = ""


@dataclass
class VideoUsage:
    video_duration: int = 0
    video_ratio: str = ""
    video_count: int = 0


@dataclass
class DashScopeVideoResponse:
    """Response body of the video synthesis and task status endpoints."""

    output: VideoOutput = field(default_factory=VideoOutput)
    request_id: str = ""
    usage: VideoUsage = field(default_factory=VideoUsage)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DashScopeVideoResponse:
        output = data.get("output")
        output = output if isinstance(output, dict) else {}
        usage = data.get("usage")
        usage = usage if isinstance(usage, dict) else {}
        return cls(
            output=VideoOutput(
                task_id=_text(output, "task_id"),
                task_status=_text(output, "task_status"),
                video_url=_text(output, "video_url"),
                submit_time=_text(output, "submit_time"),
                end_time=_text(output, "end_time"),
            ),
            request_id=_text(data, "request_id"),
            usage=VideoUsage(
                video_duration=_integer(usage, "video_duration"),
                video_ratio=_text(usage, "video_ratio"),
                video_count=_integer(usage, "video_count"),
            ),
        )


_STR_FIELDS = {
    "task_type", "model", "prompt", "image_url", "end_image_url",
    "resolution", "size", "video_url", "control_condition",
}
_INT_FIELDS = {"duration", "seed"}
_FLOAT_FIELDS = {"strength"}
_BOOL_FIELDS = {"prompt_extend", "watermark"}
_LIST_FIELDS = {"ref_images_url", "obj_or_bg"}
_REQUIRED_FIELDS = ("task_type", "model", "prompt")


def _check_value(name: str, value: Any) -> Any:
    if name in _STR_FIELDS:
        ok = isinstance(value, str)
    elif name in _INT_FIELDS:
        ok = isinstance(value, int) and not isinstance(value, bool)
    elif name in _FLOAT_FIELDS:
        ok = isinstance(value, (int, float)) and not isinstance(value, bool)
        if ok:
            value = float(value)
    elif name in _BOOL_FIELDS:
        ok = isinstance(value, bool)
    else:
        ok = isinstance(value, list) and all(isinstance(item, str) for item in value)
    if not ok:
        raise ValueError(f"field '{name}' has the wrong type")
    return value


@dataclass
class VideoCreateRequest:
    """Client request to create a video generation task."""

    task_type: str = ""
    model: str = ""
    prompt: str = ""
    image_url: str = ""
    end_image_url: str = ""
    duration: int = 0
    resolution: str = ""
    size: str = ""
    ref_images_url: list[str] = field(default_factory=list)
    obj_or_bg: list[str] = field(default_factory=list)
    video_url: str = ""
    control_condition: str = ""
    strength: float = 0.0
    prompt_extend: bool | None = None
    seed: int | None = None
    watermark: bool | None = None

    @classmethod
    def from_dict(cls, data: Any) -> VideoCreateRequest:
        """Build a request from decoded JSON; raise ValueError if it is invalid."""
        if not isinstance(data, dict):
            raise ValueError("request body must be a JSON object")
        kwargs: dict[str, Any] = {}
        for f in fields(cls):
            value = data.get(f.name)
            if value is None:
                continue
            kwargs[f.name] = _check_value(f.name, value)
        for name in _REQUIRED_FIELDS:
            if not kwargs.get(name):
                raise ValueError(f"field '{name}' is required")
        return cls(**kwargs)


_COLUMNS = tuple(f.name for f in fields(TaskRequest))
_TIME_COLUMNS = {"created_at", "updated_at", "deleted_at", "success_time", "expire_time"}
_BOOL_COLUMNS = {"prompt_extend", "watermark"}
_NULLABLE_COLUMNS = _TIME_COLUMNS | _BOOL_COLUMNS | {"seed"}
_ZERO_VALUES = {f.name: f.default for f in fields(TaskRequest)}


def _to_db(column: str, value: Any) -> Any:
    if value is None:
        return None
    if column in _TIME_COLUMNS:
        return value.isoformat()
    if column in _BOOL_COLUMNS:
        return int(value)
    return value


def _from_db(column: str, value: Any) -> Any:
    if value is None:
        return None if column in _NULLABLE_COLUMNS else _ZERO_VALUES[column]
    if column in _TIME_COLUMNS:
        return datetime.fromisoformat(value)
    if column in _BOOL_COLUMNS:
        return bool(value)
    if column == "strength":
        return float(value)
    return value


class TaskStore:
    """Thread-safe SQLite storage of task records with soft deletion."""

    def __init__(self, path: str = "bailian.db") -> None:
        self._conn = sqlite3.connect(path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._lock = threading.Lock()
        with self._lock, self._conn:
            self._conn.executescript(_SCHEMA)

    def __enter__(self) -> TaskStore:
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def create(self, task: TaskRequest) -> TaskRequest:
        """Insert a task, filling in timestamps, defaults and its id."""
        now = _now()
        task.created_at = task.created_at or now
        task.updated_at = task.updated_at or now
        task.status = task.status or "pending"
        task.duration = task.duration or 5
        task.resolution = task.resolution or "720P"
        columns = [c for c in _COLUMNS if c != "id" or task.id]
        placeholders = ", ".join(["?"] * len(columns))
        sql = f"INSERT INTO {TABLE_NAME} ({', '.join(columns)}) VALUES ({placeholders})"
        values = [_to_db(c, getattr(task, c)) for c in columns]
        with self._lock, self._conn:
            cursor = self._conn.execute(sql, values)
        task.id = cursor.lastrowid
        return task

    def get(self, record_id: int) -> TaskRequest | None:
        """Return the live task with this id, or None."""
        sql = f"SELECT * FROM {TABLE_NAME} WHERE id = ? AND deleted_at IS NULL"
        with self._lock:
            row = self._conn.execute(sql, (record_id,)).fetchone()
        return None if row is None else self._from_row(row)

    def update(self, record_id: int, **changes: Any) -> bool:
        """Set the given fields on a live task; return whether a row changed."""
        unknown = set(changes) - set(_COLUMNS)
        if unknown or "id" in changes:
            raise ValueError(f"unknown or read-only fields: {sorted(unknown | ({'id'} & set(changes)))}")
        changes.setdefault("updated_at", _now())
        assignments = ", ".join(f"{name} = ?" for name in changes)
        values = [_to_db(name, value) for name, value in changes.items()]
        sql = f"UPDATE {TABLE_NAME} SET {assignments} WHERE id = ? AND deleted_at IS NULL"
        with self._lock, self._conn:
            cursor = self._conn.execute(sql, (*values, record_id))
        return cursor.rowcount > 0

    def delete(self, record_id: int) -> bool:
        """Mark a task as deleted; return whether a live task was found."""
        sql = f"UPDATE {TABLE_NAME} SET deleted_at = ? WHERE id = ? AND deleted_at IS NULL"
        with self._lock, self._conn:
            cursor = self._conn.execute(sql, (_now().isoformat(), record_id))
        return cursor.rowcount > 0

    def count(self, task_type: str = "", status: str = "") -> int:
        """Count live tasks, optionally filtered by type and status."""
        where, params = self._filters(task_type, status)
        with self._lock:
            row = self._conn.execute(f"SELECT COUNT(*) FROM {TABLE_NAME} WHERE {where}", params).fetchone()
        return row[0]

    def list(self, task_type: str = "", status: str = "", offset: int = 0, limit: int = -1) -> list[TaskRequest]:
        """Return live tasks, newest first; a negative limit means no limit."""
        where, params = self._filters(task_type, status)
        sql = (
            f"SELECT * FROM {TABLE_NAME} WHERE {where} "
            "ORDER BY created_at DESC, id DESC LIMIT ? OFFSET ?"
        )
        params += [limit if limit >= 0 else -1, max(offset, 0)]
        with self._lock:
            rows = self._conn.execute(sql, params).fetchall()
        return [self._from_row(row) for row in rows]

    def close(self) -> None:
        with self._lock:
            self._conn.close()

    @staticmethod
    def _filters(task_type: str, status: str) -> tuple[str, list[Any]]:
        clauses = ["deleted_at IS NULL"]
        params: list[Any] = []
        if task_type:
            clauses.append("task_type = ?")
            params.append(task_type)
        if status:
            clauses.append("status = ?")
            params.append(status)
        return " AND ".join(clauses), params

    @staticmethod
    def _from_row(row: sqlite3.Row) -> TaskRequest:
        return TaskRequest(**{c: _from_db(c, row[c]) for c in _COLUMNS})