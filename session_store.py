"""
session_store.py - Disk persistence for scan sessions.

Two JSON files inside one directory:
    current_session.json   the session being scanned right now (autosave)
    session_history.json   saved sessions, last HISTORY_LIMIT kept

Writes are atomic (temp file + os.replace). Unreadable files never break the
scanner: they log a warning and read as "nothing saved".
"""

from __future__ import annotations

import json
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from dateutil import parser as dateparser

from config import DEFAULT_SETTINGS, ScannerSettings
from logging_config import get_logger
from models import ScanSession

logger = get_logger(__name__)

CURRENT_FILE = "current_session.json"
HISTORY_FILE = "session_history.json"
HISTORY_LIMIT = DEFAULT_SETTINGS.history_limit


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _parse_session(raw: Any) -> ScanSession:
    """Validate one stored session, accepting loosely formatted start times."""
    if isinstance(raw, dict):
        for field in ("start_time", "end_time"):
            value = raw.get(field)
            if isinstance(value, str) and value.strip():
                raw = {**raw, field: _as_utc(dateparser.parse(value))}
    session = ScanSession.model_validate(raw)
    session.start_time = _as_utc(session.start_time)
    if session.end_time is not None:
        session.end_time = _as_utc(session.end_time)
    return session


class SessionStore:
    """JSON-file session storage. One instance per session directory."""

    def __init__(self, directory: Optional[str | Path] = None, history_limit: int = HISTORY_LIMIT) -> None:
        self.directory = Path(directory or DEFAULT_SETTINGS.session_dir).resolve()
        self.history_limit = history_limit

    @classmethod
    def from_settings(cls, settings: ScannerSettings, directory: Optional[str | Path] = None) -> "SessionStore":
        """Store in `directory`, falling back to `settings.session_dir` (WINELENS_SESSION_DIR)."""
        return cls(directory or settings.session_dir, history_limit=settings.history_limit)

    @property
    def current_path(self) -> Path:
        return self.directory / CURRENT_FILE

    @property
    def history_path(self) -> Path:
        return self.directory / HISTORY_FILE

    def _write_json(self, path: Path, payload: Any) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            mode="w",
            encoding="utf-8",
            dir=str(self.directory),
            delete=False,
            suffix=".tmp",
            prefix="session-",
        ) as tmp_file:
            json.dump(payload, tmp_file, ensure_ascii=False, indent=2)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
            tmp_path = Path(tmp_file.name)
        os.replace(tmp_path, path)

    def _read_json(self, path: Path) -> Any:
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning(
                "session_load_warning | path=%s | error_type=%s | error=%s | fallback=None",
                path,
                type(exc).__name__,
                exc,
            )
            return None

    # -- Current session --

    def save_current(self, session: ScanSession) -> None:
        self._write_json(self.current_path, session.model_dump(mode="json"))

    def load_current(self) -> Optional[ScanSession]:
        raw = self._read_json(self.current_path)
        if raw is None:
            return None
        try:
            return _parse_session(raw)
        except (ValueError, TypeError, OverflowError) as exc:
            logger.warning(
                "session_load_warning | path=%s | error_type=%s | fallback=None",
                self.current_path,
                type(exc).__name__,
            )
            return None

    def clear_current(self) -> None:
        try:
            if self.current_path.exists():
                self.current_path.unlink()
        except OSError as exc:
            logger.warning(
                "session_clear_warning | path=%s | error_type=%s | error=%s",
                self.current_path,
                type(exc).__name__,
                exc,
            )

    # -- History --

    def _write_history(self, sessions: list[ScanSession]) -> None:
        self._write_json(self.history_path, [session.model_dump(mode="json") for session in sessions])

    def load_history(self) -> list[ScanSession]:
        """Saved sessions, most recent start time first."""
        raw = self._read_json(self.history_path)
        if not isinstance(raw, list):
            return []
        sessions: list[ScanSession] = []
        for item in raw:
            try:
                sessions.append(_parse_session(item))
            except (ValueError, TypeError, OverflowError) as exc:
                logger.warning(
                    "session_history_warning | path=%s | error_type=%s | fallback=skip",
                    self.history_path,
                    type(exc).__name__,
                )
        return sorted(sessions, key=lambda session: session.start_time, reverse=True)

    def save_to_history(self, session: ScanSession) -> ScanSession:
        """Stamp end_time and append; only the newest sessions are kept."""
        saved = session.model_copy(deep=True)
        saved.end_time = datetime.now(timezone.utc)
        history = [item for item in self.load_history() if item.id != saved.id]
        history.append(saved)
        history.sort(key=lambda item: item.start_time)
        if len(history) > self.history_limit:
            history = history[-self.history_limit :]
        self._write_history(history)
        logger.info(
            "session_saved | session_id=%s | wines=%d | location=%r | history=%d",
            saved.id,
            len(saved.wines),
            saved.location,
            len(history),
        )
        return saved

    def delete_session(self, session_id: str) -> bool:
        history = self.load_history()
        remaining = [session for session in history if session.id != session_id]
        if len(remaining) == len(history):
            return False
        self._write_history(sorted(remaining, key=lambda session: session.start_time))
        return True
