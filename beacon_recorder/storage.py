"""File-backed persistence for settings, saved sessions and the
in-progress session.

Layout of the data directory::

    settings.json          filter criteria
    sessions.json          list of saved (finalized) sessions
    current_session.json   the in-progress session, absent when idle

Every write goes to a temporary sibling first and is moved into place
with ``os.replace`` so a call either fully succeeds or leaves the old
file untouched.
"""

import json
import logging
import os
from pathlib import Path
from typing import List, Optional, Union

from .ibeacon import format_uuid, validate_criteria
from .models import FilterCriteria, Session

log = logging.getLogger(__name__)

SETTINGS_FILE = "settings.json"
SESSIONS_FILE = "sessions.json"
CURRENT_SESSION_FILE = "current_session.json"

_DATA_DIR_ENV = "BEACON_RECORDER_DIR"


class StorageError(OSError):
    """A load or save against the data directory failed."""


def default_data_dir() -> Path:
    env = os.environ.get(_DATA_DIR_ENV)
    if env:
        return Path(env).expanduser()
    return Path.home() / ".beacon-recorder"


def _recency_key(session: Session) -> int:
    # newest start first, like the sessions list of the mobile app
    return session.start_time


class SessionStore:
    def __init__(self, data_dir: Optional[Union[str, Path]] = None):
        self.data_dir = Path(data_dir) if data_dir is not None else default_data_dir()

    # ------------------------------------------------------------------
    # Low-level JSON helpers
    # ------------------------------------------------------------------

    def _path(self, name: str) -> Path:
        return self.data_dir / name

    def _read_json(self, name: str):
        path = self._path(name)
        try:
            with open(path, encoding="utf-8") as f:
                return json.load(f)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError) as e:
            raise StorageError(f"Cannot read {path}: {e}") from e

    def _write_json(self, name: str, data) -> None:
        path = self._path(name)
        tmp = path.with_name(path.name + ".tmp")
        try:
            self.data_dir.mkdir(parents=True, exist_ok=True)
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, path)
        except OSError as e:
            try:
                tmp.unlink()
            except OSError:
                pass
            raise StorageError(f"Cannot write {path}: {e}") from e

    def _remove(self, name: str) -> None:
        path = self._path(name)
        try:
            path.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise StorageError(f"Cannot remove {path}: {e}") from e

    # ------------------------------------------------------------------
    # Settings
    # ------------------------------------------------------------------

    def load_criteria(self) -> FilterCriteria:
        """Return the stored filter criteria, or the defaults."""
        data = self._read_json(SETTINGS_FILE)
        if data is None:
            return FilterCriteria()
        try:
            criteria = FilterCriteria.from_dict(data)
            # Older settings stored the UUID without hyphens
            criteria = FilterCriteria(format_uuid(criteria.target_uuid),
                                      criteria.rssi_threshold)
            return validate_criteria(criteria)
        except (AttributeError, ValueError) as e:
            raise StorageError(
                f"Invalid settings in {self._path(SETTINGS_FILE)}: {e}") from e

    def save_criteria(self, criteria: FilterCriteria) -> FilterCriteria:
        """Validate and store *criteria*.  Raises ValueError if invalid."""
        criteria = validate_criteria(criteria)
        self._write_json(SETTINGS_FILE, criteria.to_dict())
        log.debug("Saved criteria %s", criteria)
        return criteria

    # ------------------------------------------------------------------
    # In-progress session
    # ------------------------------------------------------------------

    def load_current_session(self) -> Optional[Session]:
        data = self._read_json(CURRENT_SESSION_FILE)
        if data is None:
            return None
        return self._session_from(data, CURRENT_SESSION_FILE)

    def save_current_session(self, session: Optional[Session]) -> None:
        """Store *session* as in-progress; None clears the marker."""
        if session is None:
            self._remove(CURRENT_SESSION_FILE)
        else:
            self._write_json(CURRENT_SESSION_FILE, session.to_dict())

    # ------------------------------------------------------------------
    # Saved sessions
    # ------------------------------------------------------------------

    def _load_saved(self) -> List[Session]:
        data = self._read_json(SESSIONS_FILE)
        if data is None:
            return []
        if not isinstance(data, list):
            raise StorageError(
                f"Invalid session list in {self._path(SESSIONS_FILE)}")
        return [self._session_from(item, SESSIONS_FILE) for item in data]

    def _session_from(self, data, name: str) -> Session:
        try:
            return Session.from_dict(data)
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise StorageError(
                f"Invalid session data in {self._path(name)}: {e}") from e

    def list_saved_sessions(self) -> List[Session]:
        """Saved sessions, most recent first."""
        return sorted(self._load_saved(), key=_recency_key, reverse=True)

    def save_saved_session(self, session: Session) -> None:
        """Insert *session*, or replace the saved session with its id."""
        sessions = self._load_saved()
        for i, existing in enumerate(sessions):
            if existing.id == session.id:
                sessions[i] = session
                break
        else:
            sessions.append(session)
        self._write_json(SESSIONS_FILE, [s.to_dict() for s in sessions])

    def delete_saved_session(self, session_id: str) -> bool:
        sessions = self._load_saved()
        remaining = [s for s in sessions if s.id != session_id]
        if len(remaining) == len(sessions):
            return False
        self._write_json(SESSIONS_FILE, [s.to_dict() for s in remaining])
        return True

    def get_saved_session(self, session_id: str) -> Optional[Session]:
        """Look up a saved session by id or by an unambiguous id prefix."""
        if not session_id:
            return None
        sessions = self._load_saved()
        for s in sessions:
            if s.id == session_id:
                return s
        matches = [s for s in sessions if s.id.startswith(session_id)]
        if len(matches) == 1:
            return matches[0]
        return None
