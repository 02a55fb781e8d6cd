"""Chat session persistence, export and import.

Sessions are stored as one JSON document under a single key of a
key-value store. Writes replace the whole document (last write wins).
"""

import json
import logging
import os
import time
import uuid
from typing import Any, List, Optional, Protocol, Sequence

from pydantic import ValidationError

from apexrag.errors import ImportFailedError
from apexrag.models import ChatSession, ConversationTurn

logger = logging.getLogger(__name__)

HISTORY_KEY = "apex_rag_history"
DEFAULT_TITLE = "New Session"
TITLE_LENGTH = 40


def now_ms() -> int:
    return int(time.time() * 1000)


class KeyValueStore(Protocol):
    def load(self, key: str) -> Optional[str]: ...

    def save(self, key: str, value: str) -> None: ...


class JsonFileStore:
    """Key-value store keeping each key in ``<directory>/<key>.json``."""

    def __init__(self, directory: str):
        self.directory = directory
        os.makedirs(directory, exist_ok=True)

    def _path(self, key: str) -> str:
        return os.path.join(self.directory, f"{key}.json")

    def load(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not os.path.exists(path):
            return None
        with open(path, "r", encoding="utf-8") as f:
            return f.read()

    def save(self, key: str, value: str) -> None:
        with open(self._path(key), "w", encoding="utf-8") as f:
            f.write(value)


def make_title(turns: Sequence[ConversationTurn], fallback: str) -> str:
    first_user = next((t for t in turns if t.role == "user"), None)
    if first_user is None:
        return fallback
    title = first_user.text[:TITLE_LENGTH]
    if len(first_user.text) > TITLE_LENGTH:
        title += "..."
    return title


def parse_sessions(payload: Any) -> List[ChatSession]:
    """Validate an import payload: one session object or a list of them.

    Raises:
        ImportFailedError: If the payload has any other shape or a session
            does not validate.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except json.JSONDecodeError as e:
            raise ImportFailedError(f"Import payload is not valid JSON: {e}") from e

    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict) and "id" in payload and (
        "turns" in payload or "messages" in payload
    ):
        items = [payload]
    else:
        raise ImportFailedError("Expected a session object or a list of sessions")

    try:
        return [ChatSession.model_validate(item) for item in items]
    except ValidationError as e:
        raise ImportFailedError(f"Invalid session in import payload: {e}") from e


class SessionStore:
    """Ordered list of chat sessions backed by a key-value store.

    The most recently created or imported sessions come first.
    """

    def __init__(self, kv: KeyValueStore, key: str = HISTORY_KEY):
        self.kv = kv
        self.key = key
        self.sessions: List[ChatSession] = self.load()

    def load(self) -> List[ChatSession]:
        raw = self.kv.load(self.key)
        if not raw:
            return []
        try:
            return parse_sessions(raw)
        except ImportFailedError as e:
            logger.error(f"Failed to load history: {e}")
            return []

    def save(self) -> None:
        self.kv.save(self.key, self.export_sessions())

    def get_session(self, session_id: str) -> Optional[ChatSession]:
        return next((s for s in self.sessions if s.id == session_id), None)

    def create_session(self, title: str = DEFAULT_TITLE) -> ChatSession:
        session = ChatSession(id=uuid.uuid4().hex, title=title, last_timestamp=now_ms())
        self.sessions.insert(0, session)
        self.save()
        return session

    def update_turns(self, session_id: str, turns: Sequence[ConversationTurn]) -> ChatSession:
        """Replace a session's turns, refreshing its title and timestamp.

        Raises:
            KeyError: If no session has this id.
        """
        for i, session in enumerate(self.sessions):
            if session.id == session_id:
                updated = session.model_copy(
                    update={
                        "turns": list(turns),
                        "last_timestamp": now_ms(),
                        "title": make_title(turns, session.title),
                    }
                )
                self.sessions[i] = updated
                self.save()
                return updated
        raise KeyError(session_id)

    def delete_session(self, session_id: str) -> bool:
        before = len(self.sessions)
        self.sessions = [s for s in self.sessions if s.id != session_id]
        if len(self.sessions) == before:
            return False
        self.save()
        return True

    def export_sessions(self) -> str:
        return json.dumps([s.model_dump() for s in self.sessions], indent=2)

    def import_sessions(self, payload: Any) -> List[ChatSession]:
        """Merge sessions from an export; existing ids are never overwritten.

        Args:
            payload: JSON text or parsed JSON (one session or a list).

        Returns:
            The sessions actually added, which now lead the session list.

        Raises:
            ImportFailedError: If the payload is malformed. Nothing is applied.
        """
        incoming = parse_sessions(payload)
        existing = {s.id for s in self.sessions}
        added = []
        for session in incoming:
            if session.id in existing:
                logger.warning(f"Skipping imported session {session.id}: id already exists")
                continue
            existing.add(session.id)
            added.append(session)
        self.sessions = added + self.sessions
        if added:
            self.save()
        logger.info(f"Imported {len(added)} of {len(incoming)} sessions")
        return added
