"""Simple JSON-based concept map persistence with per-session files."""

import json
import logging
import re
from pathlib import Path
from typing import Optional, Sequence

from pydantic import ValidationError

from voice_tutor.config import settings
from voice_tutor.models import ConceptMap, Message, PivotEntry, SessionRecord

log = logging.getLogger(__name__)

UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.-]")


class ConceptMapStore:
    """Persists each session's concept map, history and pivot queue."""

    def __init__(self, data_dir: Optional[str] = None):
        self.base_dir = Path(data_dir or settings.DATA_DIR)
        self.data_dir = self.base_dir / "sessions"
        self.data_dir.mkdir(parents=True, exist_ok=True)

    def _session_path(self, session_id: str) -> Path:
        """Get path to the session state file."""
        safe = UNSAFE_CHARS.sub("_", session_id) or "session"
        return self.data_dir / f"session_{safe}.json"

    def load_record(self, session_id: str) -> Optional[SessionRecord]:
        path = self._session_path(session_id)
        if not path.exists():
            return None
        try:
            return SessionRecord.model_validate_json(path.read_text())
        except (ValidationError, ValueError) as e:
            log.warning(f"Ignoring unreadable session file {path.name}: {e}")
            return None

    def load(self, session_id: str) -> Optional[ConceptMap]:
        """Return the saved concept map, or None when the session is new."""
        record = self.load_record(session_id)
        return record.concept_map if record else None

    def save(
        self,
        session_id: str,
        concept_map: ConceptMap,
        history: Sequence[Message] = (),
        pivot_queue: Sequence[PivotEntry] = (),
        confidence_reached: bool = False,
    ) -> SessionRecord:
        """Persist current state to the session file."""
        record = SessionRecord(
            session_id=session_id,
            concept_map=concept_map,
            history=list(history),
            pivot_queue=list(pivot_queue),
            confidence_reached=confidence_reached,
        )
        path = self._session_path(session_id)
        tmp = path.with_suffix(".tmp")
        tmp.write_text(json.dumps(record.model_dump(mode="json", by_alias=True), indent=2))
        tmp.replace(path)
        return record

    def list_sessions(self) -> list[str]:
        sessions = []
        for state_file in sorted(self.data_dir.glob("session_*.json")):
            try:
                sessions.append(json.loads(state_file.read_text())["session_id"])
            except (json.JSONDecodeError, KeyError):
                continue  # Skip corrupted files
        return sessions

    def clear(self):
        """Delete all saved session files."""
        for state_file in self.data_dir.glob("session_*.json"):
            state_file.unlink()
