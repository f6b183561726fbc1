#!/usr/bin/env python3
from pathlib import Path


class SessionGate:
    """Remembers the last session that received the playbook injection."""

    def __init__(self, project_dir: Path):
        self.session_file = Path(project_dir) / ".claude" / "last_session.txt"

    def is_first_message(self, session_id: str) -> bool:
        if self.session_file.exists():
            last_session_id = self.session_file.read_text(encoding='utf-8').strip()
            return session_id != last_session_id

        return True

    def mark_session(self, session_id: str):
        self.session_file.parent.mkdir(parents=True, exist_ok=True)
        self.session_file.write_text(session_id, encoding='utf-8')

    def clear_session(self):
        if self.session_file.exists():
            self.session_file.unlink()
