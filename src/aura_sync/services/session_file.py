"""Auth token and theme preference persisted across restarts.

Only these two values are stored; the snapshot is always rebuilt from the
backend after a restart.
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, ValidationError
from pydantic.alias_generators import to_camel

from aura_sync.core.settings import settings
from aura_sync.schemas.entities import ThemeMode

# Configure logger for this module
logger = logging.getLogger(__name__)


class PersistedSession(BaseModel):
    token: str | None = None
    theme: ThemeMode = ThemeMode.LIGHT

    model_config = ConfigDict(populate_by_name=True, alias_generator=to_camel)


class SessionFile:
    """JSON file holding a :class:`PersistedSession`."""

    def __init__(self, path: Path | str | None = None) -> None:
        self.path = Path(path if path is not None else settings.session_file).expanduser()

    def load(self) -> PersistedSession:
        """Read the persisted session. A missing or corrupt file yields defaults."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return PersistedSession()
        except OSError as e:
            logger.warning("Could not read session file %s: %s", self.path, e)
            return PersistedSession()

        try:
            return PersistedSession.model_validate_json(raw)
        except ValidationError as e:
            logger.warning("Ignoring invalid session file %s: %s", self.path, e)
            return PersistedSession()

    def save(self, session: PersistedSession) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(session.model_dump_json(by_alias=True), encoding="utf-8")

    def update(self, **changes: object) -> PersistedSession:
        session = self.load().model_copy(update=changes)
        self.save(session)
        return session

    def clear(self) -> None:
        """Forget the token while keeping the theme preference."""
        self.update(token=None)


__all__ = ["PersistedSession", "SessionFile"]
