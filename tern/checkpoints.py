"""Save and restore conversation history under a tag.

Checkpoints are JSON files named ``checkpoint-<tag>.json`` in the
configured directory. A loaded checkpoint seeds ``ConversationEngine.reset_chat``.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path

from pydantic import TypeAdapter, ValidationError

from tern.config import Settings
from tern.content import Message

logger = logging.getLogger(__name__)

_HISTORY = TypeAdapter(list[Message])
_UNSAFE = re.compile(r"[^A-Za-z0-9_.-]")


class CheckpointStore:
    def __init__(self, directory: str | Path) -> None:
        self._directory = Path(directory)

    @classmethod
    def from_settings(cls, settings: Settings) -> CheckpointStore:
        return cls(settings.checkpoint_dir)

    def path_for(self, tag: str) -> Path:
        if not tag:
            raise ValueError("Checkpoint tag must not be empty")
        return self._directory / f"checkpoint-{_UNSAFE.sub('_', tag)}.json"

    def save(self, history: list[Message], tag: str) -> Path:
        path = self.path_for(tag)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(_HISTORY.dump_json(history, indent=2, exclude_defaults=True))
        logger.info("Saved checkpoint '%s' (%d messages)", tag, len(history))
        return path

    def load(self, tag: str) -> list[Message]:
        """History saved under ``tag``; empty when missing or unreadable."""
        path = self.path_for(tag)
        if not path.exists():
            return []
        try:
            return _HISTORY.validate_json(path.read_bytes())
        except ValidationError:
            logger.warning("Checkpoint '%s' is corrupt, ignoring", tag, exc_info=True)
            return []

    def delete(self, tag: str) -> bool:
        path = self.path_for(tag)
        if not path.exists():
            return False
        path.unlink()
        return True

    def tags(self) -> list[str]:
        if not self._directory.is_dir():
            return []
        return sorted(
            p.stem.removeprefix("checkpoint-") for p in self._directory.glob("checkpoint-*.json")
        )
