from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Protocol

import structlog

logger = structlog.get_logger(__name__)


class StateStore(Protocol):
    """Named JSON documents, each rewritten wholesale on save."""

    def load(self, name: str) -> Any | None: ...

    def save(self, name: str, payload: Any, *, overwrite: bool = True) -> bool: ...

    def exists(self, name: str) -> bool: ...


def _write_state_atomic(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(f"{path.name}.tmp")
    tmp.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
    tmp.replace(path)


class JsonFileStore:
    """One `<name>.json` file per document under `directory`.

    Missing or unreadable files load as None so callers can seed defaults.
    Write failures are logged and reported through the return value; they
    never raise into a check cycle.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory)

    def path_for(self, name: str) -> Path:
        return self.directory / f"{name}.json"

    def exists(self, name: str) -> bool:
        return self.path_for(name).exists()

    def load(self, name: str) -> Any | None:
        path = self.path_for(name)
        try:
            raw = path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None
        except OSError as exc:
            logger.warning("State file unreadable; using defaults", path=str(path), error=str(exc))
            return None
        try:
            return json.loads(raw)
        except ValueError as exc:
            logger.warning("State file corrupt; using defaults", path=str(path), error=str(exc))
            return None

    def save(self, name: str, payload: Any, *, overwrite: bool = True) -> bool:
        path = self.path_for(name)
        if not overwrite and path.exists():
            logger.info("State file already written; keeping existing", path=str(path))
            return False
        try:
            _write_state_atomic(path, payload)
        except (OSError, TypeError, ValueError) as exc:
            logger.error("Failed to write state file", path=str(path), error=f"{type(exc).__name__}: {exc}")
            return False
        return True
