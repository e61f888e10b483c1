# Copyright (C) 2026 StableLlama
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.

"""Defines the state persistence unit so this responsibility stays isolated, testable, and easy to evolve.

Save/load collaborators for the single persisted state blob
(providers, history, prompt settings, system prompt).
"""

from __future__ import annotations

import copy
import json
import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional, Protocol

from llmcompare.services.exceptions import PersistenceError

log = logging.getLogger(__name__)


class StatePersistence(Protocol):
    def load(self) -> Optional[Dict[str, Any]]: ...

    def save(self, state: Dict[str, Any]) -> None: ...


class JsonFileStatePersistence:
    """Keeps the state blob in one JSON file."""

    def __init__(self, path: os.PathLike[str] | str):
        self.path = Path(path)

    def load(self) -> Optional[Dict[str, Any]]:
        """Load State."""
        if not self.path.exists():
            return None
        try:
            data = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            log.warning("Ignoring unreadable state file %s: %s", self.path, exc)
            return None
        return data if isinstance(data, dict) else None

    def save(self, state: Dict[str, Any]) -> None:
        """Save State."""
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(json.dumps(state, indent=2), encoding="utf-8")
            os.replace(tmp_path, self.path)
        except OSError as exc:
            raise PersistenceError(f"Failed to save state to {self.path}: {exc}") from exc


class InMemoryStatePersistence:
    """Process-local stand-in used when no state file is wanted."""

    def __init__(self, initial: Optional[Dict[str, Any]] = None):
        self.state = copy.deepcopy(initial) if initial is not None else None
        self.save_count = 0

    def load(self) -> Optional[Dict[str, Any]]:
        return copy.deepcopy(self.state)

    def save(self, state: Dict[str, Any]) -> None:
        self.state = copy.deepcopy(state)
        self.save_count += 1
