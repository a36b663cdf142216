from __future__ import annotations

import dataclasses
import json
import threading
from pathlib import Path
from typing import Dict, Optional

from reflective_auth.logging import email_hash, get_logger
from reflective_auth.storage.common import identity_from_row, identity_to_row
from reflective_auth.storage.errors import ConstraintViolation
from reflective_auth.storage.models import Identity, normalize_email


class MemoryStore:
    """In-process identity store for tests and single-node development.

    When ``fs_root`` is given the identities are written to
    ``<fs_root>/state/identities.json`` after each mutation and reloaded on
    start. Identities are handed out as copies; changes only land through
    :meth:`save_identity`.
    """

    def __init__(self, fs_root: Optional[str] = None) -> None:
        self.logger = get_logger(__name__)
        self.identities: Dict[str, Identity] = {}
        self._by_email: Dict[str, str] = {}
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root) if fs_root else None
        if self.fs_root:
            self.fs_root.mkdir(parents=True, exist_ok=True)
            self._load_state()

    def _state_path(self) -> Path:
        assert self.fs_root is not None
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "identities.json"

    def _persist_state(self) -> None:
        if not self.fs_root:
            return
        state = {"identities": [identity_to_row(i) for i in self.identities.values()]}
        path = self._state_path()
        try:
            path.write_text(json.dumps(state, indent=2))
        except Exception as exc:
            raise RuntimeError(f"failed to persist in-memory state: {exc}")

    def _load_state(self) -> bool:
        path = self._state_path()
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.identities = {
            row["id"]: identity_from_row(row) for row in data.get("identities", [])
        }
        self._by_email = {i.email: i.id for i in self.identities.values()}
        self.logger.info("memory_store_loaded", identities=len(self.identities))
        return True

    @staticmethod
    def _copy(identity: Optional[Identity]) -> Optional[Identity]:
        return dataclasses.replace(identity) if identity else None

    def create_identity(self, identity: Identity) -> Identity:
        with self._data_lock:
            email = normalize_email(identity.email)
            if email in self._by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            stored = dataclasses.replace(identity, email=email)
            self.identities[stored.id] = stored
            self._by_email[email] = stored.id
            self._persist_state()
            self.logger.info(
                "identity_created", identity_id=stored.id, email_hash=email_hash(email)
            )
            return dataclasses.replace(stored)

    def save_identity(self, identity: Identity) -> Identity:
        with self._data_lock:
            current = self.identities.get(identity.id)
            if not current:
                raise ConstraintViolation("identity not found", {"id": identity.id})
            email = normalize_email(identity.email)
            owner = self._by_email.get(email)
            if owner and owner != identity.id:
                raise ConstraintViolation("email already exists", {"field": "email"})
            self._by_email.pop(current.email, None)
            stored = dataclasses.replace(identity, email=email)
            self.identities[stored.id] = stored
            self._by_email[email] = stored.id
            self._persist_state()
            return dataclasses.replace(stored)

    def get_identity_by_email(self, email: str) -> Optional[Identity]:
        with self._data_lock:
            identity_id = self._by_email.get(normalize_email(email))
            return self._copy(self.identities.get(identity_id)) if identity_id else None

    def get_identity(self, identity_id: str) -> Optional[Identity]:
        with self._data_lock:
            return self._copy(self.identities.get(identity_id))

    def connect(self) -> None:
        return None

    def ping(self) -> None:
        return None

    def close(self) -> None:
        return None
