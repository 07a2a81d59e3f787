from __future__ import annotations

import json
import logging
import os
import tempfile
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from pathlib import Path

from .structures import Credential, Identity

logger = logging.getLogger(__name__)
VERSION = "1"

AuthListener = Callable[[bool], None]


def get_config_dir() -> Path:
    return Path.home() / ".config" / "readpick"


class CredentialStore:
    """Durable key-value home of the credential, one JSON file."""

    FILENAME = "credentials.json"

    def __init__(self, path: str | Path | None = None):
        if path:
            self.path = Path(path).expanduser()
        else:
            self.path = get_config_dir() / self.FILENAME

    def load(self) -> Credential:
        if not self.path.exists():
            return Credential()
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
            if data.get("version") != VERSION:
                return Credential()
            ident = data.get("identity")
            identity = None
            if isinstance(ident, dict):
                identity = Identity(
                    user_id=ident["user_id"],
                    role=ident.get("role") or "USER",
                    name=ident.get("name"),
                    email=ident.get("email"),
                )
            return Credential(token=data.get("token") or None, identity=identity)
        except (json.JSONDecodeError, KeyError, TypeError, AttributeError) as e:
            logger.warning("corrupt credential file %s: %s", self.path, e)
            return Credential()

    def save(self, credential: Credential) -> None:
        ident = credential.identity
        data = {
            "version": VERSION,
            "token": credential.token,
            "identity": None if ident is None else {
                "user_id": ident.user_id,
                "role": ident.role,
                "name": ident.name,
                "email": ident.email,
            },
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(data, f)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp, self.path)
        finally:
            Path(tmp).unlink(missing_ok=True)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)


class TokenGate:
    """Process-wide holder of the bearer token and caller identity.

    Reads are served from an in-memory snapshot, so ``current_token()`` is safe to call
    from the request path. Writes replace the snapshot under a lock and then persist it.
    """

    def __init__(self, store: CredentialStore | None = None):
        self._store = store
        self._credential = Credential()
        self._lock = threading.RLock()
        self._listeners: list[AuthListener] = []
        self._writes = 0

    def hydrate(self) -> Credential:
        """Load the durable credential into memory and return the credential now in effect.

        A login or logout that lands while the file is being read wins over the file.
        """
        if self._store is None:
            return self._credential
        with self._lock:
            seen = self._writes
        loaded = self._store.load()
        with self._lock:
            if self._writes != seen:
                logger.debug("credential changed during hydrate; keeping it")
                return self._credential
            self._swap(loaded)
            return loaded

    def hydrate_in_background(self) -> Future[Credential]:
        exe = ThreadPoolExecutor(max_workers=1, thread_name_prefix="readpick-hydrate")
        try:
            return exe.submit(self.hydrate)
        finally:
            exe.shutdown(wait=False)

    def credential(self) -> Credential:
        return self._credential

    def current_token(self) -> str | None:
        return self._credential.token

    def identity(self) -> Identity | None:
        return self._credential.identity

    def is_authenticated(self) -> bool:
        return bool(self._credential.token)

    def is_admin(self) -> bool:
        ident = self._credential.identity
        return ident is not None and (ident.role or "").upper() == "ADMIN"

    def set_credential(self, token: str, identity: Identity | None) -> None:
        credential = Credential(token=token, identity=identity)
        with self._lock:
            self._writes += 1
            self._swap(credential)
        if self._store is not None:
            self._store.save(credential)
        logger.info("credential set for user %s", identity.user_id if identity else "?")

    def clear(self) -> None:
        with self._lock:
            self._writes += 1
            self._swap(Credential())
        if self._store is not None:
            self._store.clear()
        logger.info("credential cleared")

    def subscribe(self, listener: AuthListener) -> Callable[[], None]:
        with self._lock:
            self._listeners.append(listener)

        def unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return unsubscribe

    def _swap(self, credential: Credential) -> None:
        with self._lock:
            was = self.is_authenticated()
            self._credential = credential
            now = self.is_authenticated()
            listeners = list(self._listeners) if was != now else []
            for listener in listeners:
                try:
                    listener(now)
                except Exception:
                    logger.debug("auth listener failed", exc_info=True)
