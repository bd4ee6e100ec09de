"""Encrypted-at-rest storage for the signed-in user's GitHub token and profile.

The vault lazily opens a Fernet-encrypted JSON file the first time it is used.
Opening is guarded so concurrent first callers share one store, and it runs a
one-time migration from the legacy plaintext credentials file:

1. copy every legacy field into the encrypted store,
2. record ``migrated_from_legacy``,
3. erase the legacy file.

Steps 1 and 2 land in a single write. A crash before 3 leaves the legacy file
behind; the next start sees the marker and only erases it. If the encrypted
store cannot be created at all (no usable key file, unwritable directory) the
vault falls back to a plaintext store; callers cannot tell the difference.
"""

import json
import logging
import os
import tempfile
import threading
from pathlib import Path
from typing import Callable

from cryptography.fernet import Fernet, InvalidToken

from .models import Credential
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)

KEY_TOKEN = "access_token"
KEY_USER_LOGIN = "user_login"
KEY_USER_AVATAR = "user_avatar"
KEY_USER_NAME = "user_name"
KEY_MIGRATED = "migrated_from_legacy"
CREDENTIAL_KEYS = (KEY_TOKEN, KEY_USER_LOGIN, KEY_USER_AVATAR, KEY_USER_NAME)

ENCRYPTED_FILENAME = "credentials.enc"
KEY_FILENAME = "vault.key"
PLAINTEXT_FILENAME = "credentials.json"
LEGACY_FILENAME = "legacy_credentials.json"


def _atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class PlaintextStore:
    """Key/value credentials kept as a JSON object in a single file."""

    encrypted = False

    def __init__(self, path: Path):
        self.path = Path(path)

    def read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            data = json.loads(self.path.read_text())
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Ignoring unreadable credentials file %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def write(self, values: dict) -> None:
        _atomic_write(self.path, json.dumps(values).encode())

    def erase(self) -> None:
        self.path.unlink(missing_ok=True)


class EncryptedStore(PlaintextStore):
    """Same contract as PlaintextStore, with the file encrypted by Fernet."""

    encrypted = True

    def __init__(self, path: Path, key_path: Path):
        super().__init__(path)
        self.key_path = Path(key_path)
        self._fernet = Fernet(self._load_or_create_key())

    def _load_or_create_key(self) -> bytes:
        if self.key_path.exists():
            return self.key_path.read_bytes().strip()
        key = Fernet.generate_key()
        _atomic_write(self.key_path, key)
        return key

    def read(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            raw = self._fernet.decrypt(self.path.read_bytes())
            data = json.loads(raw)
        except InvalidToken:
            logger.warning("Stored credentials cannot be decrypted with %s; treating as signed out", self.key_path)
            return {}
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            logger.warning("Ignoring corrupt encrypted credentials %s: %s", self.path, e)
            return {}
        return data if isinstance(data, dict) else {}

    def write(self, values: dict) -> None:
        _atomic_write(self.path, self._fernet.encrypt(json.dumps(values).encode()))


class CredentialVault:
    """Holds at most one Credential, encrypted at rest."""

    def __init__(
        self,
        directory: Path,
        legacy_path: Path | None = None,
        encrypted_factory: Callable[[Path, Path], PlaintextStore] = EncryptedStore,
    ):
        self.directory = Path(directory)
        self.legacy = PlaintextStore(legacy_path or self.directory / LEGACY_FILENAME)
        self._encrypted_factory = encrypted_factory
        self._store: PlaintextStore | None = None
        self._init_lock = threading.Lock()
        # Serialises read-modify-write of the store contents
        self._io_lock = threading.Lock()

    def _backing_store(self) -> PlaintextStore:
        store = self._store
        if store is not None:
            return store
        with self._init_lock:
            if self._store is None:
                self._store = self._open_store()
            return self._store

    def _open_store(self) -> PlaintextStore:
        try:
            store = self._encrypted_factory(
                self.directory / ENCRYPTED_FILENAME, self.directory / KEY_FILENAME
            )
        except (OSError, ValueError) as e:
            logger.warning("Encrypted credential store unavailable, using plaintext store: %s", e)
            store = PlaintextStore(self.directory / PLAINTEXT_FILENAME)
        self._migrate_legacy(store)
        return store

    def _migrate_legacy(self, store: PlaintextStore) -> None:
        values = store.read()
        if values.get(KEY_MIGRATED):
            self.legacy.erase()
            return
        legacy = self.legacy.read()
        legacy_fields = {k: legacy[k] for k in CREDENTIAL_KEYS if legacy.get(k) is not None}
        if not legacy_fields:
            return

        if values.get(KEY_TOKEN):
            # A sign-in on the new store is newer than anything in the legacy file
            logger.info("Discarding legacy credentials, already signed in as %s", values.get(KEY_USER_LOGIN))
        else:
            values.update(legacy_fields)
            logger.info("Migrated legacy credentials for %s", legacy_fields.get(KEY_USER_LOGIN, "<unknown>"))
        values[KEY_MIGRATED] = True
        store.write(values)
        self.legacy.erase()

    @property
    def encrypted(self) -> bool:
        return self._backing_store().encrypted

    def get(self) -> Credential | None:
        store = self._backing_store()
        with self._io_lock:
            values = store.read()
        token = values.get(KEY_TOKEN)
        if not token:
            return None
        return Credential(
            token=token,
            login=values.get(KEY_USER_LOGIN) or "",
            avatar_url=values.get(KEY_USER_AVATAR),
            display_name=values.get(KEY_USER_NAME),
            migrated=bool(values.get(KEY_MIGRATED, False)),
        )

    def is_signed_in(self) -> bool:
        return self.get() is not None

    def save(
        self,
        token: str,
        login: str,
        avatar_url: str | None = None,
        display_name: str | None = None,
    ) -> Credential:
        if not token:
            raise ValueError("token must not be empty")
        store = self._backing_store()
        with self._io_lock:
            values = store.read()
            values.update(
                {
                    KEY_TOKEN: token,
                    KEY_USER_LOGIN: login,
                    KEY_USER_AVATAR: avatar_url,
                    KEY_USER_NAME: display_name,
                }
            )
            store.write(values)
        return Credential(
            token=token,
            login=login,
            avatar_url=avatar_url,
            display_name=display_name,
            migrated=bool(values.get(KEY_MIGRATED, False)),
        )

    def clear(self) -> None:
        """Sign out. The migration marker survives so legacy data is never re-imported."""
        store = self._backing_store()
        with self._io_lock:
            values = store.read()
            migrated = values.get(KEY_MIGRATED)
            if migrated:
                store.write({KEY_MIGRATED: migrated})
            else:
                store.erase()


def create_vault(settings: Settings | None = None) -> CredentialVault:
    """Build a vault rooted at the configured credentials directory."""
    settings = settings or get_settings()
    return CredentialVault(Path(settings.credentials_dir))
