"""Persistence of the domain model as a single JSON snapshot."""

import json
import logging
import os
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Self

from .encryption import EncryptionError, TokenCipher
from .errors import KantineError
from .models import DomainModel

logger = logging.getLogger(__name__)


class StoreError(KantineError):
    """Raised when the persisted model cannot be read or written."""

    def __init__(self: Self, message: str) -> None:
        super().__init__(message, [
            "Check permissions of the ~/.kantine directory",
            "Restore the last good snapshot with: kantine restore",
        ])


class ModelStore:
    """Loads and saves the ``DomainModel`` at ``<home>/model.json``.

    Writes are atomic (temp file + replace) with ``0600`` permissions. Signed
    device tokens are encrypted at rest. The previous snapshot is kept in
    ``<home>/backups`` before every write.
    """

    BACKUP_COUNT = 3

    def __init__(self: Self, home: Path, cipher: Optional[TokenCipher] = None) -> None:
        self.home = Path(home)
        self.model_file = self.home / "model.json"
        self.backup_dir = self.home / "backups"
        self.home.mkdir(parents=True, exist_ok=True)
        self.cipher = cipher or TokenCipher(self.home / ".encryption_key")

    def exists(self: Self) -> bool:
        return self.model_file.exists()

    def load(self: Self, device_id: Optional[str] = None) -> DomainModel:
        """Load the persisted model.

        Args:
            device_id: Device id for a fresh model when nothing is stored.

        Returns:
            The stored model, or an empty one if no snapshot exists.

        Raises:
            StoreError: If the snapshot is unreadable. Authorization data is
                never silently discarded.
        """
        if not self.model_file.exists():
            logger.debug("No stored model at %s, starting empty", self.model_file)
            return DomainModel.empty(device_id=device_id)
        return self._load_file(self.model_file)

    def load_or_empty(self: Self, device_id: Optional[str] = None) -> DomainModel:
        """Like ``load`` but falls back to the newest readable backup.

        Only when no backup can be read either does it return an empty model.
        """
        try:
            return self.load(device_id=device_id)
        except StoreError as e:
            logger.error("Stored model is unreadable: %s", e)

        try:
            return self.restore_latest()
        except StoreError:
            logger.error("No readable model backup found, starting empty")
            return DomainModel.empty(device_id=device_id)

    def restore_latest(self: Self) -> DomainModel:
        """Replace the snapshot with the newest readable backup.

        Raises:
            StoreError: If no backup can be read.
        """
        for backup in self.list_backups():
            try:
                model = self._load_file(backup)
            except StoreError as e:
                logger.warning("Skipping unreadable backup: %s", e)
                continue
            logger.warning("Restored model from backup %s", backup.name)
            self.save(model, create_backup=False)
            return model
        raise StoreError("No readable model backup found")

    def save(self: Self, model: DomainModel, create_backup: bool = True) -> None:
        """Persist ``model`` atomically.

        Raises:
            StoreError: If the snapshot cannot be written.
        """
        try:
            payload = self._encrypt(model.to_dict())
        except EncryptionError as e:
            raise StoreError(f"Failed to save model: {e}")

        if create_backup and self.model_file.exists():
            self._create_backup()

        temp_file = self.model_file.with_suffix('.tmp')
        try:
            with open(temp_file, 'w') as f:
                json.dump(payload, f, indent=2)
            os.chmod(temp_file, 0o600)
            temp_file.replace(self.model_file)
        except OSError as e:
            if temp_file.exists():
                temp_file.unlink()
            raise StoreError(f"Failed to save model: {e}")

        logger.debug("Saved model with %d tenant(s)", len(model.tenants))

    def delete(self: Self) -> None:
        """Remove the snapshot, keeping a backup of it."""
        if self.model_file.exists():
            self._create_backup()
            self.model_file.unlink()

    def list_backups(self: Self) -> List[Path]:
        """Backups, newest first."""
        if not self.backup_dir.exists():
            return []
        return sorted(self.backup_dir.glob("model_*.json"), key=lambda p: p.name, reverse=True)

    def _load_file(self: Self, path: Path) -> DomainModel:
        try:
            with open(path, 'r') as f:
                data = json.load(f)
            return DomainModel.from_dict(self._decrypt(data))
        except (OSError, json.JSONDecodeError) as e:
            raise StoreError(f"Failed to load model from {path.name}: {e}")
        except EncryptionError as e:
            raise StoreError(f"Failed to load model from {path.name}: cannot decrypt tokens ({e})")
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            raise StoreError(f"Failed to load model from {path.name}: malformed snapshot ({e})")

    def _create_backup(self: Self) -> None:
        self.backup_dir.mkdir(exist_ok=True)
        os.chmod(self.backup_dir, 0o700)
        timestamp = datetime.now().strftime('%Y%m%d_%H%M%S_%f')
        backup_file = self.backup_dir / f"model_{timestamp}.json"
        try:
            shutil.copy2(self.model_file, backup_file)
            os.chmod(backup_file, 0o600)
        except OSError as e:
            logger.warning("Failed to back up model: %s", e)
            return

        for old_backup in self.list_backups()[self.BACKUP_COUNT:]:
            try:
                old_backup.unlink()
            except OSError:
                continue

    def _encrypt(self: Self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._map_tokens(data, self.cipher.encrypt_value)

    def _decrypt(self: Self, data: Dict[str, Any]) -> Dict[str, Any]:
        return self._map_tokens(data, self.cipher.decrypt_value)

    @staticmethod
    def _map_tokens(data: Dict[str, Any], func) -> Dict[str, Any]:
        result = dict(data)
        for section in ("tenants", "enrollments"):
            items = {}
            for key, item in (data.get(section) or {}).items():
                item = dict(item)
                item["signed_device_token"] = func(item.get("signed_device_token"))
                items[key] = item
            result[section] = items
        return result
