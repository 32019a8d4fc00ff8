"""
Sync Engine -- orchestrates snapshot, merge, encryption and transport.

This is the command center. It reads the sync config, builds the
provider, holds the passphrase for the session, and runs sync cycles:

    flowsync sync now  ->  snapshot -> download -> decrypt -> merge
                           -> apply locally -> encrypt -> upload
                           -> content files

Cycles are serialized per engine. A cycle started while another is
running returns ``skipped`` immediately instead of queueing.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import yaml

from .. import FLOWSYNC_HOME
from ..errors import DecryptionError, FlowSyncError, SyncError
from ..models import (
    EncryptedBlob,
    SyncAction,
    SyncResult,
    SyncStateDocument,
    now_ms,
)
from .content import ContentSync
from .crypto import (
    create_plain_blob,
    decrypt,
    encrypt,
    generate_salt,
    get_salt_from_blob,
    is_encrypted_blob,
    parse_plain_blob,
    verify_passphrase,
)
from .merge import documents_equivalent, merge_states
from .migrations import ensure_supported_schema
from .models import (
    SyncConfig,
    SyncPhase,
    SyncProviderConfig,
    SyncStatusState,
)
from .providers import FolderProvider, SyncProvider, create_provider
from .store import LocalStore

logger = logging.getLogger("flowsync.sync.engine")

MIN_PASSPHRASE_LENGTH = 8


def _encode_salt(salt: bytes) -> str:
    return base64.b64encode(salt).decode("ascii")


def _decode_salt(value: Optional[str]) -> Optional[bytes]:
    if not value:
        return None
    try:
        return base64.b64decode(value, validate=True)
    except (binascii.Error, ValueError):
        logger.warning("Ignoring invalid encryption salt in sync config")
        return None


def _check_passphrase(passphrase: str) -> None:
    if len(passphrase) < MIN_PASSPHRASE_LENGTH:
        raise SyncError(
            f"Passphrase must be at least {MIN_PASSPHRASE_LENGTH} characters",
            "configuration",
        )


class SyncEngine:
    """Runs sync cycles between the local store and one provider.

    The passphrase is held in memory only. Engines restored from a saved
    config need ``set_passphrase`` before an encrypted cycle can run.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        store: Optional[LocalStore] = None,
        provider: Optional[SyncProvider] = None,
    ):
        """Initialize the sync engine.

        Args:
            home: App home directory. Defaults to ``FLOWSYNC_HOME``.
            store: Local store. Defaults to the store under ``home``.
            provider: Provider to use instead of the one in the saved config.
        """
        self.home = Path(home or FLOWSYNC_HOME).expanduser()
        self.sync_dir = self.home / "sync"
        self.sync_dir.mkdir(parents=True, exist_ok=True)

        self.store = store or LocalStore(self.home)
        self.config = self._load_config()
        self.state = self._load_state()
        self.content = ContentSync()
        self.phase: Optional[SyncPhase] = None

        self._passphrase: Optional[str] = None
        self._salt: Optional[bytes] = _decode_salt(self.config.encryption_salt)
        self._lock = threading.Lock()

        self._provider = provider
        if self._provider is None and self.config.enabled and self.config.provider:
            try:
                self._provider = create_provider(self.config.provider)
            except ValueError as exc:
                logger.warning("Cannot restore sync provider: %s", exc)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def _load_config(self) -> SyncConfig:
        """Load sync configuration from disk."""
        config_file = self.sync_dir / "config.yaml"
        if config_file.exists():
            try:
                data = yaml.safe_load(config_file.read_text()) or {}
                return SyncConfig(**data)
            except (yaml.YAMLError, ValueError) as exc:
                logger.warning("Failed to load sync config: %s", exc)
        return SyncConfig()

    def _load_state(self) -> SyncStatusState:
        """Load sync status from disk."""
        state_file = self.sync_dir / "state.json"
        if state_file.exists():
            try:
                data = json.loads(state_file.read_text())
                return SyncStatusState(**data)
            except (json.JSONDecodeError, ValueError) as exc:
                logger.warning("Failed to load sync state: %s", exc)
        return SyncStatusState()

    def _save_state(self) -> None:
        """Persist sync status to disk."""
        state_file = self.sync_dir / "state.json"
        state_file.write_text(self.state.model_dump_json(indent=2))

    def save_config(self) -> None:
        """Persist sync configuration to disk."""
        config_file = self.sync_dir / "config.yaml"
        data = self.config.model_dump(mode="json")
        config_file.write_text(yaml.dump(data, default_flow_style=False))

    # ------------------------------------------------------------------
    # Configuration
    # ------------------------------------------------------------------

    @property
    def provider(self) -> Optional[SyncProvider]:
        return self._provider

    @staticmethod
    def _provider_config(provider: SyncProvider) -> SyncProviderConfig:
        if isinstance(provider, FolderProvider):
            return SyncProviderConfig(
                provider_type=provider.provider_type, folder_path=provider.folder
            )
        return SyncProviderConfig(provider_type=provider.provider_type)

    def _set_encryption(self, passphrase: str, salt: bytes) -> None:
        self._passphrase = passphrase
        self._salt = salt
        self.content.set_encryption(passphrase, salt)

    def configure(self, provider: SyncProvider, passphrase: str) -> None:
        """Enable encrypted sync through ``provider``.

        If the provider already holds encrypted state, its salt is reused
        so every device derives the same key, the passphrase is checked
        against it, and the remote state is merged into local storage
        before anything is uploaded.

        Raises:
            SyncError: Passphrase too short or provider unusable.
            DecryptionError: Passphrase does not open the existing remote state.
        """
        _check_passphrase(passphrase)
        if not provider.is_connected():
            raise SyncError(f"{provider.name} is not connected", "configuration")

        remote_blob = provider.download()
        remote_state: Optional[SyncStateDocument] = None
        if remote_blob is not None and is_encrypted_blob(remote_blob):
            if not verify_passphrase(remote_blob, passphrase):
                raise DecryptionError(
                    "Incorrect passphrase for existing sync data", "configuration"
                )
            salt = get_salt_from_blob(remote_blob)
            remote_state = ensure_supported_schema(decrypt(remote_blob, passphrase))
        else:
            salt = generate_salt()

        self._provider = provider
        self._set_encryption(passphrase, salt)
        self.config = self.config.model_copy(update={
            "enabled": True,
            "provider": self._provider_config(provider),
            "encryption_enabled": True,
            "encryption_salt": _encode_salt(salt),
        })
        self.save_config()
        self.store.set_sync_enabled(True, provider.provider_type.value)

        if remote_state is not None:
            local = self.store.get_state_for_sync()
            result = merge_states(local, remote_state, local.device_id)
            self.store.apply_remote_state(result.merged)

        logger.info("Encrypted sync configured via %s", provider.name)

    def configure_without_encryption(self, provider: SyncProvider) -> None:
        """Enable plain sync, for folders already protected by their own client.

        Raises:
            SyncError: The provider already holds encrypted state.
        """
        if not provider.is_connected():
            raise SyncError(f"{provider.name} is not connected", "configuration")
        remote_blob = provider.download()
        if remote_blob is not None and is_encrypted_blob(remote_blob):
            raise SyncError(
                "Existing sync data is encrypted. Configure with a passphrase.",
                "configuration",
            )

        self._provider = provider
        self._passphrase = None
        self._salt = None
        self.content.clear_encryption()
        self.config = self.config.model_copy(update={
            "enabled": True,
            "provider": self._provider_config(provider),
            "encryption_enabled": False,
            "encryption_salt": None,
        })
        self.save_config()
        self.store.set_sync_enabled(True, provider.provider_type.value)
        logger.info("Unencrypted sync configured via %s", provider.name)

    def set_passphrase(self, passphrase: str) -> None:
        """Supply the passphrase for a configuration restored from disk."""
        _check_passphrase(passphrase)
        salt = self._salt
        if salt is None:
            salt = generate_salt()
            self.config.encryption_salt = _encode_salt(salt)
            self.save_config()
        self._set_encryption(passphrase, salt)

    def has_passphrase(self) -> bool:
        return self._passphrase is not None

    def disconnect(self) -> None:
        """Stop syncing. Remote data and local state are left in place."""
        if self._provider is not None:
            self._provider.disconnect()
        self._provider = None
        self._passphrase = None
        self._salt = None
        self.content.clear_encryption()
        self.config = SyncConfig()
        self.save_config()
        self.store.set_sync_enabled(False, None)
        logger.info("Sync disconnected")

    def is_ready_to_sync(self) -> bool:
        """Provider connected, sync enabled, and a passphrase if one is needed."""
        if not self.config.enabled or self._provider is None:
            return False
        if not self._provider.is_connected():
            return False
        if self.config.encryption_enabled:
            return self._passphrase is not None and self._salt is not None
        return True

    # ------------------------------------------------------------------
    # Sync cycle
    # ------------------------------------------------------------------

    def sync_now(self) -> SyncResult:
        """Run one sync cycle.

        Never raises for sync failures: they come back as
        ``SyncResult(success=False, action="error")`` and are recorded
        as the last sync error.

        Returns:
            SyncResult describing what the cycle did.
        """
        if not self._lock.acquire(blocking=False):
            logger.info("Sync already in progress, skipping")
            return SyncResult(success=True, action=SyncAction.SKIPPED)

        try:
            return self._run_cycle()
        finally:
            self.phase = None
            self._lock.release()

    def _run_cycle(self) -> SyncResult:
        self.state.last_attempt = datetime.now(timezone.utc)
        try:
            result = self._sync_state()
        except FlowSyncError as exc:
            logger.error("Sync failed during %s: %s", exc.operation or "sync", exc)
            self.state.last_action = SyncAction.ERROR
            self.state.last_error = str(exc)
            self._save_state()
            try:
                self.store.record_sync_result(None, str(exc))
            except FlowSyncError as store_exc:
                logger.warning("Could not record sync error in store: %s", store_exc)
            return SyncResult(success=False, action=SyncAction.ERROR, error=str(exc))

        self.state.last_sync = datetime.now(timezone.utc)
        self.state.last_action = result.action
        self.state.last_error = None
        self.state.conflicts_resolved += len(result.conflicts)
        self._save_state()
        self.store.record_sync_result(result.timestamp, None)
        logger.info("Sync finished: %s", result.action.value)
        return result

    def _read_remote(self, blob: EncryptedBlob) -> SyncStateDocument:
        if is_encrypted_blob(blob):
            if not self.config.encryption_enabled:
                raise SyncError(
                    "Remote sync data is encrypted. Configure a passphrase.", "decrypt"
                )
            state = decrypt(blob, self._passphrase)
            salt = get_salt_from_blob(blob)
            if salt != self._salt:
                logger.info("Adopting encryption salt from remote state")
                self._set_encryption(self._passphrase, salt)
                self.config.encryption_salt = _encode_salt(salt)
                self.save_config()
        else:
            state = parse_plain_blob(blob)
        return ensure_supported_schema(state)

    def _upload(self, provider: SyncProvider, document: SyncStateDocument) -> None:
        self.phase = SyncPhase.UPLOADING
        if self.config.encryption_enabled:
            blob = encrypt(document, self._passphrase, self._salt)
        else:
            blob = create_plain_blob(document)

        result = provider.upload(blob)
        if not result.success:
            raise SyncError(result.error or "Upload failed", "upload")
        self.state.upload_count += 1

    def _sync_state(self) -> SyncResult:
        if not self.is_ready_to_sync():
            raise SyncError("Sync is not configured or passphrase not set", "configuration")
        provider = self._provider

        self.phase = SyncPhase.CONNECTING
        local = self.store.get_state_for_sync()

        self.phase = SyncPhase.DOWNLOADING
        remote_blob = provider.download()
        if remote_blob is None:
            logger.info("No remote state yet, uploading local state")
            self._upload(provider, local)
            self._sync_content(provider, local)
            return SyncResult(success=True, action=SyncAction.UPLOADED)

        remote = self._read_remote(remote_blob)
        self.state.download_count += 1

        if remote.device_id == local.device_id and remote.updated_at == local.updated_at:
            logger.info("Remote state unchanged since this device uploaded it")
            self._sync_content(provider, local)
            return SyncResult(success=True, action=SyncAction.NO_CHANGE)

        self.phase = SyncPhase.MERGING
        local_newer = local.updated_at > remote.updated_at
        remote_newer = remote.updated_at > local.updated_at
        result = merge_states(local, remote, local.device_id)
        for conflict in result.conflicts:
            logger.debug(
                "Conflict on %s %s resolved %s",
                conflict.type.value, conflict.item_id or "", conflict.resolution.value,
            )

        self.store.apply_remote_state(result.merged)

        if (
            result.has_changes
            or local_newer
            or not documents_equivalent(result.merged, remote)
        ):
            self._upload(provider, result.merged)

        self._sync_content(provider, result.merged)

        if result.has_changes:
            action = SyncAction.MERGED
        elif remote_newer:
            action = SyncAction.DOWNLOADED
        else:
            action = SyncAction.UPLOADED
        return SyncResult(success=True, action=action, conflicts=result.conflicts)

    def _sync_content(self, provider: SyncProvider, document: SyncStateDocument) -> None:
        """Sync content files after the state. Failures are logged, never raised."""
        if not self.config.sync_content:
            return
        self.phase = SyncPhase.SYNCING_CONTENT
        try:
            local_items = self.store.archive_items_for_content_sync()
            result = self.content.sync_content(
                provider, local_items, document.content_manifest
            )
            for item_id, cached in result.downloaded:
                self.store.update_cached_document(item_id, cached)

            manifest = self.content.prune_orphaned_content(
                provider, result.manifest, {item["id"] for item in local_items}
            )
            if result.changed or manifest.items != result.manifest.items:
                updated = document.model_copy(update={
                    "content_manifest": manifest,
                    "updated_at": max(document.updated_at + 1, now_ms()),
                })
                self._upload(provider, updated)
                self.store.apply_remote_state(updated)
        except FlowSyncError as exc:
            logger.error("Content sync failed: %s", exc)

    # ------------------------------------------------------------------
    # Status
    # ------------------------------------------------------------------

    def status(self) -> dict[str, Any]:
        """Get current sync status.

        Returns:
            Dict with persisted state, provider info and readiness.
        """
        provider = self._provider
        return {
            "state": self.state.model_dump(mode="json"),
            "enabled": self.config.enabled,
            "provider": (
                {
                    "type": provider.provider_type.value,
                    "name": provider.name,
                    "connected": provider.is_connected(),
                }
                if provider is not None
                else None
            ),
            "encryption_enabled": self.config.encryption_enabled,
            "has_passphrase": self.has_passphrase(),
            "ready": self.is_ready_to_sync(),
            "phase": self.phase.value if self.phase else None,
            "device_id": self.store.get_device_id(),
        }
