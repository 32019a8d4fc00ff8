"""
FlowSync sync core -- encrypted reading-state synchronization.

The snapshot never travels naked. Every upload is encrypted with a key
derived from the user's passphrase; every download is decrypted,
checked against the supported schema, and merged field by field.

Providers: a plain folder (USB drive, NAS, or a desktop sync client).
The user picks the pipe. The engine secures the payload.
"""

from .engine import SyncEngine
from .providers import FolderProvider, SyncProvider
from .store import LocalStore

__all__ = ["SyncEngine", "SyncProvider", "FolderProvider", "LocalStore"]
