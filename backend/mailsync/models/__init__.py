from mailsync.models.folder import Folder
from mailsync.models.message import Message, MessageBody
from mailsync.models.sync_manifest import SyncManifest
from mailsync.models.meta import MetaRecord
from mailsync.models.outbox import OutboxItem

__all__ = [
    "Folder",
    "Message",
    "MessageBody",
    "SyncManifest",
    "MetaRecord",
    "OutboxItem",
]
