"""
Mail sync workers module.

Background synchronization of Gmail and Outlook mailboxes into the
local MongoDB cache.
"""

from backend.workers.sync_worker import MailSyncWorker, build_sync_worker

__all__ = ["MailSyncWorker", "build_sync_worker"]
