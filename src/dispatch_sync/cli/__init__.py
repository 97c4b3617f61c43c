"""dispatch-sync CLI.

Usage:
    dispatch-sync sync                  Upload local changes, download remote ones
    dispatch-sync full-sync             Full re-download with orphan cleanup
    dispatch-sync status                Record counts per sync state
    dispatch-sync reset-failed          Retry records that exhausted their retries
    dispatch-sync history task <id>     Change history of an entity
    dispatch-sync config show           Effective configuration
"""

from dispatch_sync.cli.main import app, main

__all__ = ["app", "main"]
