"""
Conflict resolution for whole-record last-writer-wins.

Given the local and remote version of the same sync_id, pick one version
in full. Fields are never merged.

  * later ``updated_at`` wins outright
  * on an exact tie, a tombstone beats a live record
  * on a tie with the same deletion state, identical content is a no-op and
    differing content takes the remote copy, which every device reads from
"""

import enum

from protee.sync.records import SyncRecord


class Resolution(str, enum.Enum):
    LOCAL = "local"
    REMOTE = "remote"
    NOOP = "noop"


def resolve(local: SyncRecord, remote: SyncRecord) -> Resolution:
    if local.sync_id != remote.sync_id:
        raise ValueError(
            f"Cannot resolve different records: {local.sync_id} vs {remote.sync_id}"
        )

    if local.updated_at > remote.updated_at:
        return Resolution.LOCAL
    if remote.updated_at > local.updated_at:
        return Resolution.REMOTE

    if local.is_deleted != remote.is_deleted:
        return Resolution.LOCAL if local.is_deleted else Resolution.REMOTE

    if local.same_content(remote):
        return Resolution.NOOP
    return Resolution.REMOTE
