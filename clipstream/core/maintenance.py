import os
import time
from typing import Optional

from clipstream.config import ASSEMBLY_PREFIX, UPLOAD_TMP_PREFIX
from clipstream.core.uploads import ChunkStore, SessionLocks


def is_safe_to_delete(path: str, expected_parent: str, prefix: str, ext: str) -> bool:
    """Strict check to ensure the file is where we expect and named correctly."""
    abs_path = os.path.abspath(path)
    abs_parent = os.path.abspath(expected_parent)

    # Check if file is directly inside the expected directory
    if os.path.dirname(abs_path) != abs_parent:
        return False

    filename = os.path.basename(path)
    # Check naming pattern
    if not (filename.startswith(prefix) and filename.lower().endswith(ext)):
        return False

    return True


def prune_abandoned_sessions(store: ChunkStore, locks: SessionLocks, max_age_seconds: float,
                             now: Optional[float] = None) -> int:
    """
    Deletes upload sessions with no chunk activity for max_age_seconds.
    Takes the session lock so a finalize in flight is never pulled out from under.
    """
    now = time.time() if now is None else now
    removed_count = 0

    for name in store.list_sessions():
        with locks.hold(name):
            try:
                idle = now - store.last_activity(name)
            except FileNotFoundError:
                # Finalized while we were waiting for the lock
                continue
            if idle < max_age_seconds:
                continue
            try:
                store.remove_session(name)
                removed_count += 1
                print(f"🧹 Removed abandoned upload session {name} (idle {int(idle // 3600)}h)")
            except OSError as e:
                print(f"  [Error] Failed to remove session {name}: {e}")

    if removed_count > 0:
        print(f"🧹 Cleaned up {removed_count} abandoned upload session(s)")
    return removed_count


def purge_stale_temp_files(data_dir: str, max_age_seconds: float, now: Optional[float] = None) -> int:
    """Removes assembly/upload temp files left behind by a crash mid-publish."""
    now = time.time() if now is None else now
    removed_count = 0
    if not os.path.isdir(data_dir):
        return 0

    for filename in os.listdir(data_dir):
        file_path = os.path.join(data_dir, filename)
        if not any(is_safe_to_delete(file_path, data_dir, prefix, ".tmp")
                   for prefix in (ASSEMBLY_PREFIX, UPLOAD_TMP_PREFIX)):
            continue
        try:
            if now - os.path.getmtime(file_path) < max_age_seconds:
                continue
            os.remove(file_path)
            removed_count += 1
        except FileNotFoundError:
            continue
        except OSError as e:
            print(f"  [Error] Failed to delete {file_path}: {e}")

    if removed_count > 0:
        print(f"🧹 Cleaned up {removed_count} stale temp file(s)")
    return removed_count


def run_sweep(store: ChunkStore, locks: SessionLocks, data_dir: str, max_age_seconds: float) -> int:
    return (prune_abandoned_sessions(store, locks, max_age_seconds)
            + purge_stale_temp_files(data_dir, max_age_seconds))
