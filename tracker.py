"""Utility for append-only run ledger updates.
Records one entry per planning run and writes atomically.
"""
import json
import logging
import os
import tempfile
from datetime import datetime, timezone
from typing import Any, Dict

from config import TRACKER_PATH

logger = logging.getLogger(__name__)


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def atomic_write(path: str, data: str) -> None:
    """Write via a temp file in the same directory, then os.replace."""
    dirp = os.path.dirname(path) or '.'
    os.makedirs(dirp, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix='.tmp_', dir=dirp)
    try:
        with os.fdopen(fd, 'w', encoding='utf-8') as f:
            f.write(data)
        os.replace(tmp, path)
    finally:
        if os.path.exists(tmp):
            try:
                os.remove(tmp)
            except OSError:
                pass


def append_run(entry: Dict[str, Any], tracker_path: str = TRACKER_PATH) -> bool:
    """Append a run entry to tracker_path in an append-only manner.

    Returns True on success, False on failure.
    """
    try:
        if not os.path.exists(tracker_path):
            base = {'last_updated': now_iso(), 'runs': []}
        else:
            with open(tracker_path, 'r', encoding='utf-8') as f:
                base = json.load(f)

        runs = base.get('runs') or []
        entry_with_ts = dict(entry)
        if 'timestamp' not in entry_with_ts:
            entry_with_ts['timestamp'] = now_iso()
        runs.append(entry_with_ts)
        base['runs'] = runs
        base['last_updated'] = now_iso()

        atomic_write(tracker_path, json.dumps(base, indent=2))
        return True
    except Exception as e:
        logger.warning(f"Failed to append run to {tracker_path}: {e}")
        return False
