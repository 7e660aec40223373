"""
Recently submitted anchors, for audit display only.
"""

import threading
from collections import deque
from typing import List, Optional

from edgecharge.storage.models import AnchorRecord
from edgecharge.storage.repository import insert_anchor_record


class AnchorAuditLog:
    """Bounded, newest-first list of anchor submissions.

    Optionally mirrors every record into the SQLite audit table.
    """

    def __init__(self, size: int = 100, db_path: Optional[str] = None):
        self._records = deque(maxlen=size)
        self._lock = threading.Lock()
        self.db_path = db_path

    def record(self, entry: AnchorRecord) -> None:
        with self._lock:
            self._records.append(entry)
        if self.db_path is not None:
            insert_anchor_record(entry, self.db_path)

    def recent(self, limit: Optional[int] = None) -> List[AnchorRecord]:
        with self._lock:
            items = list(reversed(self._records))
        return items if limit is None else items[:limit]
