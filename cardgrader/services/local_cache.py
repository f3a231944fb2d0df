"""
Local crash-recovery cache.

A single JSON snapshot of the whole collection, overwritten on every
mutation and read once at startup. It is a recovery aid only: the running
processor's in-memory collection is the source of truth.
"""

import json
import logging
import os
import tempfile
from collections.abc import Iterable
from pathlib import Path

from cardgrader.models.card import CardRecord, dump_records, load_records
from cardgrader.services.transitions import Records, recover_after_crash

logger = logging.getLogger(__name__)


class LocalSnapshotCache:
    def __init__(self, path: Path | str):
        self.path = Path(path)

    def write(self, records: Iterable[CardRecord]) -> None:
        """
        Atomically replace the snapshot.

        Raises:
            OSError: If the snapshot cannot be written
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = json.dumps(dump_records(records))

        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, prefix=f".{self.path.name}.")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(payload)
            os.replace(tmp_name, self.path)
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def read(self) -> list[CardRecord]:
        """Stored records; empty when the snapshot is missing or unreadable."""
        if not self.path.exists():
            return []
        try:
            documents = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.error(
                "LOCAL_SNAPSHOT_UNREADABLE", extra={"path": str(self.path), "error": str(e)}
            )
            return []
        if not isinstance(documents, list):
            logger.error("LOCAL_SNAPSHOT_INVALID", extra={"path": str(self.path)})
            return []
        return load_records(documents)

    def recover(self) -> Records:
        """Stored records with interrupted work marked failed."""
        records = recover_after_crash(self.read())
        if records:
            logger.info("LOCAL_SNAPSHOT_RECOVERED", extra={"cards": len(records)})
        return records
