"""Revenue ledger sinks for finalized billing records.

The :class:`~meter_service.services.revenue_reconciler.RevenueReconciler`
appends one :class:`BillingRecord` per terminated session to a
:class:`LedgerSink`.

Two sinks are provided:

* :class:`DatabaseLedger` -- writes to the ``ledger_entries`` table inside
  the reconciler's transaction, so the record commits or rolls back together
  with the ``exported`` flag and the tenant totals.
* :class:`FileLedger` -- appends records as JSON lines to a local file
  (useful for local mode).  Session ids already present in the file are
  skipped, so a replayed reconciliation does not double-bill.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Protocol

from meter_engine.models.billing import BillingRecord
from meter_engine.state.repository import LedgerRepository
from sqlalchemy.ext.asyncio import AsyncSession

from meter_service.config import LedgerBackend, ServiceSettings

logger = logging.getLogger(__name__)


class LedgerSink(Protocol):
    """Protocol for revenue ledger persistence."""

    async def append(self, session: AsyncSession, record: BillingRecord) -> bool:
        """Persist *record*; return ``False`` if the session was already billed."""
        ...


class DatabaseLedger:
    """Appends billing records to the ``ledger_entries`` table."""

    async def append(self, session: AsyncSession, record: BillingRecord) -> bool:
        inserted = await LedgerRepository(session).append(record)
        if not inserted:
            logger.warning("Ledger already holds a record for session %s; skipped", record.session_id)
        return inserted


class FileLedger:
    """Appends billing records as JSON lines to a local file.

    Parameters
    ----------
    path:
        Path to the JSON lines file.  Parent directories are created.
    """

    def __init__(self, path: Path | str) -> None:
        self._path = Path(path)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.Lock()
        self._seen: set[str] | None = None

    @property
    def path(self) -> Path:
        return self._path

    def _load_seen(self) -> set[str]:
        seen: set[str] = set()
        if not self._path.exists():
            return seen
        with self._path.open("r", encoding="utf-8") as fh:
            for line in fh:
                line = line.strip()
                if not line:
                    continue
                try:
                    seen.add(json.loads(line)["session_id"])
                except (ValueError, KeyError):
                    logger.warning("Skipping malformed ledger line in %s", self._path)
        return seen

    async def append(self, session: AsyncSession, record: BillingRecord) -> bool:
        with self._lock:
            if self._seen is None:
                self._seen = self._load_seen()
            if record.session_id in self._seen:
                logger.warning("Ledger file already holds session %s; skipped", record.session_id)
                return False
            with self._path.open("a", encoding="utf-8") as fh:
                fh.write(record.model_dump_json() + "\n")
            self._seen.add(record.session_id)
        logger.debug("Appended billing record %s to %s", record.record_id, self._path)
        return True

    def read_all(self) -> list[BillingRecord]:
        """Load every record in the file, in append order."""
        if not self._path.exists():
            return []
        with self._path.open("r", encoding="utf-8") as fh:
            return [BillingRecord.model_validate_json(line) for line in fh if line.strip()]


def build_ledger(settings: ServiceSettings) -> LedgerSink:
    """Return the sink selected by ``settings.ledger_backend``."""
    if settings.ledger_backend is LedgerBackend.FILE:
        return FileLedger(settings.ledger_file_path)
    return DatabaseLedger()
