"""Trust layer — SQLite-backed certificate pin persistence.

Maps an endpoint's stable identity to the fingerprint an operator verified
during pairing.  Pins never expire; they are removed only by an explicit
unpair.

Schema::

    CREATE TABLE endpoint_pins (
        stable_id    TEXT PRIMARY KEY,
        fingerprint  TEXT NOT NULL,
        paired_at    REAL NOT NULL,
        verified_by  TEXT NOT NULL DEFAULT 'user'
    );

Usage::

    store = PinStore(Path("~/.dmms-ai/pins.db"))
    await store.init()
    await store.pin(PinRecord("_dmms._tcp|studio", "ab12..."))
    fp = await store.get_fingerprint("_dmms._tcp|studio")
    await store.unpin("_dmms._tcp|studio")
    await store.close()
"""

from __future__ import annotations

from pathlib import Path

import aiosqlite

from dmms_gateway.logging import get_logger
from dmms_gateway.trust.models import PinRecord

log = get_logger(__name__)

PIN_DB_FILENAME = "pins.db"

_SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS endpoint_pins (
    stable_id    TEXT PRIMARY KEY,
    fingerprint  TEXT NOT NULL,
    paired_at    REAL NOT NULL,
    verified_by  TEXT NOT NULL DEFAULT 'user'
);
"""


class PinStore:
    """Async SQLite store for pinned endpoint fingerprints."""

    def __init__(self, db_path: Path | str) -> None:
        self._db_path = Path(db_path).expanduser()
        self._conn: aiosqlite.Connection | None = None

    @property
    def path(self) -> Path:
        return self._db_path

    async def init(self) -> None:
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn = await aiosqlite.connect(str(self._db_path))
        await self._conn.executescript(_SCHEMA_SQL)
        await self._conn.commit()
        log.debug("pin_store_init", path=str(self._db_path))

    async def close(self) -> None:
        if self._conn:
            await self._conn.close()
            self._conn = None

    async def __aenter__(self) -> "PinStore":
        await self.init()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Write operations
    # ------------------------------------------------------------------

    async def pin(self, record: PinRecord) -> None:
        """Store a pin (insert or replace)."""
        assert self._conn is not None
        await self._conn.execute(
            """INSERT OR REPLACE INTO endpoint_pins
               (stable_id, fingerprint, paired_at, verified_by)
               VALUES (?, ?, ?, ?)""",
            (record.stable_id, record.fingerprint, record.paired_at, record.verified_by),
        )
        await self._conn.commit()
        log.info("endpoint_pinned", stable_id=record.stable_id, verified_by=record.verified_by)

    async def unpin(self, stable_id: str) -> bool:
        """Remove a pin. Returns True if a row was deleted."""
        assert self._conn is not None
        cursor = await self._conn.execute(
            "DELETE FROM endpoint_pins WHERE stable_id=?",
            (stable_id,),
        )
        await self._conn.commit()
        removed = cursor.rowcount > 0
        if removed:
            log.info("endpoint_unpinned", stable_id=stable_id)
        return removed

    # ------------------------------------------------------------------
    # Read operations
    # ------------------------------------------------------------------

    async def get(self, stable_id: str) -> PinRecord | None:
        assert self._conn is not None
        async with self._conn.execute(
            "SELECT stable_id, fingerprint, paired_at, verified_by "
            "FROM endpoint_pins WHERE stable_id=?",
            (stable_id,),
        ) as cursor:
            row = await cursor.fetchone()
        if row is None:
            return None
        return self._row_to_record(row)

    async def get_fingerprint(self, stable_id: str) -> str | None:
        """Return the pinned fingerprint, trimmed; blank counts as absent."""
        record = await self.get(stable_id)
        if record is None:
            return None
        return record.fingerprint.strip() or None

    async def list_all(self) -> list[PinRecord]:
        assert self._conn is not None
        records: list[PinRecord] = []
        async with self._conn.execute(
            "SELECT stable_id, fingerprint, paired_at, verified_by "
            "FROM endpoint_pins ORDER BY paired_at DESC",
        ) as cursor:
            async for row in cursor:
                records.append(self._row_to_record(row))
        return records

    @staticmethod
    def _row_to_record(row: tuple) -> PinRecord:  # type: ignore[type-arg]
        return PinRecord(
            stable_id=row[0],
            fingerprint=row[1],
            paired_at=row[2],
            verified_by=row[3],
        )
