# src/cadence/core/store/recipients.py
"""Recipient store backed by the database of record.

Recipients are addressed through recipient *sets*: ordered, immutable id
lists. An execution's full audience is one set; each condition branch
produces two more. Sets are read with offset/limit so a large audience is
never loaded into memory at once.
"""

from __future__ import annotations

import json
import uuid
from collections.abc import Iterable, Iterator
from datetime import UTC, datetime

from sqlalchemy import Connection, func, select

from cadence.contracts.enums import Channel
from cadence.core.store.database import CadenceDB
from cadence.core.store.models import Recipient
from cadence.core.store.repositories import load_recipient
from cadence.core.store.schema import recipient_set_members_table, recipients_table

_INSERT_BATCH = 1000


class RecipientStore:
    """Reads recipients and recipient sets.

    Example:
        store = RecipientStore(db)
        store.upsert([Recipient("r1", email="a@example.com")])
        set_id, count = store.create_set(["r1"])
        store.list_ids(set_id, offset=0, limit=1000)  # ["r1"]
    """

    def __init__(self, db: CadenceDB) -> None:
        self._db = db

    # === Recipients ===

    def upsert(self, recipients: Iterable[Recipient]) -> int:
        """Insert or update recipients by id. Returns the number written.

        An update never clears an existing unsubscribe.
        """
        written = 0
        now = datetime.now(UTC)
        with self._db.connection() as conn:
            for recipient in recipients:
                values = {
                    "email": recipient.email,
                    "phone": recipient.phone,
                    "name": recipient.name,
                    "attributes_json": json.dumps(recipient.attributes)
                    if recipient.attributes
                    else None,
                }
                result = conn.execute(
                    recipients_table.update()
                    .where(recipients_table.c.recipient_id == recipient.recipient_id)
                    .values(**values)
                )
                if result.rowcount == 0:
                    conn.execute(
                        recipients_table.insert().values(
                            recipient_id=recipient.recipient_id,
                            email_unsubscribed=recipient.email_unsubscribed,
                            sms_unsubscribed=recipient.sms_unsubscribed,
                            created_at=now,
                            **values,
                        )
                    )
                written += 1
        return written

    def unsubscribe(self, recipient_id: str, channel: Channel) -> bool:
        """Opt a recipient out of one channel. False if the recipient is unknown."""
        column = f"{channel.value}_unsubscribed"
        with self._db.connection() as conn:
            result = conn.execute(
                recipients_table.update()
                .where(recipients_table.c.recipient_id == recipient_id)
                .values({column: True})
            )
        return bool(result.rowcount)

    def get(self, recipient_id: str) -> Recipient | None:
        with self._db.engine.connect() as conn:
            row = conn.execute(
                select(recipients_table).where(
                    recipients_table.c.recipient_id == recipient_id
                )
            ).fetchone()
        return load_recipient(row) if row is not None else None

    def get_many(self, recipient_ids: list[str]) -> dict[str, Recipient]:
        """Load several recipients at once, keyed by id. Missing ids are omitted."""
        found: dict[str, Recipient] = {}
        with self._db.engine.connect() as conn:
            for start in range(0, len(recipient_ids), _INSERT_BATCH):
                batch = recipient_ids[start : start + _INSERT_BATCH]
                rows = conn.execute(
                    select(recipients_table).where(
                        recipients_table.c.recipient_id.in_(batch)
                    )
                ).fetchall()
                for row in rows:
                    found[row.recipient_id] = load_recipient(row)
        return found

    def missing_ids(self, recipient_ids: list[str]) -> list[str]:
        """Ids from the list that have no recipient row."""
        known: set[str] = set()
        with self._db.engine.connect() as conn:
            for start in range(0, len(recipient_ids), _INSERT_BATCH):
                batch = recipient_ids[start : start + _INSERT_BATCH]
                known.update(
                    conn.execute(
                        select(recipients_table.c.recipient_id).where(
                            recipients_table.c.recipient_id.in_(batch)
                        )
                    ).scalars()
                )
        return [rid for rid in recipient_ids if rid not in known]

    # === Recipient Sets ===

    def create_set(
        self,
        recipient_ids: Iterable[str],
        *,
        conn: Connection | None = None,
    ) -> tuple[str, int]:
        """Store a new recipient set. Duplicate ids keep their first position.

        Returns:
            (set_id, member count)
        """
        set_id = uuid.uuid4().hex
        count = self.append_to_set(set_id, recipient_ids, start=0, conn=conn)
        return set_id, count

    def append_to_set(
        self,
        set_id: str,
        recipient_ids: Iterable[str],
        *,
        start: int,
        conn: Connection | None = None,
    ) -> int:
        """Append ids to a set starting at ``start``. Returns how many were added."""
        position = start
        batch: list[dict[str, object]] = []
        seen: set[str] = set()
        with self._db.connection(conn) as c:
            for recipient_id in recipient_ids:
                if recipient_id in seen:
                    continue
                seen.add(recipient_id)
                batch.append(
                    {"set_id": set_id, "position": position, "recipient_id": recipient_id}
                )
                position += 1
                if len(batch) >= _INSERT_BATCH:
                    c.execute(recipient_set_members_table.insert(), batch)
                    batch = []
            if batch:
                c.execute(recipient_set_members_table.insert(), batch)
        return position - start

    def count(self, set_id: str) -> int:
        with self._db.engine.connect() as conn:
            return int(
                conn.execute(
                    select(func.count())
                    .select_from(recipient_set_members_table)
                    .where(recipient_set_members_table.c.set_id == set_id)
                ).scalar_one()
            )

    def list_ids(self, set_id: str, offset: int, limit: int) -> list[str]:
        """One page of a recipient set, in insertion order."""
        with self._db.engine.connect() as conn:
            return list(
                conn.execute(
                    select(recipient_set_members_table.c.recipient_id)
                    .where(recipient_set_members_table.c.set_id == set_id)
                    .order_by(recipient_set_members_table.c.position)
                    .offset(offset)
                    .limit(limit)
                ).scalars()
            )

    def iter_pages(self, set_id: str, page_size: int) -> Iterator[list[str]]:
        """Walk a recipient set page by page."""
        offset = 0
        while True:
            page = self.list_ids(set_id, offset, page_size)
            if not page:
                return
            yield page
            offset += len(page)
