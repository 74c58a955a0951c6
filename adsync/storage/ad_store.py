"""AdSync — Persistent Store Adapter.

Idempotent upserts for accounts, campaigns and insight rows, plus the reads
the sync engine and HTTP layer need. Methods are blocking; async callers run
them with `asyncio.to_thread`.
"""

from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Iterator, List, Optional, Sequence

from sqlalchemy import func
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, SQLModel, select

from adsync.core.errors import StorageError
from adsync.core.logging import get_logger
from adsync.database import init_db
from adsync.models.ad_models import AdAccount, Campaign, DailyInsight

logger = get_logger("storage")

ACCOUNT_KEY = ("id",)
CAMPAIGN_KEY = ("id",)
INSIGHT_KEY = ("entity_type", "entity_id", "date_start", "date_stop", "breakdown_key")


def _insert_for(dialect: str):
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "mysql":
        from sqlalchemy.dialects.mysql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise StorageError(f"Upsert not supported for dialect {dialect}")
    return insert


class AdStore:
    """Relational storage for synced ad data."""

    def __init__(self, engine: Engine):
        self.engine = engine

    def init_schema(self) -> None:
        init_db(self.engine)

    @contextmanager
    def connection(self) -> Iterator[Connection]:
        """Raw pooled connection for ad-hoc queries (health probe only)."""
        try:
            with self.engine.connect() as conn:
                yield conn
        except SQLAlchemyError as e:
            raise StorageError(f"Connection failed: {e}") from e

    # ── Upserts ──

    def _upsert(
        self,
        model: type[SQLModel],
        record: Dict[str, Any],
        key: Sequence[str],
        update_keys: Optional[Sequence[str]] = None,
    ) -> None:
        """INSERT .. ON CONFLICT DO UPDATE.

        New rows get model defaults for omitted columns. On conflict every
        non-key column is overwritten, or only `update_keys` when given.
        """
        table = model.__table__
        insert = _insert_for(self.engine.dialect.name)
        now = datetime.now(timezone.utc)

        values = {
            k: v
            for k, v in model(**record).model_dump().items()
            if k in table.c and not (k == "id" and v is None)
        }
        values["updated_at"] = now
        if "last_sync_at" in table.c:
            values["last_sync_at"] = now

        columns = [k for k in (update_keys or values) if k not in key]
        for stamp in ("updated_at", "last_sync_at"):
            if stamp in values and stamp not in columns:
                columns.append(stamp)

        stmt = insert(table).values(**values)
        if self.engine.dialect.name == "mysql":
            stmt = stmt.on_duplicate_key_update(**{k: stmt.inserted[k] for k in columns})
        else:
            stmt = stmt.on_conflict_do_update(
                index_elements=list(key), set_={k: stmt.excluded[k] for k in columns}
            )

        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except SQLAlchemyError as e:
            entity = ":".join(str(values.get(k)) for k in key)
            raise StorageError(f"Upsert into {table.name} failed for {entity}: {e}") from e

    def upsert_ad_account(self, record: Dict[str, Any], partial: bool = False) -> None:
        """Insert or overwrite an account row.

        By default the row is fully overwritten (omitted optional fields become
        null). With `partial=True` only the keys present in `record` change.
        """
        update_keys = list(record) if partial else None
        self._upsert(AdAccount, record, ACCOUNT_KEY, update_keys)

    def upsert_campaign(self, record: Dict[str, Any]) -> None:
        """Insert or fully overwrite a campaign row.

        `last_sync_at` is always the local write time, never an upstream value.
        """
        self._upsert(Campaign, record, CAMPAIGN_KEY)

    def upsert_daily_insight(self, record: Dict[str, Any]) -> None:
        self._upsert(DailyInsight, record, INSIGHT_KEY)

    # ── Reads ──

    def _read(self, statement):
        try:
            with Session(self.engine) as session:
                return session.exec(statement).all()
        except SQLAlchemyError as e:
            raise StorageError(f"Query failed: {e}") from e

    def list_account_ids(self, active_only: bool = True) -> List[str]:
        statement = select(AdAccount.id).order_by(AdAccount.id)
        if active_only:
            statement = statement.where(AdAccount.account_status == 1)
        return list(self._read(statement))

    def get_account(self, account_id: str) -> Optional[AdAccount]:
        rows = self._read(select(AdAccount).where(AdAccount.id == account_id))
        return rows[0] if rows else None

    def list_accounts(self) -> List[AdAccount]:
        return list(self._read(select(AdAccount).order_by(AdAccount.name)))

    def get_campaign(self, campaign_id: str) -> Optional[Campaign]:
        rows = self._read(select(Campaign).where(Campaign.id == campaign_id))
        return rows[0] if rows else None

    def list_campaigns(self, account_id: str) -> List[Campaign]:
        statement = (
            select(Campaign).where(Campaign.account_id == account_id).order_by(Campaign.name)
        )
        return list(self._read(statement))

    def find_campaign_account_id(self, campaign_id: str) -> Optional[str]:
        rows = self._read(select(Campaign.account_id).where(Campaign.id == campaign_id))
        return rows[0] if rows else None

    def list_daily_insights(
        self,
        account_id: Optional[str] = None,
        entity_type: Optional[str] = None,
        entity_id: Optional[str] = None,
        date_start: Optional[str] = None,
        date_end: Optional[str] = None,
        limit: int = 1000,
    ) -> List[DailyInsight]:
        statement = select(DailyInsight)
        if account_id:
            statement = statement.where(DailyInsight.account_id == account_id)
        if entity_type:
            statement = statement.where(DailyInsight.entity_type == entity_type)
        if entity_id:
            statement = statement.where(DailyInsight.entity_id == entity_id)
        if date_start:
            statement = statement.where(DailyInsight.date_start >= date_start)
        if date_end:
            statement = statement.where(DailyInsight.date_start <= date_end)
        statement = statement.order_by(
            DailyInsight.date_start.desc(), DailyInsight.spend.desc()  # type: ignore
        ).limit(limit)
        return list(self._read(statement))

    def counts(self) -> Dict[str, int]:
        """Row counts per table, for health reporting."""
        try:
            with Session(self.engine) as session:
                return {
                    model.__tablename__: session.exec(
                        select(func.count()).select_from(model)
                    ).one()
                    for model in (AdAccount, Campaign, DailyInsight)
                }
        except SQLAlchemyError as e:
            raise StorageError(f"Count failed: {e}") from e
