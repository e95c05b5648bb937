from __future__ import annotations

import json
import logging
from collections.abc import Sequence
from datetime import datetime, timedelta
from functools import lru_cache
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from homefeed.core.config import get_settings
from homefeed.services.catalog import ListingCatalog
from homefeed.services.errors import ListingSourceUnavailableError, StoreUnavailableError
from homefeed.services.fairness import normalize_touch_batch
from homefeed.services.models import ZERO_SIGNAL, Candidate, FairnessSignal
from homefeed.services.sessions import FeedSession

logger = logging.getLogger(__name__)

FEED_SCHEMA_SQL = """
create table if not exists feed_listings (
  id text primary key,
  plan_code text,
  base_tier integer check (base_tier is null or base_tier >= 1),
  visible boolean not null default true,
  is_active boolean not null default true,
  plan_expires_at timestamptz,
  payload jsonb not null default '{}'::jsonb,
  updated_at timestamptz not null default now()
);

create table if not exists feed_listing_upgrades (
  listing_id text not null references feed_listings(id) on delete cascade,
  code text not null,
  start_at timestamptz not null,
  end_at timestamptz not null,
  check (end_at > start_at)
);

create index if not exists feed_listing_upgrades_window_idx
  on feed_listing_upgrades (listing_id, start_at, end_at);

create table if not exists feed_fairness_signals (
  candidate_id text primary key,
  last_shown_at timestamptz not null,
  shown_count bigint not null check (shown_count > 0)
);

create index if not exists feed_fairness_signals_last_shown_idx
  on feed_fairness_signals (last_shown_at);

create table if not exists feed_sessions (
  anchor text primary key,
  candidate_ids text[] not null,
  created_at timestamptz not null
);

create index if not exists feed_sessions_created_at_idx
  on feed_sessions (created_at);
"""

_CONNECTION_ERRORS = (OSError, pg_exc.PostgresError, pg_exc.InterfaceError)


class PostgresRepository:
    """Listing snapshot source and fairness signal store over one asyncpg pool."""

    def __init__(
        self,
        database_url: str | None,
        min_pool_size: int,
        max_pool_size: int,
        catalog: ListingCatalog | None = None,
        session_ttl: timedelta = timedelta(minutes=30),
    ) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self.catalog = catalog or ListingCatalog()
        self.session_ttl = session_ttl
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    async def apply_schema(self) -> None:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            await conn.execute(FEED_SCHEMA_SQL)

    async def list_visible_candidates(self, *, now: datetime) -> list[Candidate]:
        try:
            pool = await self._get_pool()
            rows = await pool.fetch(
                """
                select
                  l.id,
                  l.plan_code,
                  l.base_tier,
                  l.visible,
                  l.is_active,
                  l.plan_expires_at,
                  l.payload,
                  coalesce(
                    jsonb_agg(
                      jsonb_build_object('code', u.code, 'start_at', u.start_at, 'end_at', u.end_at)
                    ) filter (where u.code is not null),
                    '[]'::jsonb
                  ) as upgrades
                from feed_listings l
                left join feed_listing_upgrades u
                  on u.listing_id = l.id
                 and u.start_at <= $1::timestamptz
                 and u.end_at > $1
                where l.visible = true
                  and l.is_active = true
                  and (l.plan_expires_at is null or l.plan_expires_at > $1)
                group by l.id
                """,
                now,
            )
        except StoreUnavailableError as exc:
            raise ListingSourceUnavailableError(str(exc)) from exc
        except _CONNECTION_ERRORS as exc:
            raise ListingSourceUnavailableError("listing snapshot unavailable") from exc

        documents = [self._listing_row_to_document(row) for row in rows]
        return [candidate for candidate in self.catalog.build_candidates(documents, now=now) if candidate.visible]

    async def get(self, candidate_id: str) -> FairnessSignal:
        signals = await self.get_many([candidate_id])
        return signals[candidate_id]

    async def get_many(self, candidate_ids: Sequence[str]) -> dict[str, FairnessSignal]:
        ids = list(candidate_ids)
        if not ids:
            return {}
        pool = await self._get_pool()
        try:
            rows = await pool.fetch(
                """
                select candidate_id, last_shown_at, shown_count
                from feed_fairness_signals
                where candidate_id = any($1::text[])
                """,
                ids,
            )
        except _CONNECTION_ERRORS as exc:
            raise StoreUnavailableError("fairness signals unavailable") from exc

        signals = {candidate_id: ZERO_SIGNAL for candidate_id in ids}
        for row in rows:
            signals[row["candidate_id"]] = FairnessSignal(
                last_shown_at=row["last_shown_at"],
                shown_count=int(row["shown_count"]),
            )
        return signals

    async def touch(self, candidate_ids: Sequence[str], at: datetime) -> None:
        batch = normalize_touch_batch(candidate_ids)
        if not batch:
            return
        pool = await self._get_pool()
        try:
            # One statement: concurrent batches serialize per row and both increments land.
            await pool.execute(
                """
                insert into feed_fairness_signals (candidate_id, last_shown_at, shown_count)
                select t.candidate_id, $2::timestamptz, 1
                from unnest($1::text[]) as t(candidate_id)
                order by t.candidate_id
                on conflict (candidate_id) do update
                set
                  last_shown_at = greatest(feed_fairness_signals.last_shown_at, excluded.last_shown_at),
                  shown_count = feed_fairness_signals.shown_count + 1
                """,
                batch,
                at,
            )
        except _CONNECTION_ERRORS as exc:
            raise StoreUnavailableError("fairness signals unavailable") from exc

    async def reset(self) -> int:
        pool = await self._get_pool()
        try:
            affected = await pool.fetchval(
                """
                with cleared as (
                  delete from feed_fairness_signals
                  returning shown_count
                )
                select count(*) from cleared where shown_count > 0
                """
            )
        except _CONNECTION_ERRORS as exc:
            raise StoreUnavailableError("fairness signals unavailable") from exc
        logger.info("fairness signals reset affected=%s", affected)
        return int(affected or 0)

    async def save_session(self, session: FeedSession) -> None:
        pool = await self._get_pool()
        try:
            async with pool.acquire() as conn:
                async with conn.transaction():
                    await conn.execute(
                        "delete from feed_sessions where created_at <= $1::timestamptz",
                        session.created_at - self.session_ttl,
                    )
                    await conn.execute(
                        """
                        insert into feed_sessions (anchor, candidate_ids, created_at)
                        values ($1, $2::text[], $3::timestamptz)
                        on conflict (anchor) do nothing
                        """,
                        session.anchor,
                        list(session.candidate_ids),
                        session.created_at,
                    )
        except _CONNECTION_ERRORS as exc:
            raise StoreUnavailableError("feed sessions unavailable") from exc

    async def load_session(self, anchor: str, *, now: datetime) -> FeedSession | None:
        pool = await self._get_pool()
        try:
            row = await pool.fetchrow(
                """
                select anchor, candidate_ids, created_at
                from feed_sessions
                where anchor = $1 and created_at > $2::timestamptz
                """,
                anchor,
                now - self.session_ttl,
            )
        except _CONNECTION_ERRORS as exc:
            raise StoreUnavailableError("feed sessions unavailable") from exc
        if row is None:
            return None
        return FeedSession(
            anchor=row["anchor"],
            candidate_ids=tuple(row["candidate_ids"] or ()),
            created_at=row["created_at"],
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise StoreUnavailableError("HF_DATABASE_URL is required")

        if self._pool is not None:
            return self._pool

        try:
            self._pool = await asyncpg.create_pool(
                dsn=self.database_url,
                min_size=self.min_pool_size,
                max_size=self.max_pool_size,
                command_timeout=15,
            )
            return self._pool
        except Exception as exc:  # pragma: no cover - depends on environment
            raise StoreUnavailableError("database unavailable") from exc

    @staticmethod
    def _listing_row_to_document(row: asyncpg.Record) -> dict[str, Any]:
        payload = _coerce_json(row["payload"], default={})
        upgrades = _coerce_json(row["upgrades"], default=[])
        return {
            **(payload if isinstance(payload, dict) else {}),
            "id": row["id"],
            "plan_code": row["plan_code"],
            "base_tier": row["base_tier"],
            "visible": row["visible"],
            "is_active": row["is_active"],
            "plan_expires_at": row["plan_expires_at"],
            "upgrades": upgrades if isinstance(upgrades, list) else [],
        }


def _coerce_json(value: Any, *, default: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return default
    if value is None:
        return default
    return value


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
        catalog=ListingCatalog(tier_count=settings.feed_tier_count),
        session_ttl=timedelta(seconds=settings.feed_session_ttl_seconds),
    )
