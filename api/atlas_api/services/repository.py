from __future__ import annotations

import json
import uuid
from datetime import datetime
from functools import lru_cache
from itertools import combinations
from typing import Any

import asyncpg  # type: ignore[import-untyped]
from asyncpg import exceptions as pg_exc

from atlas_api.core.config import get_settings
from atlas_api.core.domains import normalize_domain
from atlas_api.services.claims import ClaimAlreadyVerifiedError, ClaimExpiredError, ensure_claim_verifiable
from atlas_api.services.dedupe import InstitutionSnapshot, ordered_pair
from atlas_api.services.normalize import NormalizedFact


class RepositoryError(Exception):
    """Base repository error."""


class RepositoryUnavailableError(RepositoryError):
    """Raised when the database is unavailable or not configured."""


class RepositoryNotFoundError(RepositoryError):
    """Raised when the requested entity does not exist."""


class RepositoryConflictError(RepositoryError):
    """Raised when an operation violates state transition rules."""


class RepositoryForbiddenError(RepositoryError):
    """Raised when an operation is not permitted for the actor."""


class RepositoryValidationError(RepositoryError):
    """Raised when payload validation fails before persistence."""


CRAWL_STATUSES = {"pending", "processing", "completed", "failed"}
MODERATION_DECISIONS = {"APPROVED", "REJECTED"}

_SEED_COLUMNS = """
  id::text as id,
  name,
  city,
  state,
  country,
  street_address,
  postal_code,
  phone,
  website,
  lat,
  lng,
  google_place_id,
  resolution_method,
  confidence,
  evidence_json,
  promoted_institution_id::text as promoted_institution_id,
  first_seen_at,
  last_seen_at,
  created_at
"""

_QUEUE_COLUMNS = """
  id::text as id,
  institution_id::text as institution_id,
  domain,
  status::text as status,
  attempts,
  scheduled_at,
  last_error,
  claimed_at,
  completed_at,
  created_at
"""

_FACT_COLUMNS = """
  institution_id::text as institution_id,
  fact_key,
  fact_value,
  as_of,
  provenance::text as provenance,
  moderation_status::text as moderation_status,
  verified_by,
  verified_at,
  created_at
"""

_CLAIM_COLUMNS = """
  id::text as id,
  institution_id::text as institution_id,
  email,
  status::text as status,
  created_at,
  updated_at
"""


class PostgresRepository:
    def __init__(self, database_url: str | None, min_pool_size: int, max_pool_size: int) -> None:
        self.database_url = database_url
        self.min_pool_size = min_pool_size
        self.max_pool_size = max_pool_size
        self._pool: asyncpg.Pool | None = None

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None

    # Seeds

    async def count_seeds_created_since(self, since: datetime) -> int:
        pool = await self._get_pool()
        count = await pool.fetchval("select count(*) from seed_candidates where created_at >= $1", since)
        return int(count or 0)

    async def insert_seeds(self, seeds: list[dict[str, Any]]) -> int:
        """Insert seed identities; seeds whose place id is already known are skipped."""
        pool = await self._get_pool()
        inserted = 0
        async with pool.acquire() as conn:
            async with conn.transaction():
                for seed in seeds:
                    seed_id = await conn.fetchval(
                        """
                        insert into seed_candidates (
                          name,
                          city,
                          state,
                          country,
                          street_address,
                          postal_code,
                          phone,
                          website,
                          lat,
                          lng,
                          google_place_id
                        )
                        values ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11)
                        on conflict (google_place_id) where google_place_id is not null do nothing
                        returning id
                        """,
                        seed["name"],
                        seed.get("city"),
                        seed.get("state"),
                        seed.get("country"),
                        seed.get("street_address"),
                        seed.get("postal_code"),
                        seed.get("phone"),
                        seed.get("website"),
                        seed.get("lat"),
                        seed.get("lng"),
                        seed.get("google_place_id"),
                    )
                    if seed_id is not None:
                        inserted += 1
        return inserted

    async def list_seeds(self, *, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_SEED_COLUMNS}
            from seed_candidates
            order by created_at desc, id desc
            limit $1 offset $2
            """,
            limit,
            offset,
        )
        return [self._seed_row_to_dict(row) for row in rows]

    async def list_seeds_for_resolution(self, *, limit: int, threshold: float) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_SEED_COLUMNS}
            from seed_candidates
            where promoted_institution_id is null
              and (website is null or confidence is null or confidence < $2)
            order by last_seen_at asc nulls first, created_at asc
            limit $1
            """,
            limit,
            threshold,
        )
        return [self._seed_row_to_dict(row) for row in rows]

    async def update_seed_resolution(
        self,
        seed_id: str,
        *,
        website: str | None,
        confidence: float,
        evidence: dict[str, Any],
        resolution_method: str,
    ) -> dict[str, Any]:
        """Write a resolution result back to a seed.

        Website, confidence, evidence and method change only when ``confidence``
        initializes or exceeds the stored value. ``last_seen_at`` always advances.
        """
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update seed_candidates
            set
              website = case
                when confidence is null or $3::float8 > confidence then coalesce($2::text, website)
                else website
              end,
              confidence = case
                when confidence is null or $3::float8 > confidence then $3::float8
                else confidence
              end,
              evidence_json = case
                when confidence is null or $3::float8 > confidence then $4::jsonb
                else evidence_json
              end,
              resolution_method = case
                when confidence is null or $3::float8 > confidence then $5
                else resolution_method
              end,
              last_seen_at = now(),
              updated_at = now()
            where id = $1::uuid
            returning {_SEED_COLUMNS}
            """,
            _require_uuid(seed_id, "seed"),
            website,
            confidence,
            json.dumps(evidence),
            resolution_method,
        )
        if not row:
            raise RepositoryNotFoundError("seed not found")
        return self._seed_row_to_dict(row)

    async def touch_seed(self, seed_id: str) -> None:
        pool = await self._get_pool()
        await pool.execute(
            "update seed_candidates set last_seen_at = now(), updated_at = now() where id = $1::uuid",
            _require_uuid(seed_id, "seed"),
        )

    async def list_promotable_seeds(self, *, limit: int, threshold: float) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_SEED_COLUMNS}
            from seed_candidates
            where promoted_institution_id is null
              and website is not null
              and confidence >= $2
            order by confidence desc, created_at asc
            limit $1
            """,
            limit,
            threshold,
        )
        return [self._seed_row_to_dict(row) for row in rows]

    async def promote_seed(self, seed_id: str, *, actor_id: str | None = None) -> dict[str, Any]:
        """Attach a resolved seed to an institution, creating one when its domain is new."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                seed = await conn.fetchrow(
                    f"select {_SEED_COLUMNS} from seed_candidates where id = $1::uuid for update",
                    _require_uuid(seed_id, "seed"),
                )
                if not seed:
                    raise RepositoryNotFoundError("seed not found")
                if seed["promoted_institution_id"]:
                    return {
                        "seed_id": seed["id"],
                        "institution_id": seed["promoted_institution_id"],
                        "created": False,
                        "queue_id": None,
                    }

                domain = normalize_domain(seed["website"])
                if not domain:
                    raise RepositoryValidationError("seed website is not a valid domain")

                institution_id = await conn.fetchval(
                    """
                    select id::text
                    from institutions
                    where domain = $1 and merged_into_id is null
                    for update
                    """,
                    domain,
                )
                created = False
                if institution_id is None:
                    institution_id = await self._insert_institution(
                        conn,
                        {
                            "canonical_name": seed["name"],
                            "addr_std": seed["street_address"],
                            "city": seed["city"],
                            "state": seed["state"],
                            "phone": seed["phone"],
                            "domain": domain,
                            "lat": seed["lat"],
                            "lng": seed["lng"],
                            "google_place_id": seed["google_place_id"],
                        },
                    )
                    created = True

                await self._insert_source(
                    conn,
                    institution_id=institution_id,
                    source_type="SEED",
                    source_ref=seed["id"],
                    observed_name=seed["name"],
                    observed_domain=domain,
                    observed_phone=seed["phone"],
                    observed_addr=seed["street_address"],
                )
                await conn.execute(
                    """
                    update seed_candidates
                    set promoted_institution_id = $2::uuid, updated_at = now()
                    where id = $1::uuid
                    """,
                    seed["id"],
                    institution_id,
                )

                queue_id = None
                if created:
                    entry, _ = await self._enqueue_crawl_conn(conn, institution_id, domain)
                    queue_id = entry["id"]

                await self._record_event(
                    conn,
                    entity_type="seed",
                    entity_id=seed["id"],
                    event_type="promoted",
                    actor_id=actor_id,
                    payload={"institution_id": institution_id, "created": created, "domain": domain},
                )
                return {"seed_id": seed["id"], "institution_id": institution_id, "created": created, "queue_id": queue_id}

    # Institutions

    async def get_institution(self, institution_id: str) -> dict[str, Any]:
        """Return the live institution, following a tombstone to its merge target."""
        pool = await self._get_pool()
        row = await pool.fetchrow(
            """
            select
              i.id::text as id,
              i.canonical_name,
              i.addr_std,
              i.city,
              i.state,
              i.phone,
              i.domain,
              i.lat,
              i.lng,
              i.google_place_id,
              i.created_at,
              i.updated_at
            from institutions requested
            join institutions i on i.id = coalesce(requested.merged_into_id, requested.id)
            where requested.id = $1::uuid
            """,
            _require_uuid(institution_id, "institution"),
        )
        if not row:
            raise RepositoryNotFoundError("institution not found")
        return dict(row)

    async def import_place(
        self,
        *,
        institution: dict[str, Any],
        facts: list[NormalizedFact],
        moderation_status: str,
        actor_id: str | None = None,
    ) -> dict[str, Any]:
        pool = await self._get_pool()
        place_id = institution.get("google_place_id")
        domain = institution.get("domain")
        async with pool.acquire() as conn:
            async with conn.transaction():
                institution_id = await conn.fetchval(
                    """
                    select id::text
                    from institutions
                    where merged_into_id is null
                      and (
                        ($1::text is not null and google_place_id = $1)
                        or ($2::text is not null and domain = $2)
                      )
                    order by created_at asc
                    limit 1
                    for update
                    """,
                    place_id,
                    domain,
                )
                is_new = institution_id is None
                if is_new:
                    institution_id = await self._insert_institution(conn, institution)
                    await self._insert_facts(
                        conn,
                        institution_id=institution_id,
                        facts=facts,
                        as_of=None,
                        provenance="GOOGLE",
                        moderation_status=moderation_status,
                    )

                await self._insert_source(
                    conn,
                    institution_id=institution_id,
                    source_type="PLACES",
                    source_ref=place_id,
                    observed_name=institution.get("canonical_name"),
                    observed_domain=domain,
                    observed_phone=institution.get("phone"),
                    observed_addr=institution.get("addr_std"),
                )

                crawl_domain = await conn.fetchval("select domain from institutions where id = $1::uuid", institution_id)
                queue_id = None
                if crawl_domain:
                    entry, _ = await self._enqueue_crawl_conn(conn, institution_id, crawl_domain)
                    queue_id = entry["id"]

                await self._record_event(
                    conn,
                    entity_type="institution",
                    entity_id=institution_id,
                    event_type="place_imported",
                    actor_id=actor_id,
                    payload={"google_place_id": place_id, "is_new": is_new, "facts": len(facts) if is_new else 0},
                )
                return {"institution_id": institution_id, "is_new": is_new, "queue_id": queue_id}

    async def list_dedupe_snapshots(self) -> list[InstitutionSnapshot]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              i.id::text as id,
              i.canonical_name,
              i.domain,
              i.phone,
              i.city,
              i.state,
              i.lat,
              i.lng,
              i.created_at,
              (
                select count(*)
                from facts f
                where f.institution_id = i.id
                  and f.moderation_status = 'APPROVED'
              ) as approved_fact_count
            from institutions i
            where i.merged_into_id is null
            order by i.created_at asc, i.id asc
            """
        )
        return [
            InstitutionSnapshot(
                institution_id=row["id"],
                canonical_name=row["canonical_name"],
                domain=row["domain"],
                phone=row["phone"],
                city=row["city"],
                state=row["state"],
                lat=row["lat"],
                lng=row["lng"],
                approved_fact_count=int(row["approved_fact_count"] or 0),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    async def list_reviewed_pairs(self) -> set[tuple[str, str]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            "select institution_low_id::text as low_id, institution_high_id::text as high_id from dedupe_reviews"
        )
        return {(row["low_id"], row["high_id"]) for row in rows}

    async def merge_institutions(
        self,
        *,
        winner_id: str,
        loser_id: str,
        evidence: dict[str, Any],
        actor_id: str | None = None,
    ) -> bool:
        """Fold ``loser_id`` into ``winner_id``; False when either is already a tombstone."""
        merged = await self.merge_cluster(
            winner_id=winner_id,
            loser_ids=[loser_id],
            evidence=evidence,
            actor_id=actor_id,
        )
        return merged == 1

    async def merge_cluster(
        self,
        *,
        winner_id: str,
        loser_ids: list[str],
        evidence: dict[str, Any],
        actor_id: str | None = None,
    ) -> int:
        """Fold every loser into ``winner_id`` in one transaction and return how many were folded.

        A failure on any loser rolls back the whole cluster. Losers that are already
        tombstones are skipped; a tombstoned winner folds nothing. Loser fact versions
        whose natural key already exists on the winner stay on the tombstone.
        """
        if winner_id in loser_ids:
            raise RepositoryConflictError("cannot merge an institution into itself")
        if not loser_ids:
            return 0

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                try:
                    rows = await conn.fetch(
                        """
                        select
                          id::text as id,
                          merged_into_id::text as merged_into_id,
                          domain,
                          phone
                        from institutions
                        where id = any($1::uuid[])
                        order by id
                        for update
                        """,
                        [winner_id, *loser_ids],
                    )
                except (pg_exc.InvalidTextRepresentationError, asyncpg.DataError) as exc:
                    raise RepositoryNotFoundError("institution not found") from exc

                by_id = {row["id"]: row for row in rows}
                winner = by_id.get(winner_id)
                if winner is None or any(loser_id not in by_id for loser_id in loser_ids):
                    raise RepositoryNotFoundError("institution not found")
                if winner["merged_into_id"]:
                    return 0

                merged = 0
                for loser_id in loser_ids:
                    loser = by_id[loser_id]
                    if loser["merged_into_id"]:
                        continue
                    await self._fold_institution(
                        conn,
                        winner_id=winner_id,
                        loser=loser,
                        evidence=evidence,
                        actor_id=actor_id,
                    )
                    merged += 1
                return merged

    async def _fold_institution(
        self,
        conn: asyncpg.Connection,
        *,
        winner_id: str,
        loser: asyncpg.Record,
        evidence: dict[str, Any],
        actor_id: str | None,
    ) -> None:
        loser_id = loser["id"]
        moved_facts = await conn.execute(
            """
            update facts f
            set institution_id = $1::uuid
            where f.institution_id = $2::uuid
              and not exists (
                select 1
                from facts w
                where w.institution_id = $1::uuid
                  and w.fact_key = f.fact_key
                  and w.as_of = f.as_of
              )
            """,
            winner_id,
            loser_id,
        )
        moved_snapshots = await conn.execute(
            "update snapshots set institution_id = $1::uuid where institution_id = $2::uuid",
            winner_id,
            loser_id,
        )
        await conn.execute(
            """
            update seed_candidates
            set promoted_institution_id = $1::uuid, updated_at = now()
            where promoted_institution_id = $2::uuid
            """,
            winner_id,
            loser_id,
        )
        await conn.execute(
            "update institution_sources set institution_id = $1::uuid where institution_id = $2::uuid",
            winner_id,
            loser_id,
        )
        await conn.execute(
            """
            update claims
            set institution_id = $1::uuid, updated_at = now()
            where institution_id = $2::uuid
              and not exists (select 1 from claims where institution_id = $1::uuid)
            """,
            winner_id,
            loser_id,
        )
        await conn.execute(
            """
            update crawl_queue
            set
              status = 'failed',
              last_error = $2,
              completed_at = now(),
              updated_at = now()
            where institution_id = $1::uuid
              and status = 'pending'
            """,
            loser_id,
            f"merged into {winner_id}",
        )
        await conn.execute(
            """
            update institutions
            set merged_into_id = $1::uuid, merged_at = now(), updated_at = now()
            where id = $2::uuid or merged_into_id = $2::uuid
            """,
            winner_id,
            loser_id,
        )
        await conn.execute(
            """
            update institutions
            set
              domain = coalesce(domain, $2),
              phone = coalesce(phone, $3),
              updated_at = now()
            where id = $1::uuid
            """,
            winner_id,
            loser["domain"],
            loser["phone"],
        )

        payload = {
            "loser_id": loser_id,
            "facts_moved": _affected_rows(moved_facts),
            "snapshots_moved": _affected_rows(moved_snapshots),
            "evidence": evidence,
        }
        await self._record_event(
            conn,
            entity_type="institution",
            entity_id=winner_id,
            event_type="merge_applied",
            actor_id=actor_id,
            payload=payload,
        )
        await self._record_event(
            conn,
            entity_type="institution",
            entity_id=loser_id,
            event_type="merged_away",
            actor_id=actor_id,
            payload={"winner_id": winner_id},
        )

    async def record_distinct_cluster(
        self,
        *,
        institution_ids: list[str],
        evidence: dict[str, Any],
        actor_id: str | None = None,
    ) -> int:
        """Mark every pair in a cluster as reviewed-distinct; returns the number of new pairs."""
        pool = await self._get_pool()
        recorded = 0
        async with pool.acquire() as conn:
            async with conn.transaction():
                for left_id, right_id in combinations(sorted(set(institution_ids)), 2):
                    low_id, high_id = ordered_pair(left_id, right_id)
                    inserted = await conn.fetchval(
                        """
                        insert into dedupe_reviews (institution_low_id, institution_high_id, evidence)
                        values ($1::uuid, $2::uuid, $3::jsonb)
                        on conflict do nothing
                        returning 1
                        """,
                        low_id,
                        high_id,
                        json.dumps(evidence),
                    )
                    if inserted:
                        recorded += 1
                if recorded:
                    await self._record_event(
                        conn,
                        entity_type="dedupe_cluster",
                        entity_id=min(institution_ids),
                        event_type="promoted_distinct",
                        actor_id=actor_id,
                        payload={"institution_ids": sorted(institution_ids), "pairs": recorded},
                    )
        return recorded

    async def list_stale_institutions(self, *, limit: int, stale_before: datetime) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              i.id::text as id,
              i.domain,
              latest.newest_as_of
            from institutions i
            left join lateral (
              select max(f.as_of) as newest_as_of
              from facts f
              where f.institution_id = i.id
                and f.moderation_status = 'APPROVED'
            ) latest on true
            where i.merged_into_id is null
              and i.domain is not null
              and (latest.newest_as_of is null or latest.newest_as_of < $2)
            order by latest.newest_as_of asc nulls first, i.created_at asc
            limit $1
            """,
            limit,
            stale_before,
        )
        return [dict(row) for row in rows]

    # Crawl queue

    async def enqueue_crawl(self, institution_id: str) -> tuple[dict[str, Any], bool]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    """
                    select i.id::text as id, i.domain
                    from institutions requested
                    join institutions i on i.id = coalesce(requested.merged_into_id, requested.id)
                    where requested.id = $1::uuid
                    """,
                    _require_uuid(institution_id, "institution"),
                )
                if not row:
                    raise RepositoryNotFoundError("institution not found")
                if not row["domain"]:
                    raise RepositoryValidationError("institution has no domain to crawl")
                return await self._enqueue_crawl_conn(conn, row["id"], row["domain"])

    async def claim_crawl_batch(self, *, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            with picked as (
              select id
              from crawl_queue
              where status = 'pending'
                and scheduled_at <= now()
              order by scheduled_at asc, created_at asc
              limit $1
              for update skip locked
            )
            update crawl_queue q
            set
              status = 'processing',
              claimed_at = now(),
              updated_at = now()
            from picked
            where q.id = picked.id
            returning
              q.id::text as id,
              q.institution_id::text as institution_id,
              q.domain,
              q.status::text as status,
              q.attempts,
              q.scheduled_at,
              q.last_error,
              q.claimed_at,
              q.completed_at,
              q.created_at
            """,
            limit,
        )
        return sorted((dict(row) for row in rows), key=lambda row: (row["scheduled_at"], row["created_at"]))

    async def complete_crawl_entry(
        self,
        *,
        entry_id: str,
        raw_json: dict[str, Any],
        confidence: float | None,
        facts: list[NormalizedFact],
        moderation_status: str,
    ) -> dict[str, Any]:
        """Persist the snapshot and its CRAWL facts and close the entry, atomically."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                entry = await conn.fetchrow(
                    """
                    update crawl_queue
                    set
                      status = 'completed',
                      last_error = null,
                      completed_at = now(),
                      updated_at = now()
                    where id = $1::uuid
                      and status = 'processing'
                    returning institution_id::text as institution_id, domain
                    """,
                    _require_uuid(entry_id, "crawl entry"),
                )
                if not entry:
                    raise RepositoryConflictError("crawl entry is not processing")

                institution_id = await conn.fetchval(
                    "select coalesce(merged_into_id, id)::text from institutions where id = $1::uuid",
                    entry["institution_id"],
                )
                snapshot = await conn.fetchrow(
                    """
                    insert into snapshots (institution_id, domain, as_of, raw_json, extract_confidence)
                    values ($1::uuid, $2, now(), $3::jsonb, $4)
                    returning id::text as id, as_of
                    """,
                    institution_id,
                    entry["domain"],
                    json.dumps(raw_json),
                    confidence,
                )
                inserted = await self._insert_facts(
                    conn,
                    institution_id=institution_id,
                    facts=facts,
                    as_of=snapshot["as_of"],
                    provenance="CRAWL",
                    moderation_status=moderation_status,
                )
                await self._record_event(
                    conn,
                    entity_type="snapshot",
                    entity_id=snapshot["id"],
                    event_type="normalized",
                    actor_type="pipeline",
                    payload={"crawl_entry_id": entry_id, "facts": inserted},
                )
                return {
                    "snapshot_id": snapshot["id"],
                    "institution_id": institution_id,
                    "as_of": snapshot["as_of"],
                    "facts_inserted": inserted,
                }

    async def fail_crawl_entry(self, entry_id: str, *, error: str) -> dict[str, Any] | None:
        pool = await self._get_pool()
        row = await pool.fetchrow(
            f"""
            update crawl_queue
            set
              status = 'failed',
              attempts = attempts + 1,
              last_error = $2,
              completed_at = now(),
              updated_at = now()
            where id = $1::uuid
              and status = 'processing'
            returning {_QUEUE_COLUMNS}
            """,
            _require_uuid(entry_id, "crawl entry"),
            error[:2000],
        )
        return dict(row) if row else None

    async def reap_expired_crawl_entries(self, *, lease_seconds: int, limit: int) -> list[dict[str, Any]]:
        """Fail processing entries whose claim is older than the lease so the institution can be crawled again."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                rows = await conn.fetch(
                    """
                    with expired as (
                      select id
                      from crawl_queue
                      where status = 'processing'
                        and claimed_at < now() - make_interval(secs => $1)
                      order by claimed_at asc
                      limit $2
                      for update skip locked
                    )
                    update crawl_queue q
                    set
                      status = 'failed',
                      attempts = q.attempts + 1,
                      last_error = 'lease expired',
                      completed_at = now(),
                      updated_at = now()
                    from expired
                    where q.id = expired.id
                    returning
                      q.id::text as id,
                      q.institution_id::text as institution_id,
                      q.domain,
                      q.status::text as status,
                      q.attempts,
                      q.scheduled_at,
                      q.last_error,
                      q.claimed_at,
                      q.completed_at,
                      q.created_at
                    """,
                    float(lease_seconds),
                    limit,
                )
                for row in rows:
                    await self._record_event(
                        conn,
                        entity_type="crawl_entry",
                        entity_id=row["id"],
                        event_type="lease_expired",
                        actor_type="pipeline",
                        payload={"institution_id": row["institution_id"], "lease_seconds": lease_seconds},
                    )
                return [dict(row) for row in rows]

    async def retry_crawl_entry(self, entry_id: str) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                current = await conn.fetchrow(
                    "select status::text as status from crawl_queue where id = $1::uuid for update",
                    _require_uuid(entry_id, "crawl entry"),
                )
                if not current:
                    raise RepositoryNotFoundError("crawl entry not found")
                if current["status"] != "failed":
                    raise RepositoryConflictError(f"crawl entry is {current['status']}; only failed entries can be retried")
                try:
                    row = await conn.fetchrow(
                        f"""
                        update crawl_queue
                        set
                          status = 'pending',
                          scheduled_at = now(),
                          claimed_at = null,
                          completed_at = null,
                          updated_at = now()
                        where id = $1::uuid
                        returning {_QUEUE_COLUMNS}
                        """,
                        entry_id,
                    )
                except pg_exc.UniqueViolationError as exc:
                    raise RepositoryConflictError("institution already has an open crawl entry") from exc
                return dict(row)

    async def list_crawl_queue(self, *, status: str | None, limit: int) -> list[dict[str, Any]]:
        if status is not None and status not in CRAWL_STATUSES:
            raise RepositoryValidationError(f"status must be one of {sorted(CRAWL_STATUSES)}")
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_QUEUE_COLUMNS}
            from crawl_queue
            where ($1::text is null or status::text = $1)
            order by created_at desc, id desc
            limit $2
            """,
            status,
            limit,
        )
        return [dict(row) for row in rows]

    # Facts

    async def moderate_fact(
        self,
        *,
        institution_id: str,
        fact_key: str,
        as_of: datetime,
        status: str,
        actor_id: str | None,
    ) -> dict[str, Any]:
        if status not in MODERATION_DECISIONS:
            raise RepositoryValidationError("status must be APPROVED or REJECTED")

        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    update facts
                    set
                      moderation_status = $4::moderation_status,
                      verified_by = $5,
                      verified_at = now()
                    where institution_id = $1::uuid
                      and fact_key = $2
                      and as_of = $3
                      and moderation_status = 'PENDING'
                    returning {_FACT_COLUMNS}
                    """,
                    _require_uuid(institution_id, "fact"),
                    fact_key,
                    as_of,
                    status,
                    actor_id,
                )
                if not row:
                    current = await conn.fetchval(
                        """
                        select moderation_status::text
                        from facts
                        where institution_id = $1::uuid and fact_key = $2 and as_of = $3
                        """,
                        institution_id,
                        fact_key,
                        as_of,
                    )
                    if current is None:
                        raise RepositoryNotFoundError("fact not found")
                    raise RepositoryConflictError(f"fact is already {current}")

                await self._record_event(
                    conn,
                    entity_type="fact",
                    entity_id=f"{institution_id}:{fact_key}:{as_of.isoformat()}",
                    event_type="moderated",
                    actor_type="human",
                    actor_id=actor_id,
                    payload={"status": status},
                )
                return self._fact_row_to_dict(row)

    async def list_pending_facts(self, *, limit: int, offset: int = 0) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_FACT_COLUMNS}
            from facts
            where moderation_status = 'PENDING'
            order by created_at asc, institution_id asc, fact_key asc
            limit $1 offset $2
            """,
            limit,
            offset,
        )
        return [self._fact_row_to_dict(row) for row in rows]

    async def list_current_facts(self, institution_id: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select distinct on (fact_key) {_FACT_COLUMNS}
            from facts
            where institution_id = $1::uuid
              and moderation_status = 'APPROVED'
            order by fact_key, as_of desc
            """,
            _require_uuid(institution_id, "institution"),
        )
        return [self._fact_row_to_dict(row) for row in rows]

    async def list_fact_history(self, institution_id: str, fact_key: str) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            f"""
            select {_FACT_COLUMNS}
            from facts
            where institution_id = $1::uuid
              and fact_key = $2
            order by as_of desc
            """,
            _require_uuid(institution_id, "institution"),
            fact_key,
        )
        return [self._fact_row_to_dict(row) for row in rows]

    async def record_admin_facts(
        self,
        *,
        institution_id: str,
        facts: list[NormalizedFact],
        moderation_status: str,
        actor_id: str | None,
    ) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                exists = await conn.fetchval(
                    "select 1 from institutions where id = $1::uuid and merged_into_id is null",
                    _require_uuid(institution_id, "institution"),
                )
                if not exists:
                    raise RepositoryNotFoundError("institution not found")
                inserted = await self._insert_facts(
                    conn,
                    institution_id=institution_id,
                    facts=facts,
                    as_of=None,
                    provenance="ADMIN",
                    moderation_status=moderation_status,
                )
                await self._record_event(
                    conn,
                    entity_type="institution",
                    entity_id=institution_id,
                    event_type="signals_recorded",
                    actor_type="human",
                    actor_id=actor_id,
                    payload={"fact_keys": [fact.fact_key for fact in facts]},
                )
                return inserted

    # Snapshots

    async def list_unnormalized_snapshots(self, *, limit: int) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              s.id::text as id,
              s.institution_id::text as institution_id,
              s.as_of,
              s.raw_json
            from snapshots s
            where not exists (
                select 1
                from facts f
                where f.institution_id = s.institution_id
                  and f.as_of = s.as_of
              )
              and not exists (
                select 1
                from pipeline_events e
                where e.entity_type = 'snapshot'
                  and e.entity_id = s.id::text
                  and e.event_type = 'normalized'
              )
            order by s.as_of asc
            limit $1
            """,
            limit,
        )
        return [self._snapshot_row_to_dict(row) for row in rows]

    async def record_snapshot_facts(
        self,
        *,
        snapshot_id: str,
        institution_id: str,
        as_of: datetime,
        facts: list[NormalizedFact],
        moderation_status: str,
    ) -> int:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                inserted = await self._insert_facts(
                    conn,
                    institution_id=institution_id,
                    facts=facts,
                    as_of=as_of,
                    provenance="CRAWL",
                    moderation_status=moderation_status,
                )
                await self._record_event(
                    conn,
                    entity_type="snapshot",
                    entity_id=snapshot_id,
                    event_type="normalized",
                    actor_type="pipeline",
                    payload={"facts": inserted},
                )
                return inserted

    async def latest_snapshots(self, institution_id: str, *, limit: int = 2) -> list[dict[str, Any]]:
        pool = await self._get_pool()
        rows = await pool.fetch(
            """
            select
              id::text as id,
              institution_id::text as institution_id,
              as_of,
              raw_json
            from snapshots
            where institution_id = $1::uuid
            order by as_of desc
            limit $2
            """,
            _require_uuid(institution_id, "institution"),
            limit,
        )
        return [self._snapshot_row_to_dict(row) for row in rows]

    # Claims

    async def upsert_claim(self, *, institution_id: str, email: str, token: str) -> dict[str, Any]:
        """Create or overwrite the single claim row for an institution with a fresh token."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"""
                    insert into claims (institution_id, email, token)
                    values ($1::uuid, $2, $3)
                    on conflict (institution_id) do update
                    set
                      email = excluded.email,
                      token = excluded.token,
                      status = 'PENDING',
                      created_at = now(),
                      updated_at = now()
                    returning {_CLAIM_COLUMNS}
                    """,
                    _require_uuid(institution_id, "institution"),
                    email,
                    token,
                )
                await self._record_event(
                    conn,
                    entity_type="claim",
                    entity_id=row["id"],
                    event_type="requested",
                    actor_type="anonymous",
                    payload={"institution_id": institution_id, "email": email},
                )
                return dict(row)

    async def verify_claim(self, token: str, *, ttl_hours: int) -> dict[str, Any]:
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                row = await conn.fetchrow(
                    f"select {_CLAIM_COLUMNS} from claims where token = $1 for update",
                    token,
                )
                if not row:
                    raise RepositoryNotFoundError("claim token not found")
                try:
                    ensure_claim_verifiable(status=row["status"], created_at=row["created_at"], ttl_hours=ttl_hours)
                except (ClaimExpiredError, ClaimAlreadyVerifiedError) as exc:
                    raise RepositoryConflictError(str(exc)) from exc

                verified = await conn.fetchrow(
                    f"""
                    update claims
                    set status = 'VERIFIED', updated_at = now()
                    where id = $1::uuid
                    returning {_CLAIM_COLUMNS}
                    """,
                    row["id"],
                )
                await self._record_event(
                    conn,
                    entity_type="claim",
                    entity_id=row["id"],
                    event_type="verified",
                    actor_type="anonymous",
                    payload={"institution_id": row["institution_id"]},
                )
                return dict(verified)

    async def submit_claim_facts(
        self,
        *,
        institution_id: str,
        token: str,
        facts: list[NormalizedFact],
    ) -> int:
        """Insert owner-submitted facts as PENDING/CLAIM; requires the token's claim to be VERIFIED."""
        pool = await self._get_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                claim = await conn.fetchrow(
                    f"select {_CLAIM_COLUMNS} from claims where token = $1 for share",
                    token,
                )
                if (
                    not claim
                    or claim["institution_id"] != _require_uuid(institution_id, "institution")
                    or claim["status"] != "VERIFIED"
                ):
                    raise RepositoryForbiddenError("a verified claim for this institution is required")

                inserted = await self._insert_facts(
                    conn,
                    institution_id=claim["institution_id"],
                    facts=facts,
                    as_of=None,
                    provenance="CLAIM",
                    moderation_status="PENDING",
                )
                await self._record_event(
                    conn,
                    entity_type="claim",
                    entity_id=claim["id"],
                    event_type="facts_submitted",
                    actor_type="claimant",
                    actor_id=claim["email"],
                    payload={"fact_keys": [fact.fact_key for fact in facts], "inserted": inserted},
                )
                return inserted

    # Internals

    async def _enqueue_crawl_conn(
        self,
        conn: asyncpg.Connection,
        institution_id: str,
        domain: str,
    ) -> tuple[dict[str, Any], bool]:
        row = await conn.fetchrow(
            f"""
            insert into crawl_queue (institution_id, domain)
            values ($1::uuid, $2)
            on conflict (institution_id) where status in ('pending', 'processing') do nothing
            returning {_QUEUE_COLUMNS}
            """,
            institution_id,
            domain,
        )
        if row:
            return dict(row), True

        existing = await conn.fetchrow(
            f"""
            select {_QUEUE_COLUMNS}
            from crawl_queue
            where institution_id = $1::uuid
              and status in ('pending', 'processing')
            """,
            institution_id,
        )
        if not existing:
            raise RepositoryConflictError("crawl entry changed concurrently; retry")
        return dict(existing), False

    async def _insert_institution(self, conn: asyncpg.Connection, institution: dict[str, Any]) -> str:
        institution_id = await conn.fetchval(
            """
            insert into institutions (
              canonical_name,
              addr_std,
              city,
              state,
              phone,
              domain,
              lat,
              lng,
              google_place_id
            )
            values ($1, $2, $3, $4, $5, $6, $7, $8, $9)
            on conflict (domain) where domain is not null and merged_into_id is null do nothing
            returning id::text
            """,
            institution["canonical_name"],
            institution.get("addr_std"),
            institution.get("city"),
            institution.get("state"),
            institution.get("phone"),
            institution.get("domain"),
            institution.get("lat"),
            institution.get("lng"),
            institution.get("google_place_id"),
        )
        if institution_id is None:
            raise RepositoryConflictError("an institution with this domain already exists")
        return institution_id

    async def _insert_source(
        self,
        conn: asyncpg.Connection,
        *,
        institution_id: str,
        source_type: str,
        source_ref: str | None,
        observed_name: str | None,
        observed_domain: str | None,
        observed_phone: str | None,
        observed_addr: str | None,
    ) -> None:
        await conn.execute(
            """
            insert into institution_sources (
              institution_id,
              source_type,
              source_ref,
              observed_name,
              observed_domain,
              observed_phone,
              observed_addr
            )
            values ($1::uuid, $2, $3, $4, $5, $6, $7)
            """,
            institution_id,
            source_type,
            source_ref,
            observed_name,
            observed_domain,
            observed_phone,
            observed_addr,
        )

    async def _insert_facts(
        self,
        conn: asyncpg.Connection,
        *,
        institution_id: str,
        facts: list[NormalizedFact],
        as_of: datetime | None,
        provenance: str,
        moderation_status: str,
    ) -> int:
        """Append fact versions; a version already stored under the natural key is left untouched."""
        effective_as_of = as_of or await conn.fetchval("select now()")
        inserted = 0
        for fact in facts:
            created = await conn.fetchval(
                """
                insert into facts (
                  institution_id,
                  fact_key,
                  as_of,
                  fact_value,
                  provenance,
                  moderation_status
                )
                values ($1::uuid, $2, $3, $4::jsonb, $5::fact_provenance, $6::moderation_status)
                on conflict (institution_id, fact_key, as_of) do nothing
                returning 1
                """,
                institution_id,
                fact.fact_key,
                effective_as_of,
                json.dumps(fact.fact_value),
                provenance,
                moderation_status,
            )
            if created:
                inserted += 1
        return inserted

    async def _record_event(
        self,
        conn: asyncpg.Connection,
        *,
        entity_type: str,
        entity_id: str | None,
        event_type: str,
        actor_type: str = "pipeline",
        actor_id: str | None = None,
        payload: dict[str, Any] | None = None,
    ) -> None:
        await conn.execute(
            """
            insert into pipeline_events (
              entity_type,
              entity_id,
              event_type,
              actor_type,
              actor_id,
              payload
            )
            values ($1, $2, $3, $4, $5, $6::jsonb)
            """,
            entity_type,
            entity_id,
            event_type,
            actor_type,
            actor_id,
            json.dumps(payload or {}, default=str),
        )

    async def _get_pool(self) -> asyncpg.Pool:
        if not self.database_url:
            raise RepositoryUnavailableError("ATLAS_DATABASE_URL is required")

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
            raise RepositoryUnavailableError("database unavailable") from exc

    @staticmethod
    def _seed_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        payload = dict(row)
        payload["evidence_json"] = _decode_json(row["evidence_json"])
        payload["confidence"] = float(row["confidence"]) if row["confidence"] is not None else None
        return payload

    @staticmethod
    def _fact_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        payload = dict(row)
        value = row["fact_value"]
        if isinstance(value, str):
            try:
                value = json.loads(value)
            except json.JSONDecodeError:
                pass
        payload["fact_value"] = value
        return payload

    @staticmethod
    def _snapshot_row_to_dict(row: asyncpg.Record) -> dict[str, Any]:
        payload = dict(row)
        payload["raw_json"] = _decode_json(row["raw_json"])
        return payload


def _decode_json(value: Any) -> dict[str, Any]:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError:
            value = {}
    return value if isinstance(value, dict) else {}


def _affected_rows(status: str) -> int:
    # asyncpg returns command tags such as "UPDATE 3".
    try:
        return int(status.rsplit(" ", 1)[-1])
    except (ValueError, AttributeError):
        return 0


def _require_uuid(value: str, label: str) -> str:
    try:
        return str(uuid.UUID(str(value)))
    except ValueError as exc:
        raise RepositoryNotFoundError(f"{label} not found") from exc


@lru_cache
def get_repository() -> PostgresRepository:
    settings = get_settings()
    return PostgresRepository(
        database_url=settings.database_url,
        min_pool_size=settings.database_pool_min_size,
        max_pool_size=settings.database_pool_max_size,
    )
