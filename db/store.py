from datetime import datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING

import aiosqlite

from config import settings
from core.parser import RawListing
from db.models import (
    SCHEMA,
    Batch,
    CachedBuilding,
    Channel,
    Criterion,
    Listing,
    Notification,
    NotificationDraft,
    NotificationStatus,
    RunLog,
    RunStatus,
    StabilizationStatus,
    User,
)

if TYPE_CHECKING:
    from core.batching import BatchCriteria

FREE_TIER = "1hour"

CRITERION_FIELDS = (
    "user_id", "name", "areas", "min_price", "max_price", "min_beds", "max_beds",
    "min_baths", "no_fee", "filter_rent_stabilized", "notify_email", "notify_sms",
    "notify_in_app", "preferred_tier", "is_active",
)
BOOL_FIELDS = {
    "no_fee", "filter_rent_stabilized", "notify_email", "notify_sms", "notify_in_app",
    "is_active",
}
RUN_COUNT_FIELDS = (
    "criteria_processed", "batches_fetched", "listings_found", "new_listings",
    "notifications_created", "sms_sent", "sms_failed", "email_sent", "email_failed",
)


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def _placeholders(values: list) -> str:
    return ", ".join("?" for _ in values)


class Store:
    def __init__(self, db_path: Path | str | None = None):
        path = db_path or settings.database_path
        self.db_path = Path(path) if isinstance(path, str) else path
        self._connection: aiosqlite.Connection | None = None

    async def connect(self) -> None:
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._connection = await aiosqlite.connect(self.db_path)
        self._connection.row_factory = aiosqlite.Row
        await self._connection.execute("PRAGMA foreign_keys = ON")
        await self._connection.executescript(SCHEMA)
        await self._connection.commit()

    async def close(self) -> None:
        if self._connection:
            await self._connection.close()
            self._connection = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if not self._connection:
            raise RuntimeError("Database not connected")
        return self._connection

    # === Users & access ===

    async def upsert_user(
        self, user_id: str, email: str | None = None, phone_number: str | None = None
    ) -> None:
        await self.conn.execute(
            """
            INSERT INTO users (id, email, phone_number) VALUES (?, ?, ?)
            ON CONFLICT(id) DO UPDATE SET email = excluded.email,
                phone_number = excluded.phone_number
            """,
            (user_id, email, phone_number),
        )
        await self.conn.commit()

    async def get_user(self, user_id: str) -> User | None:
        cursor = await self.conn.execute("SELECT * FROM users WHERE id = ?", (user_id,))
        row = await cursor.fetchone()
        if not row:
            return None
        return User(id=row["id"], email=row["email"], phone_number=row["phone_number"])

    async def grant_access(
        self, user_id: str, tier: str, starts_at: datetime, expires_at: datetime
    ) -> int:
        cursor = await self.conn.execute(
            """
            INSERT INTO access_grants (user_id, tier, status, starts_at, expires_at)
            VALUES (?, ?, 'active', ?, ?)
            """,
            (user_id, tier, starts_at.isoformat(), expires_at.isoformat()),
        )
        await self.conn.commit()
        return cursor.lastrowid  # type: ignore

    async def has_active_tier_access(
        self, user_id: str, tier: str, now: datetime | None = None
    ) -> bool:
        if tier == FREE_TIER:
            return True
        now_s = (now or datetime.utcnow()).isoformat()
        cursor = await self.conn.execute(
            """
            SELECT 1 FROM access_grants
            WHERE user_id = ? AND tier = ? AND status = 'active'
              AND starts_at <= ? AND expires_at > ?
            LIMIT 1
            """,
            (user_id, tier, now_s, now_s),
        )
        return await cursor.fetchone() is not None

    # === Criteria ===

    async def add_criterion(self, criterion: Criterion) -> int:
        now = datetime.utcnow().isoformat()
        values = [getattr(criterion, f) for f in CRITERION_FIELDS]
        values = [int(v) if f in BOOL_FIELDS else v for f, v in zip(CRITERION_FIELDS, values)]
        cursor = await self.conn.execute(
            f"""
            INSERT INTO criteria ({", ".join(CRITERION_FIELDS)}, last_checked, created_at, updated_at)
            VALUES ({_placeholders(values)}, ?, ?, ?)
            """,
            (*values, _ts(criterion.last_checked), now, now),
        )
        await self.conn.commit()
        criterion.id = cursor.lastrowid
        return cursor.lastrowid  # type: ignore

    async def get_criterion(self, criterion_id: int) -> Criterion | None:
        cursor = await self.conn.execute("SELECT * FROM criteria WHERE id = ?", (criterion_id,))
        row = await cursor.fetchone()
        return self._row_to_criterion(row) if row else None

    async def get_active_criteria(self) -> list[Criterion]:
        cursor = await self.conn.execute(
            "SELECT * FROM criteria WHERE is_active = 1 ORDER BY id"
        )
        return [self._row_to_criterion(row) for row in await cursor.fetchall()]

    async def update_criterion(self, criterion_id: int, **kwargs) -> bool:
        updates = {k: v for k, v in kwargs.items() if k in CRITERION_FIELDS}
        if not updates:
            return False
        for key in BOOL_FIELDS & updates.keys():
            updates[key] = int(updates[key])
        updates["updated_at"] = datetime.utcnow().isoformat()

        set_clause = ", ".join(f"{k} = ?" for k in updates)
        cursor = await self.conn.execute(
            f"UPDATE criteria SET {set_clause} WHERE id = ?",
            [*updates.values(), criterion_id],
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def delete_criterion(self, criterion_id: int) -> bool:
        cursor = await self.conn.execute("DELETE FROM criteria WHERE id = ?", (criterion_id,))
        await self.conn.commit()
        return cursor.rowcount > 0

    async def set_last_checked(self, criterion_id: int, checked_at: datetime) -> None:
        await self.conn.execute(
            "UPDATE criteria SET last_checked = ? WHERE id = ?",
            (checked_at.isoformat(), criterion_id),
        )
        await self.conn.commit()

    def _row_to_criterion(self, row: aiosqlite.Row) -> Criterion:
        return Criterion(
            id=row["id"],
            user_id=row["user_id"],
            name=row["name"],
            areas=row["areas"],
            min_price=row["min_price"],
            max_price=row["max_price"],
            min_beds=row["min_beds"],
            max_beds=row["max_beds"],
            min_baths=row["min_baths"],
            no_fee=bool(row["no_fee"]),
            filter_rent_stabilized=bool(row["filter_rent_stabilized"]),
            notify_email=bool(row["notify_email"]),
            notify_sms=bool(row["notify_sms"]),
            notify_in_app=bool(row["notify_in_app"]),
            preferred_tier=row["preferred_tier"],
            is_active=bool(row["is_active"]),
            last_checked=_dt(row["last_checked"]),
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    # === Batches ===

    async def get_batch_by_hash(self, criteria_hash: str) -> Batch | None:
        cursor = await self.conn.execute(
            "SELECT * FROM batches WHERE criteria_hash = ?", (criteria_hash,)
        )
        row = await cursor.fetchone()
        return self._row_to_batch(row) if row else None

    async def upsert_batch(
        self, criteria_hash: str, criteria: "BatchCriteria", member_count: int
    ) -> int:
        now = datetime.utcnow().isoformat()
        await self.conn.execute(
            """
            INSERT INTO batches
                (criteria_hash, areas, min_price, max_price, min_beds, max_beds, min_baths,
                 no_fee, member_count, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(criteria_hash) DO UPDATE SET member_count = excluded.member_count
            """,
            (
                criteria_hash,
                criteria.areas,
                criteria.min_price,
                criteria.max_price,
                criteria.min_beds,
                criteria.max_beds,
                criteria.min_baths,
                int(criteria.no_fee),
                member_count,
                now,
            ),
        )
        await self.conn.commit()
        cursor = await self.conn.execute(
            "SELECT id FROM batches WHERE criteria_hash = ?", (criteria_hash,)
        )
        row = await cursor.fetchone()
        return row["id"]

    async def get_memberships(self) -> dict[int, set[int]]:
        cursor = await self.conn.execute("SELECT criterion_id, batch_id FROM batch_memberships")
        memberships: dict[int, set[int]] = {}
        for row in await cursor.fetchall():
            memberships.setdefault(row["criterion_id"], set()).add(row["batch_id"])
        return memberships

    async def replace_memberships(self, batch_id: int, criterion_ids: list[int]) -> None:
        now = datetime.utcnow().isoformat()
        try:
            await self.conn.execute(
                "DELETE FROM batch_memberships WHERE batch_id = ?", (batch_id,)
            )
            if criterion_ids:
                await self.conn.execute(
                    f"DELETE FROM batch_memberships WHERE criterion_id IN "
                    f"({_placeholders(criterion_ids)})",
                    criterion_ids,
                )
                await self.conn.executemany(
                    "INSERT INTO batch_memberships (criterion_id, batch_id, created_at) "
                    "VALUES (?, ?, ?)",
                    [(cid, batch_id, now) for cid in criterion_ids],
                )
            await self.conn.commit()
        except Exception:
            await self.conn.rollback()
            raise

    async def remove_memberships(self, criterion_ids: list[int]) -> int:
        if not criterion_ids:
            return 0
        cursor = await self.conn.execute(
            f"DELETE FROM batch_memberships WHERE criterion_id IN ({_placeholders(criterion_ids)})",
            criterion_ids,
        )
        await self.conn.commit()
        return cursor.rowcount

    async def delete_empty_batches(self) -> int:
        cursor = await self.conn.execute(
            """
            DELETE FROM batches WHERE id NOT IN (SELECT DISTINCT batch_id FROM batch_memberships)
            """
        )
        await self.conn.execute(
            """
            UPDATE batches SET member_count = (
                SELECT COUNT(*) FROM batch_memberships m WHERE m.batch_id = batches.id
            )
            """
        )
        await self.conn.commit()
        return cursor.rowcount

    async def purge_batches(self) -> int:
        await self.conn.execute("DELETE FROM batch_memberships")
        cursor = await self.conn.execute("DELETE FROM batches")
        await self.conn.commit()
        return cursor.rowcount

    async def get_active_batches(self) -> list[Batch]:
        cursor = await self.conn.execute(
            """
            SELECT DISTINCT b.* FROM batches b
            JOIN batch_memberships m ON m.batch_id = b.id
            JOIN criteria c ON c.id = m.criterion_id
            WHERE c.is_active = 1
            ORDER BY b.id
            """
        )
        return [self._row_to_batch(row) for row in await cursor.fetchall()]

    async def get_batch_criteria(self, batch_id: int) -> list[Criterion]:
        cursor = await self.conn.execute(
            """
            SELECT c.* FROM criteria c
            JOIN batch_memberships m ON m.criterion_id = c.id
            WHERE m.batch_id = ? AND c.is_active = 1
            ORDER BY c.id
            """,
            (batch_id,),
        )
        return [self._row_to_criterion(row) for row in await cursor.fetchall()]

    async def mark_batch_fetched(self, batch_id: int, fetched_at: datetime) -> None:
        await self.conn.execute(
            "UPDATE batches SET last_fetched_at = ? WHERE id = ?",
            (fetched_at.isoformat(), batch_id),
        )
        await self.conn.commit()

    def _row_to_batch(self, row: aiosqlite.Row) -> Batch:
        return Batch(
            id=row["id"],
            criteria_hash=row["criteria_hash"],
            areas=row["areas"],
            min_price=row["min_price"],
            max_price=row["max_price"],
            min_beds=row["min_beds"],
            max_beds=row["max_beds"],
            min_baths=row["min_baths"],
            no_fee=bool(row["no_fee"]),
            member_count=row["member_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
            last_fetched_at=_dt(row["last_fetched_at"]),
        )

    # === Listings ===

    async def upsert_listings(
        self, raw_listings: list[RawListing], now: datetime | None = None
    ) -> list[Listing]:
        if not raw_listings:
            return []
        now_s = (now or datetime.utcnow()).isoformat()

        unique: dict[str, RawListing] = {}
        for raw in raw_listings:
            unique.setdefault(raw.id, raw)

        for raw in unique.values():
            await self.conn.execute(
                """
                INSERT INTO listings
                    (source_id, title, address, neighborhood, price, bedrooms, bathrooms, sqft,
                     no_fee, url, image_url, latitude, longitude, first_seen_at, last_seen_at,
                     is_active)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, 1)
                ON CONFLICT(source_id) DO UPDATE SET
                    title = CASE WHEN ? != '' THEN ? ELSE listings.title END,
                    address = CASE WHEN ? != '' THEN ? ELSE listings.address END,
                    neighborhood = CASE WHEN ? != '' THEN ? ELSE listings.neighborhood END,
                    price = excluded.price,
                    bedrooms = COALESCE(?, listings.bedrooms),
                    bathrooms = COALESCE(?, listings.bathrooms),
                    sqft = COALESCE(?, listings.sqft),
                    no_fee = excluded.no_fee,
                    url = excluded.url,
                    image_url = COALESCE(excluded.image_url, listings.image_url),
                    latitude = COALESCE(excluded.latitude, listings.latitude),
                    longitude = COALESCE(excluded.longitude, listings.longitude),
                    last_seen_at = excluded.last_seen_at,
                    is_active = 1
                """,
                (
                    raw.id,
                    raw.title or f"Listing {raw.id}",
                    raw.address,
                    raw.neighborhood,
                    raw.price,
                    raw.bedrooms,
                    raw.bathrooms,
                    raw.sqft,
                    int(raw.no_fee),
                    raw.url,
                    raw.image_url,
                    raw.latitude,
                    raw.longitude,
                    now_s,
                    now_s,
                    raw.title, raw.title,
                    raw.address, raw.address,
                    raw.neighborhood, raw.neighborhood,
                    raw.bedrooms,
                    raw.bathrooms,
                    raw.sqft,
                ),
            )
        await self.conn.commit()

        source_ids = list(unique)
        cursor = await self.conn.execute(
            f"SELECT * FROM listings WHERE source_id IN ({_placeholders(source_ids)})",
            source_ids,
        )
        by_source = {row["source_id"]: self._row_to_listing(row) for row in await cursor.fetchall()}
        return [by_source[sid] for sid in source_ids if sid in by_source]

    async def get_listing(self, listing_id: int) -> Listing | None:
        cursor = await self.conn.execute("SELECT * FROM listings WHERE id = ?", (listing_id,))
        row = await cursor.fetchone()
        return self._row_to_listing(row) if row else None

    async def update_listing_enrichment(
        self,
        listing_id: int,
        status: StabilizationStatus,
        probability: float,
        source: str,
        building_id: str | None,
        checked_at: datetime,
    ) -> None:
        await self.conn.execute(
            """
            UPDATE listings SET stabilization_status = ?, stabilization_probability = ?,
                stabilization_source = ?, building_id = ?, stabilization_checked_at = ?
            WHERE id = ?
            """,
            (status.value, probability, source, building_id, checked_at.isoformat(), listing_id),
        )
        await self.conn.commit()

    async def mark_stale_listings_inactive(
        self, days: int | None = None, now: datetime | None = None
    ) -> int:
        cutoff = (now or datetime.utcnow()) - timedelta(days=days or settings.stale_listing_days)
        cursor = await self.conn.execute(
            "UPDATE listings SET is_active = 0 WHERE is_active = 1 AND last_seen_at < ?",
            (cutoff.isoformat(),),
        )
        await self.conn.commit()
        return cursor.rowcount

    async def get_recent_listings(
        self, hours: int = 24, limit: int = 50, now: datetime | None = None
    ) -> list[Listing]:
        cutoff = (now or datetime.utcnow()) - timedelta(hours=hours)
        cursor = await self.conn.execute(
            """
            SELECT * FROM listings WHERE is_active = 1 AND first_seen_at >= ?
            ORDER BY first_seen_at DESC LIMIT ?
            """,
            (cutoff.isoformat(), limit),
        )
        return [self._row_to_listing(row) for row in await cursor.fetchall()]

    async def get_enrichment_stats(self) -> dict:
        cursor = await self.conn.execute(
            """
            SELECT COUNT(*) AS total,
                   SUM(CASE WHEN stabilization_checked_at IS NOT NULL THEN 1 ELSE 0 END) AS enriched,
                   SUM(CASE WHEN stabilization_status = 'confirmed' THEN 1 ELSE 0 END) AS confirmed,
                   SUM(CASE WHEN stabilization_status = 'probable' THEN 1 ELSE 0 END) AS probable
            FROM listings
            """
        )
        row = await cursor.fetchone()
        total = row["total"] or 0
        enriched = row["enriched"] or 0
        return {
            "total_listings": total,
            "enriched_listings": enriched,
            "confirmed": row["confirmed"] or 0,
            "probable": row["probable"] or 0,
            "coverage_pct": (enriched / total * 100) if total else 0.0,
        }

    def _row_to_listing(self, row: aiosqlite.Row) -> Listing:
        status = row["stabilization_status"]
        return Listing(
            id=row["id"],
            source_id=row["source_id"],
            title=row["title"],
            address=row["address"],
            neighborhood=row["neighborhood"],
            price=row["price"],
            bedrooms=row["bedrooms"],
            bathrooms=row["bathrooms"],
            no_fee=bool(row["no_fee"]),
            url=row["url"],
            image_url=row["image_url"],
            sqft=row["sqft"],
            latitude=row["latitude"],
            longitude=row["longitude"],
            stabilization_status=StabilizationStatus(status) if status else None,
            stabilization_probability=row["stabilization_probability"],
            stabilization_source=row["stabilization_source"],
            stabilization_checked_at=_dt(row["stabilization_checked_at"]),
            building_id=row["building_id"],
            first_seen_at=datetime.fromisoformat(row["first_seen_at"]),
            last_seen_at=datetime.fromisoformat(row["last_seen_at"]),
            is_active=bool(row["is_active"]),
        )

    # === Building cache ===

    async def get_cached_building(self, lat_key: float, lng_key: float) -> CachedBuilding | None:
        cursor = await self.conn.execute(
            "SELECT * FROM building_cache WHERE lat_key = ? AND lng_key = ?",
            (lat_key, lng_key),
        )
        row = await cursor.fetchone()
        if not row:
            return None
        await self.conn.execute(
            "UPDATE building_cache SET hit_count = hit_count + 1 WHERE id = ?", (row["id"],)
        )
        await self.conn.commit()
        return CachedBuilding(
            lat_key=row["lat_key"],
            lng_key=row["lng_key"],
            building_id=row["building_id"],
            units=row["units"],
            year_built=row["year_built"],
            status=StabilizationStatus(row["status"]),
            probability=row["probability"],
            source=row["source"],
            cached_at=datetime.fromisoformat(row["cached_at"]),
            hit_count=row["hit_count"] + 1,
        )

    async def cache_building(self, entry: CachedBuilding) -> None:
        await self.conn.execute(
            """
            INSERT INTO building_cache
                (lat_key, lng_key, building_id, units, year_built, status, probability, source,
                 cached_at, hit_count)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0)
            ON CONFLICT(lat_key, lng_key) DO UPDATE SET
                building_id = excluded.building_id, units = excluded.units,
                year_built = excluded.year_built, status = excluded.status,
                probability = excluded.probability, source = excluded.source,
                cached_at = excluded.cached_at
            """,
            (
                entry.lat_key,
                entry.lng_key,
                entry.building_id,
                entry.units,
                entry.year_built,
                entry.status.value,
                entry.probability,
                entry.source,
                entry.cached_at.isoformat(),
            ),
        )
        await self.conn.commit()

    # === Seen listings ===

    async def filter_new_listings(
        self, user_id: str, criterion_id: int, listings: list[Listing]
    ) -> list[Listing]:
        if not listings:
            return []
        cursor = await self.conn.execute(
            "SELECT listing_id FROM seen_listings WHERE user_id = ? AND criterion_id = ?",
            (user_id, criterion_id),
        )
        seen = {row["listing_id"] for row in await cursor.fetchall()}
        return [listing for listing in listings if listing.id not in seen]

    async def mark_listings_seen(
        self, user_id: str, criterion_id: int, listing_ids: list[int]
    ) -> int:
        if not listing_ids:
            return 0
        now = datetime.utcnow().isoformat()
        before = self.conn.total_changes
        await self.conn.executemany(
            """
            INSERT OR IGNORE INTO seen_listings (user_id, criterion_id, listing_id, first_seen_at)
            VALUES (?, ?, ?, ?)
            """,
            [(user_id, criterion_id, lid, now) for lid in listing_ids],
        )
        await self.conn.commit()
        return self.conn.total_changes - before

    # === Notifications ===

    async def create_notifications(self, drafts: list[NotificationDraft]) -> list[int]:
        if not drafts:
            return []
        now = datetime.utcnow().isoformat()
        ids = []
        try:
            for draft in drafts:
                cursor = await self.conn.execute(
                    """
                    INSERT INTO notifications
                        (user_id, criterion_id, listing_id, channel, status, recipient, subject,
                         body, attempt_count, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, 0, ?)
                    """,
                    (
                        draft.user_id,
                        draft.criterion_id,
                        draft.listing_id,
                        draft.channel.value,
                        NotificationStatus.PENDING.value,
                        draft.recipient,
                        draft.subject,
                        draft.body,
                        now,
                    ),
                )
                ids.append(cursor.lastrowid)
            await self.conn.commit()
        except Exception:
            await self.conn.rollback()
            raise
        return ids  # type: ignore[return-value]

    async def get_pending_notifications(
        self, channel: Channel, limit: int = 50
    ) -> list[Notification]:
        cursor = await self.conn.execute(
            """
            SELECT * FROM notifications WHERE status = ? AND channel = ?
            ORDER BY created_at, id LIMIT ?
            """,
            (NotificationStatus.PENDING.value, channel.value, limit),
        )
        return [self._row_to_notification(row) for row in await cursor.fetchall()]

    async def mark_notification_sent(
        self,
        notification_id: int,
        provider_message_id: str | None,
        sent_at: datetime | None = None,
    ) -> bool:
        cursor = await self.conn.execute(
            """
            UPDATE notifications SET status = ?, provider_message_id = ?, sent_at = ?,
                attempt_count = attempt_count + 1
            WHERE id = ? AND status = ?
            """,
            (
                NotificationStatus.SENT.value,
                provider_message_id,
                (sent_at or datetime.utcnow()).isoformat(),
                notification_id,
                NotificationStatus.PENDING.value,
            ),
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def mark_notification_failed(self, notification_id: int, error_message: str) -> bool:
        cursor = await self.conn.execute(
            """
            UPDATE notifications SET status = ?, error_message = ?,
                attempt_count = attempt_count + 1
            WHERE id = ? AND status = ?
            """,
            (
                NotificationStatus.FAILED.value,
                error_message,
                notification_id,
                NotificationStatus.PENDING.value,
            ),
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def get_notification_by_id(self, notification_id: int) -> Notification | None:
        cursor = await self.conn.execute(
            "SELECT * FROM notifications WHERE id = ?", (notification_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_notification(row) if row else None

    async def get_notifications_for_criterion(self, criterion_id: int) -> list[Notification]:
        cursor = await self.conn.execute(
            "SELECT * FROM notifications WHERE criterion_id = ? ORDER BY id", (criterion_id,)
        )
        return [self._row_to_notification(row) for row in await cursor.fetchall()]

    async def count_unread(self, user_id: str) -> int:
        cursor = await self.conn.execute(
            "SELECT COUNT(*) FROM notifications WHERE user_id = ? AND channel = ? AND status = ?",
            (user_id, Channel.IN_APP.value, NotificationStatus.PENDING.value),
        )
        return (await cursor.fetchone())[0]

    def _row_to_notification(self, row: aiosqlite.Row) -> Notification:
        return Notification(
            id=row["id"],
            user_id=row["user_id"],
            criterion_id=row["criterion_id"],
            listing_id=row["listing_id"],
            channel=Channel(row["channel"]),
            status=NotificationStatus(row["status"]),
            recipient=row["recipient"],
            subject=row["subject"],
            body=row["body"],
            provider_message_id=row["provider_message_id"],
            error_message=row["error_message"],
            attempt_count=row["attempt_count"],
            created_at=datetime.fromisoformat(row["created_at"]),
            sent_at=_dt(row["sent_at"]),
        )

    # === Run logs ===

    async def start_run(self, job_name: str, started_at: datetime | None = None) -> int:
        cursor = await self.conn.execute(
            "INSERT INTO run_logs (job_name, status, started_at) VALUES (?, ?, ?)",
            (job_name, RunStatus.STARTED.value, (started_at or datetime.utcnow()).isoformat()),
        )
        await self.conn.commit()
        return cursor.lastrowid  # type: ignore

    async def finish_run(
        self,
        run_id: int,
        status: RunStatus,
        duration_ms: int | None = None,
        error_message: str | None = None,
        error_detail: str | None = None,
        **counts: int,
    ) -> bool:
        unknown = set(counts) - set(RUN_COUNT_FIELDS)
        if unknown:
            raise ValueError(f"Unknown run counters: {sorted(unknown)}")

        values = [counts.get(name, 0) for name in RUN_COUNT_FIELDS]
        set_counts = ", ".join(f"{name} = ?" for name in RUN_COUNT_FIELDS)
        cursor = await self.conn.execute(
            f"""
            UPDATE run_logs SET status = ?, finished_at = ?, duration_ms = ?, error_message = ?,
                error_detail = ?, {set_counts}
            WHERE id = ?
            """,
            (
                status.value,
                datetime.utcnow().isoformat(),
                duration_ms,
                error_message,
                error_detail,
                *values,
                run_id,
            ),
        )
        await self.conn.commit()
        return cursor.rowcount > 0

    async def get_run(self, run_id: int) -> RunLog | None:
        cursor = await self.conn.execute("SELECT * FROM run_logs WHERE id = ?", (run_id,))
        row = await cursor.fetchone()
        return self._row_to_run(row) if row else None

    async def get_recent_runs(self, limit: int = 10) -> list[RunLog]:
        cursor = await self.conn.execute(
            "SELECT * FROM run_logs ORDER BY started_at DESC, id DESC LIMIT ?", (limit,)
        )
        return [self._row_to_run(row) for row in await cursor.fetchall()]

    async def get_run_stats(self, limit: int = 100) -> dict:
        runs = await self.get_recent_runs(limit)
        completed = [r for r in runs if r.status == RunStatus.COMPLETED]
        failed = [r for r in runs if r.status == RunStatus.FAILED]
        durations = [r.duration_ms or 0 for r in completed]

        return {
            "total_runs": len(runs),
            "success_rate": (len(completed) / len(runs) * 100) if runs else 0.0,
            "average_duration_ms": round(sum(durations) / len(durations)) if durations else 0,
            "criteria_processed": sum(r.criteria_processed for r in completed),
            "listings_found": sum(r.listings_found for r in completed),
            "notifications_created": sum(r.notifications_created for r in completed),
            "recent_failures": [
                {"started_at": r.started_at, "error": r.error_message} for r in failed[:5]
            ],
        }

    def _row_to_run(self, row: aiosqlite.Row) -> RunLog:
        return RunLog(
            id=row["id"],
            job_name=row["job_name"],
            status=RunStatus(row["status"]),
            started_at=datetime.fromisoformat(row["started_at"]),
            finished_at=_dt(row["finished_at"]),
            duration_ms=row["duration_ms"],
            criteria_processed=row["criteria_processed"],
            batches_fetched=row["batches_fetched"],
            listings_found=row["listings_found"],
            new_listings=row["new_listings"],
            notifications_created=row["notifications_created"],
            sms_sent=row["sms_sent"],
            sms_failed=row["sms_failed"],
            email_sent=row["email_sent"],
            email_failed=row["email_failed"],
            error_message=row["error_message"],
            error_detail=row["error_detail"],
        )
