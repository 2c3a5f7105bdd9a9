from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class Channel(Enum):
    SMS = "sms"
    EMAIL = "email"
    IN_APP = "in_app"


class NotificationStatus(Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class RunStatus(Enum):
    STARTED = "started"
    COMPLETED = "completed"
    FAILED = "failed"


class StabilizationStatus(Enum):
    CONFIRMED = "confirmed"
    PROBABLE = "probable"
    UNLIKELY = "unlikely"
    UNKNOWN = "unknown"


@dataclass
class Criterion:
    id: int | None
    user_id: str
    name: str
    areas: str
    min_price: int | None = None
    max_price: int | None = None
    min_beds: int | None = None
    max_beds: int | None = None
    min_baths: float | None = None
    no_fee: bool = False
    filter_rent_stabilized: bool = False
    notify_email: bool = True
    notify_sms: bool = False
    notify_in_app: bool = False
    preferred_tier: str = "1hour"
    is_active: bool = True
    last_checked: datetime | None = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class User:
    id: str
    email: str | None
    phone_number: str | None


@dataclass
class Batch:
    id: int | None
    criteria_hash: str
    areas: str
    min_price: int | None
    max_price: int | None
    min_beds: int | None
    max_beds: int | None
    min_baths: float | None
    no_fee: bool
    member_count: int
    created_at: datetime
    last_fetched_at: datetime | None


@dataclass
class Listing:
    id: int | None
    source_id: str
    title: str
    address: str
    neighborhood: str
    price: int
    bedrooms: int | None
    bathrooms: float | None
    no_fee: bool
    url: str
    image_url: str | None = None
    sqft: int | None = None
    latitude: float | None = None
    longitude: float | None = None
    stabilization_status: StabilizationStatus | None = None
    stabilization_probability: float | None = None
    stabilization_source: str | None = None
    stabilization_checked_at: datetime | None = None
    building_id: str | None = None
    first_seen_at: datetime = field(default_factory=datetime.utcnow)
    last_seen_at: datetime = field(default_factory=datetime.utcnow)
    is_active: bool = True


@dataclass
class Notification:
    id: int | None
    user_id: str
    criterion_id: int
    listing_id: int
    channel: Channel
    status: NotificationStatus
    recipient: str | None
    subject: str | None
    body: str | None
    provider_message_id: str | None
    error_message: str | None
    attempt_count: int
    created_at: datetime
    sent_at: datetime | None


@dataclass
class RunLog:
    id: int | None
    job_name: str
    status: RunStatus
    started_at: datetime
    finished_at: datetime | None
    duration_ms: int | None
    criteria_processed: int
    batches_fetched: int
    listings_found: int
    new_listings: int
    notifications_created: int
    sms_sent: int
    sms_failed: int
    email_sent: int
    email_failed: int
    error_message: str | None
    error_detail: str | None


@dataclass
class CachedBuilding:
    lat_key: float
    lng_key: float
    building_id: str | None
    units: int | None
    year_built: int | None
    status: StabilizationStatus
    probability: float
    source: str
    cached_at: datetime
    hit_count: int


@dataclass
class NotificationDraft:
    user_id: str
    criterion_id: int
    listing_id: int
    channel: Channel
    recipient: str | None
    subject: str | None
    body: str


SCHEMA = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT,
    phone_number TEXT
);

CREATE TABLE IF NOT EXISTS access_grants (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    tier TEXT NOT NULL,
    status TEXT DEFAULT 'active',
    starts_at TEXT NOT NULL,
    expires_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS criteria (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    name TEXT NOT NULL,
    areas TEXT NOT NULL,
    min_price INTEGER,
    max_price INTEGER,
    min_beds INTEGER,
    max_beds INTEGER,
    min_baths REAL,
    no_fee INTEGER DEFAULT 0,
    filter_rent_stabilized INTEGER DEFAULT 0,
    notify_email INTEGER DEFAULT 1,
    notify_sms INTEGER DEFAULT 0,
    notify_in_app INTEGER DEFAULT 0,
    preferred_tier TEXT DEFAULT '1hour',
    is_active INTEGER DEFAULT 1,
    last_checked TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS batches (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    criteria_hash TEXT NOT NULL UNIQUE,
    areas TEXT NOT NULL,
    min_price INTEGER,
    max_price INTEGER,
    min_beds INTEGER,
    max_beds INTEGER,
    min_baths REAL,
    no_fee INTEGER DEFAULT 0,
    member_count INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    last_fetched_at TEXT
);

CREATE TABLE IF NOT EXISTS batch_memberships (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    criterion_id INTEGER NOT NULL,
    batch_id INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (criterion_id) REFERENCES criteria(id) ON DELETE CASCADE,
    FOREIGN KEY (batch_id) REFERENCES batches(id) ON DELETE CASCADE,
    UNIQUE(criterion_id, batch_id)
);

CREATE TABLE IF NOT EXISTS listings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    source_id TEXT NOT NULL UNIQUE,
    title TEXT NOT NULL,
    address TEXT NOT NULL,
    neighborhood TEXT NOT NULL,
    price INTEGER NOT NULL,
    bedrooms INTEGER,
    bathrooms REAL,
    sqft INTEGER,
    no_fee INTEGER DEFAULT 0,
    url TEXT NOT NULL,
    image_url TEXT,
    latitude REAL,
    longitude REAL,
    stabilization_status TEXT,
    stabilization_probability REAL,
    stabilization_source TEXT,
    stabilization_checked_at TEXT,
    building_id TEXT,
    first_seen_at TEXT NOT NULL,
    last_seen_at TEXT NOT NULL,
    is_active INTEGER DEFAULT 1
);

CREATE TABLE IF NOT EXISTS seen_listings (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    criterion_id INTEGER NOT NULL,
    listing_id INTEGER NOT NULL,
    first_seen_at TEXT NOT NULL,
    FOREIGN KEY (criterion_id) REFERENCES criteria(id) ON DELETE CASCADE,
    FOREIGN KEY (listing_id) REFERENCES listings(id) ON DELETE CASCADE,
    UNIQUE(user_id, criterion_id, listing_id)
);

CREATE TABLE IF NOT EXISTS notifications (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    user_id TEXT NOT NULL,
    criterion_id INTEGER NOT NULL,
    listing_id INTEGER NOT NULL,
    channel TEXT NOT NULL,
    status TEXT DEFAULT 'pending',
    recipient TEXT,
    subject TEXT,
    body TEXT,
    provider_message_id TEXT,
    error_message TEXT,
    attempt_count INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    sent_at TEXT,
    FOREIGN KEY (criterion_id) REFERENCES criteria(id) ON DELETE CASCADE,
    FOREIGN KEY (listing_id) REFERENCES listings(id) ON DELETE CASCADE
);

CREATE TABLE IF NOT EXISTS run_logs (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    job_name TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    duration_ms INTEGER,
    criteria_processed INTEGER DEFAULT 0,
    batches_fetched INTEGER DEFAULT 0,
    listings_found INTEGER DEFAULT 0,
    new_listings INTEGER DEFAULT 0,
    notifications_created INTEGER DEFAULT 0,
    sms_sent INTEGER DEFAULT 0,
    sms_failed INTEGER DEFAULT 0,
    email_sent INTEGER DEFAULT 0,
    email_failed INTEGER DEFAULT 0,
    error_message TEXT,
    error_detail TEXT
);

CREATE TABLE IF NOT EXISTS building_cache (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    lat_key REAL NOT NULL,
    lng_key REAL NOT NULL,
    building_id TEXT,
    units INTEGER,
    year_built INTEGER,
    status TEXT NOT NULL,
    probability REAL NOT NULL,
    source TEXT NOT NULL,
    cached_at TEXT NOT NULL,
    hit_count INTEGER DEFAULT 0,
    UNIQUE(lat_key, lng_key)
);

CREATE INDEX IF NOT EXISTS idx_criteria_active ON criteria(is_active);
CREATE INDEX IF NOT EXISTS idx_access_grants_user ON access_grants(user_id, tier);
CREATE INDEX IF NOT EXISTS idx_memberships_batch ON batch_memberships(batch_id);
CREATE INDEX IF NOT EXISTS idx_listings_last_seen ON listings(last_seen_at);
CREATE INDEX IF NOT EXISTS idx_seen_scope ON seen_listings(user_id, criterion_id);
CREATE INDEX IF NOT EXISTS idx_notifications_pending ON notifications(status, channel, created_at);
CREATE INDEX IF NOT EXISTS idx_run_logs_started ON run_logs(started_at);
"""
