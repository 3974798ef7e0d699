import json
import logging
import os
import sqlite3
from dataclasses import dataclass
from datetime import date, datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Dict, List, Optional
from uuid import uuid4

from marketplace.models import (
    AvailabilityRule,
    Booking,
    BookingStatus,
    BookingStatusChange,
    ConversationSummary,
    Message,
    PriceType,
    Profile,
    ProviderStatus,
    Review,
    Role,
    ServiceCategory,
    ServiceListing,
    ServiceProvider,
)
from marketplace.services.availability import (
    ACTIVE_BOOKING_STATUSES,
    REJECTION_MESSAGES,
    find_overlap,
    parse_date,
    parse_time,
    validate_rules,
)
from marketplace.services.errors import (
    ConflictError,
    DuplicateReviewError,
    NotFoundError,
    PermissionDeniedError,
    SlotConflict,
    ValidationError,
)

logger = logging.getLogger(__name__)

SEED_CATEGORIES = [
    ("Handyman", "General repairs, assembly and odd jobs", "wrench"),
    ("Plumbing", "Leaks, installations and drain cleaning", "droplet"),
    ("Electrical", "Wiring, lighting and appliance installs", "zap"),
    ("Cleaning", "Home and office cleaning", "sparkles"),
    ("Gardening", "Lawn care, planting and landscaping", "leaf"),
    ("Tutoring", "Lessons and homework help", "book-open"),
    ("Beauty & Styling", "Hair, nails and make-up", "scissors"),
    ("Moving", "Packing, loading and transport", "truck"),
]

PROVIDER_SORTS = {"rating", "rate", "newest"}
LISTING_SORTS = {"newest", "price_low", "price_high", "rating"}
BOOKING_ROLES = {None, "all", "client", "provider"}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class MarketplaceStore:
    db_path: str

    def __post_init__(self) -> None:
        self._lock = Lock()
        path = Path(self.db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self.db_path = str(path)
        self._init_db()
        self._seed_if_needed()

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    def _init_db(self) -> None:
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS profiles (
                        id TEXT PRIMARY KEY,
                        role TEXT NOT NULL,
                        first_name TEXT NOT NULL,
                        last_name TEXT NOT NULL,
                        phone_number TEXT,
                        location TEXT,
                        avatar_url TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_providers (
                        id TEXT PRIMARY KEY,
                        profile_id TEXT NOT NULL UNIQUE,
                        business_name TEXT NOT NULL,
                        description TEXT NOT NULL,
                        skills_json TEXT NOT NULL,
                        hourly_rate REAL,
                        service_radius_km INTEGER,
                        experience_years INTEGER,
                        verification_status TEXT NOT NULL DEFAULT 'pending',
                        average_rating REAL NOT NULL DEFAULT 0,
                        total_reviews INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_categories (
                        id TEXT PRIMARY KEY,
                        name TEXT NOT NULL UNIQUE,
                        description TEXT NOT NULL,
                        icon_name TEXT
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS availability_rules (
                        id TEXT PRIMARY KEY,
                        provider_id TEXT NOT NULL,
                        day_of_week INTEGER NOT NULL,
                        start_time TEXT NOT NULL,
                        end_time TEXT NOT NULL,
                        is_available INTEGER NOT NULL DEFAULT 1,
                        UNIQUE (provider_id, day_of_week)
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS service_listings (
                        id TEXT PRIMARY KEY,
                        provider_id TEXT NOT NULL,
                        category_id TEXT NOT NULL,
                        title TEXT NOT NULL,
                        description TEXT NOT NULL,
                        price REAL,
                        price_type TEXT NOT NULL DEFAULT 'fixed',
                        duration_minutes INTEGER,
                        location TEXT,
                        is_active INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS bookings (
                        id TEXT PRIMARY KEY,
                        client_id TEXT NOT NULL,
                        provider_id TEXT NOT NULL,
                        listing_id TEXT NOT NULL,
                        scheduled_date TEXT NOT NULL,
                        scheduled_time TEXT NOT NULL,
                        duration_minutes INTEGER NOT NULL,
                        total_price REAL,
                        client_notes TEXT NOT NULL,
                        provider_notes TEXT NOT NULL,
                        status TEXT NOT NULL,
                        version INTEGER NOT NULL DEFAULT 1,
                        created_at TEXT NOT NULL,
                        updated_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS booking_status_history (
                        id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL,
                        actor_id TEXT NOT NULL,
                        from_status TEXT,
                        to_status TEXT NOT NULL,
                        note TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS reviews (
                        id TEXT PRIMARY KEY,
                        booking_id TEXT NOT NULL UNIQUE,
                        provider_id TEXT NOT NULL,
                        reviewer_id TEXT NOT NULL,
                        rating INTEGER NOT NULL,
                        comment TEXT,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    """
                    CREATE TABLE IF NOT EXISTS messages (
                        id TEXT PRIMARY KEY,
                        sender_id TEXT NOT NULL,
                        receiver_id TEXT NOT NULL,
                        booking_id TEXT,
                        content TEXT NOT NULL,
                        created_at TEXT NOT NULL
                    )
                    """
                )
                conn.execute(
                    "CREATE INDEX IF NOT EXISTS idx_bookings_provider_date ON bookings (provider_id, scheduled_date)"
                )
                conn.commit()

    def _seed_if_needed(self) -> None:
        with self._lock:
            with self._connect() as conn:
                existing = conn.execute("SELECT COUNT(*) AS n FROM service_categories").fetchone()
                if existing["n"]:
                    return
                for name, description, icon in SEED_CATEGORIES:
                    conn.execute(
                        "INSERT INTO service_categories (id, name, description, icon_name) VALUES (?, ?, ?, ?)",
                        (f"cat_{uuid4().hex[:8]}", name, description, icon),
                    )
                conn.commit()

    # Row mapping

    def _row_to_profile(self, row: sqlite3.Row) -> Profile:
        return Profile(
            id=row["id"],
            role=Role(row["role"]),
            first_name=row["first_name"],
            last_name=row["last_name"],
            phone_number=row["phone_number"],
            location=row["location"],
            avatar_url=row["avatar_url"],
            created_at=row["created_at"],
        )

    def _row_to_provider(self, row: sqlite3.Row) -> ServiceProvider:
        try:
            skills = json.loads(row["skills_json"] or "[]")
        except json.JSONDecodeError:
            skills = []
        return ServiceProvider(
            id=row["id"],
            profile_id=row["profile_id"],
            business_name=row["business_name"],
            description=row["description"],
            skills=[str(s) for s in skills] if isinstance(skills, list) else [],
            hourly_rate=row["hourly_rate"],
            service_radius_km=row["service_radius_km"],
            experience_years=row["experience_years"],
            verification_status=ProviderStatus(row["verification_status"]),
            average_rating=float(row["average_rating"]),
            total_reviews=int(row["total_reviews"]),
            created_at=row["created_at"],
        )

    def _row_to_listing(self, row: sqlite3.Row) -> ServiceListing:
        return ServiceListing(
            id=row["id"],
            provider_id=row["provider_id"],
            category_id=row["category_id"],
            title=row["title"],
            description=row["description"],
            price=row["price"],
            price_type=PriceType(row["price_type"]),
            duration_minutes=row["duration_minutes"],
            location=row["location"],
            is_active=bool(row["is_active"]),
            created_at=row["created_at"],
        )

    def _row_to_booking(self, row: sqlite3.Row) -> Booking:
        return Booking(
            id=row["id"],
            client_id=row["client_id"],
            provider_id=row["provider_id"],
            listing_id=row["listing_id"],
            scheduled_date=row["scheduled_date"],
            scheduled_time=row["scheduled_time"],
            duration_minutes=int(row["duration_minutes"]),
            total_price=row["total_price"],
            client_notes=row["client_notes"],
            provider_notes=row["provider_notes"],
            status=BookingStatus(row["status"]),
            version=int(row["version"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def _row_to_review(self, row: sqlite3.Row) -> Review:
        return Review(
            id=row["id"],
            booking_id=row["booking_id"],
            provider_id=row["provider_id"],
            reviewer_id=row["reviewer_id"],
            rating=int(row["rating"]),
            comment=row["comment"],
            created_at=row["created_at"],
        )

    def _row_to_message(self, row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            sender_id=row["sender_id"],
            receiver_id=row["receiver_id"],
            booking_id=row["booking_id"],
            content=row["content"],
            created_at=row["created_at"],
        )

    # Profiles

    def create_profile(
        self,
        *,
        role: Role,
        first_name: str,
        last_name: str = "",
        phone_number: Optional[str] = None,
        location: Optional[str] = None,
        avatar_url: Optional[str] = None,
    ) -> Profile:
        if not first_name.strip():
            raise ValidationError("first_name is required")
        profile = Profile(
            id=f"prf_{uuid4().hex[:10]}",
            role=role,
            first_name=first_name.strip(),
            last_name=last_name.strip(),
            phone_number=phone_number,
            location=location,
            avatar_url=avatar_url,
            created_at=_now_iso(),
        )
        with self._lock:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO profiles (id, role, first_name, last_name, phone_number, location, avatar_url, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        profile.id,
                        profile.role.value,
                        profile.first_name,
                        profile.last_name,
                        profile.phone_number,
                        profile.location,
                        profile.avatar_url,
                        profile.created_at,
                    ),
                )
                conn.commit()
        return profile

    def get_profile(self, profile_id: str) -> Optional[Profile]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM profiles WHERE id = ?", (profile_id,)).fetchone()
        return self._row_to_profile(row) if row else None

    def update_profile(
        self,
        *,
        profile_id: str,
        actor_id: str,
        first_name: Optional[str] = None,
        last_name: Optional[str] = None,
        phone_number: Optional[str] = None,
        location: Optional[str] = None,
        avatar_url: Optional[str] = None,
        role: Optional[Role] = None,
    ) -> Profile:
        if actor_id != profile_id:
            raise PermissionDeniedError("Only the profile owner can edit this profile")
        with self._lock:
            with self._connect() as conn:
                row = conn.execute("SELECT * FROM profiles WHERE id = ?", (profile_id,)).fetchone()
                if not row:
                    raise NotFoundError("Profile not found")
                if role is not None and role.value != row["role"]:
                    raise ValidationError("Profile role cannot be changed")
                updated_first = (first_name if first_name is not None else row["first_name"]).strip()
                if not updated_first:
                    raise ValidationError("first_name is required")
                conn.execute(
                    """
                    UPDATE profiles
                    SET first_name = ?, last_name = ?, phone_number = ?, location = ?, avatar_url = ?
                    WHERE id = ?
                    """,
                    (
                        updated_first,
                        (last_name if last_name is not None else row["last_name"]).strip(),
                        phone_number if phone_number is not None else row["phone_number"],
                        location if location is not None else row["location"],
                        avatar_url if avatar_url is not None else row["avatar_url"],
                        profile_id,
                    ),
                )
                conn.commit()
                updated = conn.execute("SELECT * FROM profiles WHERE id = ?", (profile_id,)).fetchone()
        return self._row_to_profile(updated)

    # Providers

    def create_provider(
        self,
        *,
        profile_id: str,
        business_name: str,
        description: str = "",
        skills: Optional[List[str]] = None,
        hourly_rate: Optional[float] = None,
        service_radius_km: Optional[int] = None,
        experience_years: Optional[int] = None,
    ) -> ServiceProvider:
        if not business_name.strip():
            raise ValidationError("business_name is required")
        if hourly_rate is not None and hourly_rate < 0:
            raise ValidationError("hourly_rate cannot be negative")
        cleaned_skills = sorted({s.strip().lower() for s in (skills or []) if s and s.strip()})
        provider_id = f"prv_{uuid4().hex[:8]}"

        with self._lock:
            with self._connect() as conn:
                profile = conn.execute("SELECT role FROM profiles WHERE id = ?", (profile_id,)).fetchone()
                if not profile:
                    raise NotFoundError("Profile not found")
                if profile["role"] != Role.provider.value:
                    raise PermissionDeniedError("Only provider profiles can create a business profile")
                existing = conn.execute(
                    "SELECT id FROM service_providers WHERE profile_id = ?",
                    (profile_id,),
                ).fetchone()
                if existing:
                    raise ConflictError("Provider profile already exists")
                conn.execute(
                    """
                    INSERT INTO service_providers (
                        id, profile_id, business_name, description, skills_json, hourly_rate,
                        service_radius_km, experience_years, verification_status, average_rating,
                        total_reviews, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        provider_id,
                        profile_id,
                        business_name.strip(),
                        description.strip(),
                        json.dumps(cleaned_skills),
                        hourly_rate,
                        service_radius_km,
                        experience_years,
                        ProviderStatus.pending.value,
                        0.0,
                        0,
                        _now_iso(),
                    ),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM service_providers WHERE id = ?", (provider_id,)).fetchone()
        return self._row_to_provider(row)

    def get_provider(self, provider_id: str) -> Optional[ServiceProvider]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM service_providers WHERE id = ?", (provider_id,)).fetchone()
        return self._row_to_provider(row) if row else None

    def get_provider_by_profile(self, profile_id: str) -> Optional[ServiceProvider]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM service_providers WHERE profile_id = ?", (profile_id,)).fetchone()
        return self._row_to_provider(row) if row else None

    def _owned_provider(self, conn: sqlite3.Connection, provider_id: str, actor_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM service_providers WHERE id = ?", (provider_id,)).fetchone()
        if not row:
            raise NotFoundError("Provider not found")
        if row["profile_id"] != actor_id:
            raise PermissionDeniedError("Only the provider owner can change this provider")
        return row

    def update_provider(
        self,
        *,
        provider_id: str,
        actor_id: str,
        business_name: Optional[str] = None,
        description: Optional[str] = None,
        skills: Optional[List[str]] = None,
        hourly_rate: Optional[float] = None,
        service_radius_km: Optional[int] = None,
        experience_years: Optional[int] = None,
    ) -> ServiceProvider:
        with self._lock:
            with self._connect() as conn:
                row = self._owned_provider(conn, provider_id, actor_id)
                updated_name = (business_name if business_name is not None else row["business_name"]).strip()
                if not updated_name:
                    raise ValidationError("business_name is required")
                updated_rate = hourly_rate if hourly_rate is not None else row["hourly_rate"]
                if updated_rate is not None and updated_rate < 0:
                    raise ValidationError("hourly_rate cannot be negative")
                if skills is None:
                    skills_json = row["skills_json"]
                else:
                    skills_json = json.dumps(sorted({s.strip().lower() for s in skills if s and s.strip()}))
                conn.execute(
                    """
                    UPDATE service_providers
                    SET business_name = ?, description = ?, skills_json = ?, hourly_rate = ?,
                        service_radius_km = ?, experience_years = ?
                    WHERE id = ?
                    """,
                    (
                        updated_name,
                        (description if description is not None else row["description"]).strip(),
                        skills_json,
                        updated_rate,
                        service_radius_km if service_radius_km is not None else row["service_radius_km"],
                        experience_years if experience_years is not None else row["experience_years"],
                        provider_id,
                    ),
                )
                conn.commit()
                updated = conn.execute("SELECT * FROM service_providers WHERE id = ?", (provider_id,)).fetchone()
        return self._row_to_provider(updated)

    def set_provider_status(self, provider_id: str, status: ProviderStatus) -> ServiceProvider:
        with self._lock:
            with self._connect() as conn:
                cursor = conn.execute(
                    "UPDATE service_providers SET verification_status = ? WHERE id = ?",
                    (status.value, provider_id),
                )
                if cursor.rowcount == 0:
                    raise NotFoundError("Provider not found")
                conn.commit()
                row = conn.execute("SELECT * FROM service_providers WHERE id = ?", (provider_id,)).fetchone()
        logger.info("Provider %s verification status set to %s", provider_id, status.value)
        return self._row_to_provider(row)

    def list_providers(
        self,
        *,
        skill: Optional[str] = None,
        q: Optional[str] = None,
        min_rating: Optional[float] = None,
        include_unverified: bool = False,
        sort_by: str = "rating",
    ) -> List[ServiceProvider]:
        if sort_by not in PROVIDER_SORTS:
            raise ValidationError(f"Invalid sort_by value. Allowed: {', '.join(sorted(PROVIDER_SORTS))}")

        query = "SELECT * FROM service_providers"
        params: List[Any] = []
        if not include_unverified:
            query += " WHERE verification_status = ?"
            params.append(ProviderStatus.approved.value)
        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()

        providers = [self._row_to_provider(row) for row in rows]
        if skill:
            wanted = skill.strip().lower()
            providers = [p for p in providers if wanted in p.skills]
        if q:
            needle = q.strip().lower()
            providers = [
                p
                for p in providers
                if needle in p.business_name.lower()
                or needle in p.description.lower()
                or any(needle in s for s in p.skills)
            ]
        if min_rating is not None:
            providers = [p for p in providers if p.average_rating >= min_rating]

        if sort_by == "rating":
            providers.sort(key=lambda p: (-p.average_rating, -p.total_reviews, p.business_name))
        elif sort_by == "rate":
            providers.sort(key=lambda p: (p.hourly_rate is None, p.hourly_rate or 0.0, p.business_name))
        else:
            providers.sort(key=lambda p: p.created_at, reverse=True)
        return providers

    # Categories

    def list_categories(self) -> List[ServiceCategory]:
        with self._connect() as conn:
            rows = conn.execute("SELECT * FROM service_categories ORDER BY name").fetchall()
        return [
            ServiceCategory(id=r["id"], name=r["name"], description=r["description"], icon_name=r["icon_name"])
            for r in rows
        ]

    def _assert_category_exists(self, conn: sqlite3.Connection, category_id: str) -> None:
        row = conn.execute("SELECT id FROM service_categories WHERE id = ?", (category_id,)).fetchone()
        if not row:
            raise NotFoundError("Category not found")

    # Availability

    def list_availability_rules(self, provider_id: str) -> List[AvailabilityRule]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM availability_rules WHERE provider_id = ? ORDER BY day_of_week",
                (provider_id,),
            ).fetchall()
        return [
            AvailabilityRule(
                day_of_week=int(r["day_of_week"]),
                start_time=r["start_time"],
                end_time=r["end_time"],
                is_available=bool(r["is_available"]),
            )
            for r in rows
        ]

    def replace_availability(
        self,
        *,
        provider_id: str,
        actor_id: str,
        rules: List[AvailabilityRule],
    ) -> List[AvailabilityRule]:
        normalized = validate_rules(rules)
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                self._owned_provider(conn, provider_id, actor_id)
                conn.execute("DELETE FROM availability_rules WHERE provider_id = ?", (provider_id,))
                for rule in normalized:
                    conn.execute(
                        """
                        INSERT INTO availability_rules (id, provider_id, day_of_week, start_time, end_time, is_available)
                        VALUES (?, ?, ?, ?, ?, ?)
                        """,
                        (
                            f"av_{uuid4().hex[:10]}",
                            provider_id,
                            rule.day_of_week,
                            rule.start_time,
                            rule.end_time,
                            1 if rule.is_available else 0,
                        ),
                    )
                conn.commit()
        return normalized

    # Listings

    def _validate_listing_fields(
        self,
        *,
        title: str,
        description: str,
        price: Optional[float],
        duration_minutes: Optional[int],
    ) -> None:
        if not title.strip():
            raise ValidationError("title is required")
        if not description.strip():
            raise ValidationError("description is required")
        if price is not None and price < 0:
            raise ValidationError("price cannot be negative")
        if duration_minutes is not None and duration_minutes <= 0:
            raise ValidationError("duration_minutes must be greater than 0")

    def create_listing(
        self,
        *,
        actor_id: str,
        category_id: str,
        title: str,
        description: str,
        price: Optional[float] = None,
        price_type: PriceType = PriceType.fixed,
        duration_minutes: Optional[int] = None,
        location: Optional[str] = None,
    ) -> ServiceListing:
        self._validate_listing_fields(
            title=title,
            description=description,
            price=price,
            duration_minutes=duration_minutes,
        )
        listing_id = f"lst_{uuid4().hex[:8]}"
        with self._lock:
            with self._connect() as conn:
                provider = conn.execute(
                    "SELECT id FROM service_providers WHERE profile_id = ?",
                    (actor_id,),
                ).fetchone()
                if not provider:
                    raise PermissionDeniedError("Only providers can create listings")
                self._assert_category_exists(conn, category_id)
                conn.execute(
                    """
                    INSERT INTO service_listings (
                        id, provider_id, category_id, title, description, price, price_type,
                        duration_minutes, location, is_active, created_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 1, ?)
                    """,
                    (
                        listing_id,
                        provider["id"],
                        category_id,
                        title.strip(),
                        description.strip(),
                        price,
                        price_type.value,
                        duration_minutes,
                        location,
                        _now_iso(),
                    ),
                )
                conn.commit()
                row = conn.execute("SELECT * FROM service_listings WHERE id = ?", (listing_id,)).fetchone()
        return self._row_to_listing(row)

    def get_listing(self, listing_id: str) -> Optional[ServiceListing]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM service_listings WHERE id = ?", (listing_id,)).fetchone()
        return self._row_to_listing(row) if row else None

    def _owned_listing(self, conn: sqlite3.Connection, listing_id: str, actor_id: str) -> sqlite3.Row:
        row = conn.execute("SELECT * FROM service_listings WHERE id = ?", (listing_id,)).fetchone()
        if not row:
            raise NotFoundError("Listing not found")
        self._owned_provider(conn, row["provider_id"], actor_id)
        return row

    def update_listing(
        self,
        *,
        listing_id: str,
        actor_id: str,
        category_id: Optional[str] = None,
        title: Optional[str] = None,
        description: Optional[str] = None,
        price: Optional[float] = None,
        price_type: Optional[PriceType] = None,
        duration_minutes: Optional[int] = None,
        location: Optional[str] = None,
    ) -> ServiceListing:
        with self._lock:
            with self._connect() as conn:
                row = self._owned_listing(conn, listing_id, actor_id)
                updated_title = title if title is not None else row["title"]
                updated_description = description if description is not None else row["description"]
                updated_price = price if price is not None else row["price"]
                updated_duration = duration_minutes if duration_minutes is not None else row["duration_minutes"]
                self._validate_listing_fields(
                    title=updated_title,
                    description=updated_description,
                    price=updated_price,
                    duration_minutes=updated_duration,
                )
                if category_id is not None:
                    self._assert_category_exists(conn, category_id)
                conn.execute(
                    """
                    UPDATE service_listings
                    SET category_id = ?, title = ?, description = ?, price = ?, price_type = ?,
                        duration_minutes = ?, location = ?
                    WHERE id = ?
                    """,
                    (
                        category_id if category_id is not None else row["category_id"],
                        updated_title.strip(),
                        updated_description.strip(),
                        updated_price,
                        price_type.value if price_type is not None else row["price_type"],
                        updated_duration,
                        location if location is not None else row["location"],
                        listing_id,
                    ),
                )
                conn.commit()
                updated = conn.execute("SELECT * FROM service_listings WHERE id = ?", (listing_id,)).fetchone()
        return self._row_to_listing(updated)

    def set_listing_active(self, *, listing_id: str, actor_id: str, is_active: bool) -> ServiceListing:
        with self._lock:
            with self._connect() as conn:
                self._owned_listing(conn, listing_id, actor_id)
                conn.execute(
                    "UPDATE service_listings SET is_active = ? WHERE id = ?",
                    (1 if is_active else 0, listing_id),
                )
                conn.commit()
                updated = conn.execute("SELECT * FROM service_listings WHERE id = ?", (listing_id,)).fetchone()
        return self._row_to_listing(updated)

    def list_listings(
        self,
        *,
        category_id: Optional[str] = None,
        provider_id: Optional[str] = None,
        q: Optional[str] = None,
        min_price: Optional[float] = None,
        max_price: Optional[float] = None,
        include_inactive: bool = False,
        sort_by: str = "newest",
    ) -> List[ServiceListing]:
        if sort_by not in LISTING_SORTS:
            raise ValidationError(f"Invalid sort_by value. Allowed: {', '.join(sorted(LISTING_SORTS))}")

        query = (
            "SELECT l.*, p.average_rating AS provider_rating FROM service_listings l "
            "JOIN service_providers p ON p.id = l.provider_id WHERE 1 = 1"
        )
        params: List[Any] = []
        if provider_id:
            query += " AND l.provider_id = ?"
            params.append(provider_id)
        else:
            # Public search only shows approved providers.
            query += " AND p.verification_status = ?"
            params.append(ProviderStatus.approved.value)
        if not include_inactive:
            query += " AND l.is_active = 1"
        if category_id:
            query += " AND l.category_id = ?"
            params.append(category_id)
        if q:
            query += " AND (LOWER(l.title) LIKE ? OR LOWER(l.description) LIKE ?)"
            needle = f"%{q.strip().lower()}%"
            params.extend([needle, needle])
        if min_price is not None:
            query += " AND l.price >= ?"
            params.append(min_price)
        if max_price is not None:
            query += " AND l.price <= ?"
            params.append(max_price)

        with self._connect() as conn:
            rows = conn.execute(query, tuple(params)).fetchall()

        if sort_by == "price_low":
            rows.sort(key=lambda r: (r["price"] is None, r["price"] or 0.0))
        elif sort_by == "price_high":
            rows.sort(key=lambda r: (r["price"] is None, -(r["price"] or 0.0)))
        elif sort_by == "rating":
            rows.sort(key=lambda r: -float(r["provider_rating"] or 0.0))
        else:
            rows.sort(key=lambda r: r["created_at"], reverse=True)
        return [self._row_to_listing(row) for row in rows]

    # Bookings

    def get_booking(self, booking_id: str) -> Optional[Booking]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        return self._row_to_booking(row) if row else None

    def _active_bookings(self, conn: sqlite3.Connection, provider_id: str, slot_date: str) -> List[Booking]:
        rows = conn.execute(
            f"""
            SELECT * FROM bookings
            WHERE provider_id = ? AND scheduled_date = ?
              AND status IN ({", ".join("?" for _ in ACTIVE_BOOKING_STATUSES)})
            ORDER BY scheduled_time
            """,
            (provider_id, slot_date, *[s.value for s in ACTIVE_BOOKING_STATUSES]),
        ).fetchall()
        return [self._row_to_booking(row) for row in rows]

    def list_active_bookings(self, provider_id: str, slot_date: date) -> List[Booking]:
        with self._connect() as conn:
            return self._active_bookings(conn, provider_id, slot_date.isoformat())

    def _append_history(
        self,
        conn: sqlite3.Connection,
        *,
        booking_id: str,
        actor_id: str,
        from_status: Optional[BookingStatus],
        to_status: BookingStatus,
        note: str,
    ) -> None:
        conn.execute(
            """
            INSERT INTO booking_status_history (id, booking_id, actor_id, from_status, to_status, note, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (
                f"bsh_{uuid4().hex[:10]}",
                booking_id,
                actor_id,
                from_status.value if from_status else None,
                to_status.value,
                note,
                _now_iso(),
            ),
        )

    def insert_booking_if_free(self, booking: Booking) -> Booking:
        """Insert a new booking unless an active booking overlaps it at write time."""
        slot_date = parse_date(booking.scheduled_date, field="scheduled_date")
        slot_time = parse_time(booking.scheduled_time, field="scheduled_time")
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                existing = self._active_bookings(conn, booking.provider_id, booking.scheduled_date)
                if find_overlap(existing, slot_date, slot_time, booking.duration_minutes):
                    raise SlotConflict(REJECTION_MESSAGES[SlotConflict.reason])
                conn.execute(
                    """
                    INSERT INTO bookings (
                        id, client_id, provider_id, listing_id, scheduled_date, scheduled_time,
                        duration_minutes, total_price, client_notes, provider_notes, status,
                        version, created_at, updated_at
                    ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        booking.id,
                        booking.client_id,
                        booking.provider_id,
                        booking.listing_id,
                        booking.scheduled_date,
                        booking.scheduled_time,
                        booking.duration_minutes,
                        booking.total_price,
                        booking.client_notes,
                        booking.provider_notes,
                        booking.status.value,
                        booking.version,
                        booking.created_at,
                        booking.updated_at,
                    ),
                )
                self._append_history(
                    conn,
                    booking_id=booking.id,
                    actor_id=booking.client_id,
                    from_status=None,
                    to_status=booking.status,
                    note="booking requested",
                )
                conn.commit()
        return booking

    def conditional_update_booking(
        self,
        *,
        booking_id: str,
        expected_status: BookingStatus,
        expected_version: int,
        updated: Booking,
        actor_id: str,
        note: str = "",
        require_free_slot: bool = False,
    ) -> Booking:
        """Write ``updated`` only if the stored row still has the expected status and version.

        With ``require_free_slot`` the overlap check against confirmed bookings runs inside
        the same write transaction.
        """
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                if require_free_slot:
                    others = self._active_bookings(conn, updated.provider_id, updated.scheduled_date)
                    clash = find_overlap(
                        others,
                        parse_date(updated.scheduled_date),
                        parse_time(updated.scheduled_time),
                        updated.duration_minutes,
                        ignore_booking_id=booking_id,
                        statuses={BookingStatus.confirmed},
                    )
                    if clash:
                        raise SlotConflict(REJECTION_MESSAGES[SlotConflict.reason])

                cursor = conn.execute(
                    """
                    UPDATE bookings
                    SET status = ?, provider_notes = ?, version = ?, updated_at = ?
                    WHERE id = ? AND status = ? AND version = ?
                    """,
                    (
                        updated.status.value,
                        updated.provider_notes,
                        updated.version,
                        updated.updated_at,
                        booking_id,
                        expected_status.value,
                        expected_version,
                    ),
                )
                if cursor.rowcount == 0:
                    exists = conn.execute("SELECT id FROM bookings WHERE id = ?", (booking_id,)).fetchone()
                    if not exists:
                        raise NotFoundError("Booking not found")
                    raise ConflictError("Booking was changed by someone else; reload and try again")
                self._append_history(
                    conn,
                    booking_id=booking_id,
                    actor_id=actor_id,
                    from_status=expected_status,
                    to_status=updated.status,
                    note=note,
                )
                conn.commit()
                row = conn.execute("SELECT * FROM bookings WHERE id = ?", (booking_id,)).fetchone()
        return self._row_to_booking(row)

    def list_bookings(self, profile_id: str, role: Optional[str] = None) -> List[Booking]:
        normalized_role = role.strip().lower() if role else None
        if normalized_role not in BOOKING_ROLES:
            raise ValidationError("Invalid role value. Allowed: all, client, provider")

        query = "SELECT b.* FROM bookings b LEFT JOIN service_providers sp ON sp.id = b.provider_id"
        if normalized_role == "client":
            query += " WHERE b.client_id = ?"
            params: tuple = (profile_id,)
        elif normalized_role == "provider":
            query += " WHERE sp.profile_id = ?"
            params = (profile_id,)
        else:
            query += " WHERE b.client_id = ? OR sp.profile_id = ?"
            params = (profile_id, profile_id)
        query += " ORDER BY b.created_at DESC"

        with self._connect() as conn:
            rows = conn.execute(query, params).fetchall()
        return [self._row_to_booking(row) for row in rows]

    def list_booking_history(self, booking_id: str) -> List[BookingStatusChange]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM booking_status_history WHERE booking_id = ? ORDER BY created_at, rowid",
                (booking_id,),
            ).fetchall()
        return [
            BookingStatusChange(
                booking_id=r["booking_id"],
                actor_id=r["actor_id"],
                from_status=BookingStatus(r["from_status"]) if r["from_status"] else None,
                to_status=BookingStatus(r["to_status"]),
                note=r["note"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    # Reviews

    def insert_review(self, review: Review) -> Review:
        """Store a review and recompute the provider's rating from every review it has."""
        with self._lock:
            with self._connect() as conn:
                conn.execute("BEGIN IMMEDIATE")
                existing = conn.execute(
                    "SELECT id FROM reviews WHERE booking_id = ?",
                    (review.booking_id,),
                ).fetchone()
                if existing:
                    raise DuplicateReviewError("This booking has already been reviewed")
                try:
                    conn.execute(
                        """
                        INSERT INTO reviews (id, booking_id, provider_id, reviewer_id, rating, comment, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            review.id,
                            review.booking_id,
                            review.provider_id,
                            review.reviewer_id,
                            review.rating,
                            review.comment,
                            review.created_at,
                        ),
                    )
                except sqlite3.IntegrityError as exc:
                    raise DuplicateReviewError("This booking has already been reviewed") from exc
                aggregate = conn.execute(
                    "SELECT AVG(rating) AS avg_rating, COUNT(*) AS n FROM reviews WHERE provider_id = ?",
                    (review.provider_id,),
                ).fetchone()
                conn.execute(
                    "UPDATE service_providers SET average_rating = ?, total_reviews = ? WHERE id = ?",
                    (round(float(aggregate["avg_rating"] or 0.0), 2), int(aggregate["n"]), review.provider_id),
                )
                conn.commit()
        return review

    def get_review_for_booking(self, booking_id: str) -> Optional[Review]:
        with self._connect() as conn:
            row = conn.execute("SELECT * FROM reviews WHERE booking_id = ?", (booking_id,)).fetchone()
        return self._row_to_review(row) if row else None

    def list_reviews(self, provider_id: str) -> List[Review]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT * FROM reviews WHERE provider_id = ? ORDER BY created_at DESC",
                (provider_id,),
            ).fetchall()
        return [self._row_to_review(row) for row in rows]

    # Messages

    def send_message(
        self,
        *,
        sender_id: str,
        receiver_id: str,
        content: str,
        booking_id: Optional[str] = None,
    ) -> Message:
        if not content.strip():
            raise ValidationError("Message content is required")
        if sender_id == receiver_id:
            raise ValidationError("Cannot send a message to yourself")
        message = Message(
            id=f"msg_{uuid4().hex[:10]}",
            sender_id=sender_id,
            receiver_id=receiver_id,
            booking_id=booking_id,
            content=content.strip(),
            created_at=_now_iso(),
        )
        with self._lock:
            with self._connect() as conn:
                found = conn.execute(
                    "SELECT COUNT(*) AS n FROM profiles WHERE id IN (?, ?)",
                    (sender_id, receiver_id),
                ).fetchone()
                if int(found["n"]) != 2:
                    raise NotFoundError("Profile not found")
                if booking_id:
                    row = conn.execute(
                        """
                        SELECT b.client_id, sp.profile_id AS provider_profile_id
                        FROM bookings b JOIN service_providers sp ON sp.id = b.provider_id
                        WHERE b.id = ?
                        """,
                        (booking_id,),
                    ).fetchone()
                    if not row:
                        raise NotFoundError("Booking not found")
                    if {sender_id, receiver_id} != {row["client_id"], row["provider_profile_id"]}:
                        raise PermissionDeniedError("Only the booking's client and provider can message about it")
                conn.execute(
                    """
                    INSERT INTO messages (id, sender_id, receiver_id, booking_id, content, created_at)
                    VALUES (?, ?, ?, ?, ?, ?)
                    """,
                    (
                        message.id,
                        message.sender_id,
                        message.receiver_id,
                        message.booking_id,
                        message.content,
                        message.created_at,
                    ),
                )
                conn.commit()
        return message

    def list_conversation(self, profile_id: str, other_id: str, limit: int = 200) -> List[Message]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE (sender_id = ? AND receiver_id = ?) OR (sender_id = ? AND receiver_id = ?)
                ORDER BY created_at, rowid
                LIMIT ?
                """,
                (profile_id, other_id, other_id, profile_id, limit),
            ).fetchall()
        return [self._row_to_message(row) for row in rows]

    def list_conversations(self, profile_id: str) -> List[ConversationSummary]:
        with self._connect() as conn:
            rows = conn.execute(
                """
                SELECT * FROM messages
                WHERE sender_id = ? OR receiver_id = ?
                ORDER BY created_at DESC, rowid DESC
                """,
                (profile_id, profile_id),
            ).fetchall()
            latest: Dict[str, Message] = {}
            for row in rows:
                message = self._row_to_message(row)
                other_id = message.receiver_id if message.sender_id == profile_id else message.sender_id
                latest.setdefault(other_id, message)
            names: Dict[str, str] = {}
            for other_id in latest:
                other = conn.execute("SELECT * FROM profiles WHERE id = ?", (other_id,)).fetchone()
                names[other_id] = self._row_to_profile(other).display_name if other else "Unknown"
        return [
            ConversationSummary(other_id=other_id, other_name=names[other_id], last_message=message)
            for other_id, message in latest.items()
        ]


default_db = str(Path(__file__).resolve().parents[2] / "data" / "marketplace.sqlite3")
marketplace_store = MarketplaceStore(db_path=os.getenv("MARKETPLACE_DB_PATH", default_db))
