import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, ClassVar, Dict, FrozenSet, List, Optional
from uuid import UUID as PyUUID

from sqlalchemy import JSON, Column, DateTime, Enum as SAEnum, ForeignKey, Index, UniqueConstraint, Uuid
from sqlmodel import Field, Relationship, SQLModel

from tourbook.core import security
from tourbook.core.settings import get_settings

DEFAULT_RATINGS_AVERAGE = 4.5
DEFAULT_RATINGS_QUANTITY = 0
DEFAULT_PHOTO = "default.jpg"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# Enums
class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    DIFFICULT = "difficult"


class Role(str, Enum):
    USER = "user"
    GUIDE = "guide"
    LEAD_GUIDE = "lead-guide"
    ADMIN = "admin"


class TimestampedModel(SQLModel):
    """Base model carrying the creation timestamp every collection sorts on."""

    id: PyUUID = Field(default_factory=uuid.uuid4, primary_key=True)
    created_at: datetime = Field(
        default_factory=utcnow,
        sa_type=DateTime(timezone=True),
        nullable=False,
        index=True,
    )

    # columns the query translator must never filter, sort or project on
    private_fields: ClassVar[FrozenSet[str]] = frozenset()
    # relationships that read paths may attach
    relation_fields: ClassVar[FrozenSet[str]] = frozenset()


class TourGuideLink(SQLModel, table=True):
    __tablename__ = "tour_guides"

    tour_id: PyUUID = Field(
        sa_column=Column(Uuid, ForeignKey("tours.id", ondelete="CASCADE"), primary_key=True)
    )
    user_id: PyUUID = Field(
        sa_column=Column(Uuid, ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    )
    position: int = Field(default=0, description="Order of the guide on the tour")


class User(TimestampedModel, table=True):
    __tablename__ = "users"

    name: str = Field(nullable=False, max_length=120)
    email: str = Field(index=True, unique=True, nullable=False, max_length=255)
    photo: str = Field(default=DEFAULT_PHOTO, max_length=255)
    role: Role = Field(
        default=Role.USER,
        sa_column=Column(
            SAEnum(Role, name="user_role", values_callable=_enum_values),
            nullable=False,
            default=Role.USER,
        ),
    )
    password_hash: str = Field(nullable=False, max_length=255, description="bcrypt hash")
    password_changed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    password_reset_token: Optional[str] = Field(default=None, max_length=64, index=True)
    password_reset_expires: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    active: bool = Field(default=True, nullable=False, index=True)

    private_fields: ClassVar[FrozenSet[str]] = frozenset(
        {"password_hash", "password_changed_at", "password_reset_token", "password_reset_expires", "active"}
    )

    def set_password(self, plain: str, is_new: bool = False) -> None:
        """Hash ``plain`` into the record and stamp the change time for existing accounts."""
        self.password_hash = security.get_password_hash(plain)
        if not is_new:
            # a token issued in the same second as the change must stay valid
            self.password_changed_at = utcnow() - timedelta(seconds=1)

    def correct_password(self, candidate: str) -> bool:
        return security.verify_password(candidate, self.password_hash)

    def changed_password_after(self, token_issued_at: int) -> bool:
        changed = as_utc(self.password_changed_at)
        if changed is None:
            return False
        return int(changed.timestamp()) > token_issued_at

    def create_password_reset_token(self) -> str:
        """Store the hash of a fresh reset token and return the plaintext to send out."""
        reset_token = secrets.token_hex(32)
        self.password_reset_token = hash_reset_token(reset_token)
        self.password_reset_expires = utcnow() + timedelta(
            minutes=get_settings().PASSWORD_RESET_EXPIRES_MINUTES
        )
        return reset_token

    def clear_password_reset(self) -> None:
        self.password_reset_token = None
        self.password_reset_expires = None

    @property
    def first_name(self) -> str:
        return self.name.split(" ")[0]


def hash_reset_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class Tour(TimestampedModel, table=True):
    __tablename__ = "tours"

    __table_args__ = (
        Index("idx_tours_price_ratings", "price", "ratings_average"),
    )

    name: str = Field(unique=True, nullable=False, max_length=40)
    slug: str = Field(index=True, unique=True, nullable=False, max_length=60)
    duration: int = Field(nullable=False, description="Length of the tour in days")
    max_group_size: int = Field(nullable=False)
    difficulty: Difficulty = Field(
        sa_column=Column(
            SAEnum(Difficulty, name="tour_difficulty", values_callable=_enum_values),
            nullable=False,
        ),
    )
    ratings_average: float = Field(default=DEFAULT_RATINGS_AVERAGE, nullable=False)
    ratings_quantity: int = Field(default=DEFAULT_RATINGS_QUANTITY, nullable=False)
    price: float = Field(nullable=False)
    price_discount: Optional[float] = Field(default=None)
    summary: str = Field(nullable=False)
    description: Optional[str] = Field(default=None)
    image_cover: str = Field(nullable=False, max_length=255)
    images: List[str] = Field(default_factory=list, sa_type=JSON)
    start_dates: List[str] = Field(
        default_factory=list, sa_type=JSON, description="ISO-8601 departure timestamps"
    )
    secret_tour: bool = Field(default=False, nullable=False, index=True)
    start_location: Optional[Dict[str, Any]] = Field(
        default=None, sa_type=JSON, description="GeoJSON point with address and description"
    )
    locations: List[Dict[str, Any]] = Field(
        default_factory=list, sa_type=JSON, description="GeoJSON points with a day index"
    )

    guides: List[User] = Relationship(
        link_model=TourGuideLink,
        sa_relationship_kwargs={"order_by": "TourGuideLink.position"},
    )
    reviews: List["Review"] = Relationship(
        back_populates="tour",
        sa_relationship_kwargs={"order_by": "Review.created_at"},
    )

    private_fields: ClassVar[FrozenSet[str]] = frozenset({"secret_tour"})
    relation_fields: ClassVar[FrozenSet[str]] = frozenset({"guides", "reviews"})

    @property
    def duration_weeks(self) -> float:
        return duration_weeks(self.duration)

    @property
    def start_coordinates(self) -> Optional[List[float]]:
        """[lng, lat] of the start location, if it has one."""
        coordinates = (self.start_location or {}).get("coordinates")
        if not coordinates or len(coordinates) != 2:
            return None
        return [float(coordinates[0]), float(coordinates[1])]


def duration_weeks(duration: Optional[float]) -> Optional[float]:
    if duration is None:
        return None
    return duration / 7


class Review(TimestampedModel, table=True):
    __tablename__ = "reviews"

    __table_args__ = (
        UniqueConstraint("tour_id", "user_id", name="uq_reviews_tour_user"),
    )

    review: str = Field(nullable=False)
    rating: float = Field(nullable=False)
    tour_id: PyUUID = Field(foreign_key="tours.id", nullable=False, index=True)
    user_id: PyUUID = Field(foreign_key="users.id", nullable=False, index=True)

    tour: Optional[Tour] = Relationship(back_populates="reviews")
    user: Optional[User] = Relationship()

    relation_fields: ClassVar[FrozenSet[str]] = frozenset({"user"})


class Booking(TimestampedModel, table=True):
    __tablename__ = "bookings"

    tour_id: PyUUID = Field(foreign_key="tours.id", nullable=False, index=True)
    user_id: PyUUID = Field(foreign_key="users.id", nullable=False, index=True)
    price: float = Field(nullable=False, description="Amount captured at purchase time")
    paid: bool = Field(default=True, nullable=False)

    tour: Optional[Tour] = Relationship()
    user: Optional[User] = Relationship()

    relation_fields: ClassVar[FrozenSet[str]] = frozenset({"tour", "user"})
