from datetime import datetime
from typing import Any, ClassVar, Dict, FrozenSet, List, Literal, Optional
from uuid import UUID

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    EmailStr,
    Field,
    computed_field,
    field_validator,
    model_validator,
)
from pydantic.alias_generators import to_camel

from tourbook.db.models import Difficulty, Role, duration_weeks

PASSWORD_MIN_LENGTH = 8


class APIModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    # fields an explicit null may clear
    nullable_fields: ClassVar[FrozenSet[str]] = frozenset()

    def to_record_data(self) -> Dict[str, Any]:
        """Fields the client actually sent, ready for the repository."""
        data = self.model_dump(exclude_unset=True)
        return {k: v for k, v in data.items() if v is not None or k in self.nullable_fields}


# Geo
class GeoPoint(APIModel):
    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(..., description="[longitude, latitude]")
    address: Optional[str] = None
    description: Optional[str] = None

    @field_validator("coordinates")
    @classmethod
    def validate_coordinates(cls, v):
        if len(v) != 2:
            raise ValueError("Coordinates must be [longitude, latitude]")
        lng, lat = v
        if not -180 <= lng <= 180 or not -90 <= lat <= 90:
            raise ValueError("Coordinates are out of range")
        return v


class Waypoint(GeoPoint):
    day: Optional[int] = Field(default=None, ge=0)


# Tours
class TourFields(APIModel):
    nullable_fields: ClassVar[FrozenSet[str]] = frozenset({"price_discount", "description", "start_location"})

    @field_validator("name", "summary", "description", check_fields=False)
    @classmethod
    def strip_text(cls, v):
        return v.strip() if isinstance(v, str) else v

    @field_validator("name", check_fields=False)
    @classmethod
    def validate_name(cls, v):
        if v is None:
            return v
        if len(v) < 10:
            raise ValueError("A tour name must have at least 10 characters")
        if len(v) > 40:
            raise ValueError("A tour name can be maximum 40 characters long")
        return v

    @model_validator(mode="after")
    def validate_discount(self):
        price = getattr(self, "price", None)
        discount = getattr(self, "price_discount", None)
        if price is not None and discount is not None and discount >= price:
            raise ValueError(f"Discount price ({discount:g}) should be below regular price")
        return self

    def to_record_data(self) -> Dict[str, Any]:
        data = super().to_record_data()
        if data.get("start_dates") is not None:
            data["start_dates"] = [d.isoformat() for d in self.start_dates]
        # nested points are stored whole, defaults included
        if data.get("start_location") is not None:
            data["start_location"] = self.start_location.model_dump()
        if data.get("locations") is not None:
            data["locations"] = [waypoint.model_dump() for waypoint in self.locations]
        return data


class TourCreate(TourFields):
    name: str
    duration: int = Field(..., gt=0)
    max_group_size: int = Field(..., gt=0)
    difficulty: Difficulty
    price: float = Field(..., ge=0)
    price_discount: Optional[float] = Field(default=None, ge=0)
    summary: str = Field(..., min_length=1)
    description: Optional[str] = None
    image_cover: str = Field(..., min_length=1)
    images: List[str] = Field(default_factory=list)
    start_dates: List[datetime] = Field(default_factory=list)
    secret_tour: bool = False
    start_location: Optional[GeoPoint] = None
    locations: List[Waypoint] = Field(default_factory=list)
    guides: List[UUID] = Field(default_factory=list)


class TourUpdate(TourFields):
    name: Optional[str] = None
    duration: Optional[int] = Field(default=None, gt=0)
    max_group_size: Optional[int] = Field(default=None, gt=0)
    difficulty: Optional[Difficulty] = None
    price: Optional[float] = Field(default=None, ge=0)
    price_discount: Optional[float] = Field(default=None, ge=0)
    summary: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = None
    image_cover: Optional[str] = Field(default=None, min_length=1)
    images: Optional[List[str]] = None
    start_dates: Optional[List[datetime]] = None
    secret_tour: Optional[bool] = None
    start_location: Optional[GeoPoint] = None
    locations: Optional[List[Waypoint]] = None
    guides: Optional[List[UUID]] = None


# Users
class UserSummary(APIModel):
    id: UUID
    name: str
    photo: str


class UserRead(UserSummary):
    email: str
    role: Role


class SignupRequest(APIModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH)
    password_confirm: str

    @field_validator("email", mode="before")
    @classmethod
    def lower_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("name")
    @classmethod
    def strip_name(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Please provide your name")
        return v

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.password_confirm:
            raise ValueError("Passwords are not the same!")
        return self

    def to_record_data(self) -> Dict[str, Any]:
        return {"name": self.name, "email": self.email, "password": self.password}


class PasswordChange(APIModel):
    password: str = Field(..., min_length=PASSWORD_MIN_LENGTH)
    password_confirm: str

    @model_validator(mode="after")
    def passwords_match(self):
        if self.password != self.password_confirm:
            raise ValueError("Passwords are not the same!")
        return self


class UpdatePasswordRequest(PasswordChange):
    password_current: str = Field(..., min_length=1)


class UpdateMeRequest(APIModel):
    name: Optional[str] = Field(default=None, min_length=1)
    email: Optional[EmailStr] = None

    @field_validator("email", mode="before")
    @classmethod
    def lower_email(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class UserAdminUpdate(UpdateMeRequest):
    photo: Optional[str] = None
    role: Optional[Role] = None


# Reviews
class ReviewRead(APIModel):
    id: UUID
    review: str
    rating: float
    created_at: datetime
    tour_id: UUID = Field(validation_alias="tour_id", serialization_alias="tour")
    user: Optional[UserSummary] = None


class ReviewCreate(APIModel):
    review: str = Field(..., min_length=1)
    rating: float = Field(..., ge=1, le=5)
    tour_id: UUID = Field(validation_alias=AliasChoices("tour", "tourId", "tour_id"))
    user_id: UUID = Field(validation_alias=AliasChoices("user", "userId", "user_id"))

    @field_validator("review")
    @classmethod
    def strip_review(cls, v):
        v = v.strip()
        if not v:
            raise ValueError("Review cannot be empty.")
        return v


class ReviewUpdate(APIModel):
    review: Optional[str] = Field(default=None, min_length=1)
    rating: Optional[float] = Field(default=None, ge=1, le=5)


# Tours (read side; after ReviewRead so reviews can nest)
class TourSummary(APIModel):
    id: UUID
    name: str


class TourRead(APIModel):
    id: UUID
    name: str
    slug: str
    duration: int
    max_group_size: int
    difficulty: Difficulty
    ratings_average: float
    ratings_quantity: int
    price: float
    price_discount: Optional[float] = None
    summary: str
    description: Optional[str] = None
    image_cover: str
    images: List[str] = Field(default_factory=list)
    start_dates: List[datetime] = Field(default_factory=list)
    start_location: Optional[Dict[str, Any]] = None
    locations: List[Dict[str, Any]] = Field(default_factory=list)
    created_at: datetime
    guides: Optional[List[UserRead]] = None
    reviews: Optional[List[ReviewRead]] = None

    @computed_field
    @property
    def duration_weeks(self) -> Optional[float]:
        return duration_weeks(self.duration)


# Bookings
class BookingRead(APIModel):
    id: UUID
    price: float
    paid: bool
    created_at: datetime
    tour: Optional[TourSummary] = None
    user: Optional[UserRead] = None


class BookingCreate(APIModel):
    tour_id: UUID = Field(validation_alias=AliasChoices("tour", "tourId", "tour_id"))
    user_id: UUID = Field(validation_alias=AliasChoices("user", "userId", "user_id"))
    price: float = Field(..., ge=0)
    paid: bool = True


class BookingUpdate(APIModel):
    price: Optional[float] = Field(default=None, ge=0)
    paid: Optional[bool] = None
