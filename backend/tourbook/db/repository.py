"""
Storage adapters behind the generic resource handlers.

Every read path goes through two explicit steps: ``scope`` drops records
that must never be served (secret tours, deactivated users) and
``attach_related`` decides which relationships are loaded alongside.
"""
import logging
import re
from typing import Any, Dict, Generic, Iterable, List, Mapping, Optional, Protocol, Sequence, Type, TypeVar
from uuid import UUID

from pydantic.alias_generators import to_camel
from slugify import slugify
from sqlalchemy import delete, exists, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload
from sqlalchemy.sql import Select

from tourbook.core.errors import Conflict, NotFound, ValidationFailed
from tourbook.db.models import Booking, Review, Tour, TourGuideLink, User
from tourbook.services.ratings import calc_average_ratings

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT")

_SQLITE_UNIQUE = re.compile(r"UNIQUE constraint failed: (?P<columns>[\w., ]+)")
_POSTGRES_UNIQUE = re.compile(r"Key \((?P<columns>[^)]+)\)=\((?P<values>[^)]*)\) already exists")


class Repository(Protocol[ModelT]):
    """What the resource handlers need from a storage adapter."""

    model: Type[ModelT]

    def base_query(self, pre_filter: Optional[Mapping[str, Any]] = None) -> Select: ...

    async def find_many(self, statement: Select) -> Sequence[ModelT]: ...

    async def find_by_id(self, record_id: UUID, expand: Iterable[str] = ()) -> Optional[ModelT]: ...

    async def create(self, data: Dict[str, Any]) -> ModelT: ...

    async def update_by_id(self, record_id: UUID, data: Dict[str, Any]) -> Optional[ModelT]: ...

    async def delete_by_id(self, record_id: UUID) -> bool: ...


def api_field_name(column: str) -> str:
    if column.endswith("_id") and column != "id":
        column = column[: -len("_id")]
    return to_camel(column)


class SQLModelRepository(Generic[ModelT]):
    model: Type[ModelT]

    def __init__(self, session: AsyncSession):
        self.session = session

    # read composition
    def scope(self, statement: Select) -> Select:
        return statement

    def attach_related(self, statement: Select, expand: Iterable[str] = ()) -> Select:
        return statement

    def base_query(self, pre_filter: Optional[Mapping[str, Any]] = None) -> Select:
        statement = self.scope(select(self.model))
        for attribute, value in (pre_filter or {}).items():
            statement = statement.where(getattr(self.model, attribute) == value)
        return self.attach_related(statement)

    async def find_many(self, statement: Select) -> Sequence[ModelT]:
        result = await self.session.execute(statement)
        return result.scalars().unique().all()

    async def find_by_id(self, record_id: UUID, expand: Iterable[str] = ()) -> Optional[ModelT]:
        statement = self.scope(select(self.model).where(self.model.id == record_id))
        statement = self.attach_related(statement, expand).execution_options(populate_existing=True)
        result = await self.session.execute(statement)
        return result.scalars().first()

    async def reload(self, record_id: UUID) -> ModelT:
        """Fetch a record just written, bypassing scope so secret/inactive writes still echo back."""
        statement = self.attach_related(select(self.model).where(self.model.id == record_id))
        result = await self.session.execute(statement.execution_options(populate_existing=True))
        return result.scalars().one()

    # write hooks
    async def before_save(self, record: ModelT, changes: Dict[str, Any], is_new: bool) -> None:
        pass

    async def after_save(self, record: ModelT, previous: Dict[str, Any], is_new: bool) -> None:
        pass

    async def before_delete(self, record: ModelT) -> None:
        pass

    async def after_delete(self, record: ModelT) -> None:
        pass

    def build(self, data: Dict[str, Any]) -> ModelT:
        return self.model(**data)

    async def create(self, data: Dict[str, Any]) -> ModelT:
        data = dict(data)
        record = self.build(data)
        with self.session.no_autoflush:
            await self.before_save(record, data, is_new=True)
        self.session.add(record)
        await self.commit(record)
        logger.info(f"Created {self.model.__name__} {record.id}")
        await self.after_save(record, {}, is_new=True)
        return await self.reload(record.id)

    async def update_by_id(self, record_id: UUID, data: Dict[str, Any]) -> Optional[ModelT]:
        record = await self.find_by_id(record_id)
        if record is None:
            return None

        previous = {key: getattr(record, key, None) for key in data}
        for key, value in data.items():
            if key in self.model.__table__.c:
                setattr(record, key, value)
        with self.session.no_autoflush:
            await self.before_save(record, data, is_new=False)
        await self.commit(record)
        logger.info(f"Updated {self.model.__name__} {record_id}")
        await self.after_save(record, previous, is_new=False)
        return await self.reload(record_id)

    async def delete_by_id(self, record_id: UUID) -> bool:
        record = await self.find_by_id(record_id)
        if record is None:
            return False
        await self.before_delete(record)
        await self.session.execute(delete(self.model).where(self.model.id == record_id))
        await self.commit(record)
        logger.info(f"Deleted {self.model.__name__} {record_id}")
        await self.after_delete(record)
        return True

    async def commit(self, record: Any = None) -> None:
        """Commit, translating constraint violations into operational errors."""
        await self._write(self.session.commit, record)

    async def flush(self, record: Any = None) -> None:
        await self._write(self.session.flush, record)

    async def _write(self, operation, record: Any) -> None:
        try:
            await operation()
        except IntegrityError as e:
            # read the offending values before rollback expires them
            conflict = self._conflict_from(e, record)
            await self.session.rollback()
            if conflict is not None:
                raise conflict from e
            logger.error(f"Integrity error on {self.model.__name__}: {e.orig}")
            raise ValidationFailed("Invalid input data. A referenced record does not exist") from e

    def _conflict_from(self, error: IntegrityError, record: Any) -> Optional[Conflict]:
        message = str(error.orig)
        match = _SQLITE_UNIQUE.search(message)
        if match:
            columns = [part.strip().split(".")[-1] for part in match.group("columns").split(",")]
            return Conflict({api_field_name(c): _plain(getattr(record, c, None)) for c in columns})
        match = _POSTGRES_UNIQUE.search(message)
        if match:
            columns = [c.strip() for c in match.group("columns").split(",")]
            values = [v.strip() for v in match.group("values").split(",")]
            return Conflict({api_field_name(c): v for c, v in zip(columns, values)})
        return None


def _plain(value: Any) -> Any:
    return str(value) if isinstance(value, UUID) else value


def _active_guides():
    return selectinload(Tour.guides.and_(User.active.is_(True)))


class TourRepository(SQLModelRepository[Tour]):
    model = Tour

    def scope(self, statement: Select) -> Select:
        return statement.where(Tour.secret_tour.is_(False))

    def attach_related(self, statement: Select, expand: Iterable[str] = ()) -> Select:
        statement = statement.options(_active_guides())
        if "reviews" in expand:
            statement = statement.options(
                selectinload(Tour.reviews).selectinload(Review.user.and_(User.active.is_(True)))
            )
        return statement

    def build(self, data: Dict[str, Any]) -> Tour:
        fields = {k: v for k, v in data.items() if k != "guides"}
        return Tour(slug=slugify(fields.get("name", "")), **fields)

    async def before_save(self, record: Tour, changes: Dict[str, Any], is_new: bool) -> None:
        if "name" in changes:
            record.slug = slugify(record.name)
        if ("price" in changes or "price_discount" in changes) and record.price_discount is not None:
            if record.price_discount >= record.price:
                raise ValidationFailed(
                    f"Invalid input data. Discount price ({record.price_discount:g}) should be below regular price"
                )
        if "guides" in changes:
            await self._replace_guides(record, changes["guides"] or [], is_new)

    async def _replace_guides(self, record: Tour, guide_ids: List[UUID], is_new: bool) -> None:
        guide_ids = list(dict.fromkeys(guide_ids))
        if guide_ids:
            result = await self.session.execute(
                select(User.id).where(User.id.in_(guide_ids), User.active.is_(True))
            )
            found = set(result.scalars().all())
            missing = [str(g) for g in guide_ids if g not in found]
            if missing:
                raise ValidationFailed(f"Invalid guides: {', '.join(missing)}")

        if is_new:
            # links reference the tour row
            self.session.add(record)
            await self.flush(record)
        else:
            await self.session.execute(delete(TourGuideLink).where(TourGuideLink.tour_id == record.id))
        for position, guide_id in enumerate(guide_ids):
            self.session.add(TourGuideLink(tour_id=record.id, user_id=guide_id, position=position))

    async def find_by_slug(self, slug: str) -> Optional[Tour]:
        statement = self.attach_related(
            self.scope(select(Tour).where(Tour.slug == slug)), expand=("reviews",)
        )
        result = await self.session.execute(statement)
        return result.scalars().first()

    async def before_delete(self, record: Tour) -> None:
        booked = await self.session.scalar(select(exists().where(Booking.tour_id == record.id)))
        if booked:
            raise ValidationFailed("This tour has bookings and cannot be deleted")
        await self.session.execute(delete(Review).where(Review.tour_id == record.id))
        await self.session.execute(delete(TourGuideLink).where(TourGuideLink.tour_id == record.id))


class UserRepository(SQLModelRepository[User]):
    model = User

    def scope(self, statement: Select) -> Select:
        return statement.where(User.active.is_(True))

    def build(self, data: Dict[str, Any]) -> User:
        password = data.pop("password", None)
        user = User(password_hash="", **data)
        if password is not None:
            user.set_password(password, is_new=True)
        return user

    async def find_by_email(self, email: str) -> Optional[User]:
        result = await self.session.execute(self.scope(select(User).where(User.email == email.lower())))
        return result.scalars().first()

    async def find_by_reset_token(self, hashed_token: str) -> Optional[User]:
        result = await self.session.execute(
            self.scope(select(User).where(User.password_reset_token == hashed_token))
        )
        return result.scalars().first()

    async def save(self, user: User) -> User:
        """Persist changes made directly on a loaded record."""
        self.session.add(user)
        await self.commit(user)
        return user

    async def before_delete(self, record: User) -> None:
        booked = await self.session.scalar(select(exists().where(Booking.user_id == record.id)))
        if booked:
            raise ValidationFailed("This user has bookings and cannot be deleted")
        result = await self.session.execute(select(Review.tour_id).where(Review.user_id == record.id))
        self._reviewed_tours = set(result.scalars().all())
        await self.session.execute(delete(Review).where(Review.user_id == record.id))
        await self.session.execute(delete(TourGuideLink).where(TourGuideLink.user_id == record.id))

    async def after_delete(self, record: User) -> None:
        for tour_id in getattr(self, "_reviewed_tours", ()):
            await calc_average_ratings(self.session, tour_id)


class ReviewRepository(SQLModelRepository[Review]):
    model = Review

    def attach_related(self, statement: Select, expand: Iterable[str] = ()) -> Select:
        return statement.options(selectinload(Review.user.and_(User.active.is_(True))))

    async def before_save(self, record: Review, changes: Dict[str, Any], is_new: bool) -> None:
        if is_new or "tour_id" in changes:
            tour = await self.session.scalar(
                select(Tour.id).where(Tour.id == record.tour_id, Tour.secret_tour.is_(False))
            )
            if tour is None:
                raise NotFound("No tour found with that ID")
        if is_new or "user_id" in changes:
            user = await self.session.scalar(
                select(User.id).where(User.id == record.user_id, User.active.is_(True))
            )
            if user is None:
                raise NotFound("No user found with that ID")

    async def after_save(self, record: Review, previous: Dict[str, Any], is_new: bool) -> None:
        await calc_average_ratings(self.session, record.tour_id)
        moved_from = previous.get("tour_id")
        if moved_from is not None and moved_from != record.tour_id:
            await calc_average_ratings(self.session, moved_from)

    async def after_delete(self, record: Review) -> None:
        await calc_average_ratings(self.session, record.tour_id)


class BookingRepository(SQLModelRepository[Booking]):
    model = Booking

    def attach_related(self, statement: Select, expand: Iterable[str] = ()) -> Select:
        return statement.options(selectinload(Booking.user), selectinload(Booking.tour))

    async def before_save(self, record: Booking, changes: Dict[str, Any], is_new: bool) -> None:
        if is_new or "tour_id" in changes:
            if await self.session.get(Tour, record.tour_id) is None:
                raise NotFound("No tour found with that ID")
        if is_new or "user_id" in changes:
            if await self.session.get(User, record.user_id) is None:
                raise NotFound("No user found with that ID")

    async def find_for_user(self, user_id: UUID) -> Sequence[Booking]:
        statement = self.attach_related(
            select(Booking).where(Booking.user_id == user_id).order_by(Booking.created_at.desc())
        )
        return await self.find_many(statement)
