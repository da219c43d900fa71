"""
Generic list/get/create/update/delete handlers.

``handler_factory`` binds the read and write schemas of one resource; the
handlers then work against any ``Repository`` without knowing which entity
sits behind it.
"""
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Type
from uuid import UUID

import structlog
from fastapi import Response, status
from pydantic import BaseModel
from sqlalchemy import inspect as sa_inspect

from tourbook.api.deps import RequestContext
from tourbook.api.schemas import APIModel
from tourbook.core.api_features import APIFeatures, FieldProjection
from tourbook.core.errors import NotFound
from tourbook.db.repository import Repository

logger = structlog.get_logger(__name__)

NOT_FOUND_MESSAGE = "No document found with that ID"


def record_to_dict(record: Any) -> Dict[str, Any]:
    """Column values plus whichever declared relations were actually loaded."""
    data = {column.key: getattr(record, column.key) for column in record.__table__.columns}
    unloaded = sa_inspect(record).unloaded
    for name in getattr(record, "relation_fields", ()):
        if name in unloaded:
            continue
        related = getattr(record, name)
        if related is None:
            data[name] = None
        elif isinstance(related, (list, tuple)):
            data[name] = [record_to_dict(item) for item in related if item is not None]
        else:
            data[name] = record_to_dict(related)
    return data


def serialize(record: Any, read_schema: Type[BaseModel]) -> Dict[str, Any]:
    return read_schema.model_validate(record_to_dict(record)).model_dump(
        mode="json", by_alias=True, exclude_unset=True
    )


def envelope(data: Any, **extra: Any) -> Dict[str, Any]:
    return {"status": "success", **extra, "data": data}


@dataclass
class ResourceHandlers:
    read_schema: Type[BaseModel]
    create_schema: Type[APIModel]
    update_schema: Type[APIModel]
    get_expand: tuple = ()

    def serialize(self, record: Any, projection: Optional[FieldProjection] = None) -> Dict[str, Any]:
        document = serialize(record, self.read_schema)
        return projection.apply(document) if projection else document

    async def list(
        self,
        repository: Repository,
        context: RequestContext,
        pre_filter: Optional[Mapping[str, Any]] = None,
    ) -> Dict[str, Any]:
        features = APIFeatures(repository.base_query(pre_filter), context.query, repository.model).all()
        records = await repository.find_many(features.statement)
        documents = [self.serialize(record, features.projection) for record in records]
        return envelope(
            {"data": documents},
            requestedAt=context.requested_at.isoformat(),
            results=len(documents),
        )

    async def get_one(
        self, repository: Repository, record_id: UUID, expand: Optional[Iterable[str]] = None
    ) -> Dict[str, Any]:
        expand = self.get_expand if expand is None else tuple(expand)
        record = await repository.find_by_id(record_id, expand)
        if record is None:
            raise NotFound(NOT_FOUND_MESSAGE)
        return envelope({"data": self.serialize(record)})

    async def create(self, repository: Repository, payload: Mapping[str, Any]) -> Dict[str, Any]:
        data = self.create_schema.model_validate(dict(payload)).to_record_data()
        record = await repository.create(data)
        logger.info("document_created", model=repository.model.__name__, id=str(record.id))
        return envelope({"data": self.serialize(record)})

    async def update(
        self, repository: Repository, record_id: UUID, payload: Mapping[str, Any]
    ) -> Dict[str, Any]:
        data = self.update_schema.model_validate(dict(payload)).to_record_data()
        record = await repository.update_by_id(record_id, data)
        if record is None:
            raise NotFound(NOT_FOUND_MESSAGE)
        logger.info("document_updated", model=repository.model.__name__, id=str(record_id))
        return envelope({"data": self.serialize(record)})

    async def delete(self, repository: Repository, record_id: UUID) -> Response:
        if not await repository.delete_by_id(record_id):
            raise NotFound(NOT_FOUND_MESSAGE)
        logger.info("document_deleted", model=repository.model.__name__, id=str(record_id))
        return Response(status_code=status.HTTP_204_NO_CONTENT)


def handler_factory(
    read_schema: Type[BaseModel],
    create_schema: Type[APIModel],
    update_schema: Type[APIModel],
    get_expand: Iterable[str] = (),
) -> ResourceHandlers:
    return ResourceHandlers(read_schema, create_schema, update_schema, tuple(get_expand))


def serialize_many(records: Iterable[Any], read_schema: Type[BaseModel]) -> List[Dict[str, Any]]:
    return [serialize(record, read_schema) for record in records]
