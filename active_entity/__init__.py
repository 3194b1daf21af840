from active_entity.entity import ActiveRecord, BaseEntity
from active_entity.orm import ActiveEntityError, Orm, Query, Repository, TableMetadata
from active_entity.runtime import (
    AlreadyInitializedError,
    Runtime,
    UninitializedError,
    configure_entity,
    default_runtime,
    get_orm,
    initialize,
)
from active_entity.tracking import FIRST_ELEMENT, STRICT, FirstElementPolicy, StrictPolicy, Trackable, track_result


__all__ = [
    "ActiveEntityError",
    "ActiveRecord",
    "AlreadyInitializedError",
    "BaseEntity",
    "FIRST_ELEMENT",
    "FirstElementPolicy",
    "Orm",
    "Query",
    "Repository",
    "Runtime",
    "STRICT",
    "StrictPolicy",
    "TableMetadata",
    "Trackable",
    "UninitializedError",
    "configure_entity",
    "default_runtime",
    "get_orm",
    "initialize",
    "track_result",
]
