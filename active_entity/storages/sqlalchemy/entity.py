import inflection
from sqlalchemy import Boolean, Column, DateTime, Integer
from sqlalchemy.orm import declared_attr

from active_entity.entity import ActiveRecord


class SqlAlchemyEntity(ActiveRecord):
    """Declarative mixin: combine with a declarative base, e.g. `class User(SqlAlchemyEntity, Base)`."""

    @declared_attr
    def __tablename__(cls) -> str:
        return inflection.pluralize(inflection.underscore(cls.__name__))

    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=True)
    is_deleted = Column(Boolean, nullable=False, default=False)
    sort = Column(Integer, nullable=False, default=0)
