from abc import ABC
from typing import Any, Generic, List, Optional, Type, TypeVar

from pydantic import BaseModel
from sqlalchemy.orm import Session

T = TypeVar("T")
SchemaType = TypeVar("SchemaType", bound=BaseModel)


class BaseRepository(Generic[T, SchemaType], ABC):
    """
    모든 리포지토리의 베이스 클래스 - Pydantic 응답 보장

    리포지토리는 flush 까지만 수행하고, commit/rollback 은 작업 단위를
    소유한 서비스가 결정합니다.
    """

    def __init__(
        self, model_class: Type[T], schema_class: Type[SchemaType], db: Session
    ):
        self.model_class = model_class
        self.schema_class = schema_class
        self.db = db

    def _to_schema(self, model_instance: Any) -> Optional[SchemaType]:
        """SQLAlchemy 모델을 Pydantic 스키마로 변환"""
        if model_instance is None:
            return None
        try:
            return self.schema_class.model_validate(model_instance)
        except Exception as e:
            raise ValueError(
                f"Failed to convert {type(model_instance).__name__} to "
                f"{self.schema_class.__name__}: {e}"
            ) from e

    def _to_schemas(self, model_instances: List[Any]) -> List[SchemaType]:
        return [
            schema
            for schema in (self._to_schema(instance) for instance in model_instances)
            if schema is not None
        ]

    def add(self, instance: T) -> T:
        """새 레코드 추가 (flush 만 수행, 제약 위반은 호출자에게 전파)"""
        self.db.add(instance)
        self.db.flush()
        return instance
