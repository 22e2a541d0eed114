from datetime import datetime, timezone
from typing import Annotated, Any, ClassVar, Tuple

from bson import ObjectId
from pydantic import AfterValidator, BaseModel, Field, ConfigDict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """MongoDB hands back naive UTC datetimes; make them aware."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


UtcDatetime = Annotated[datetime, AfterValidator(as_utc)]


class PyObjectId(ObjectId):
    @classmethod
    def __get_pydantic_core_schema__(cls, source_type: Any, handler: Any):
        from pydantic_core import core_schema

        return core_schema.no_info_plain_validator_function(cls.validate)

    @classmethod
    def validate(cls, value: Any) -> ObjectId:
        if isinstance(value, ObjectId):
            return value
        if isinstance(value, str) and ObjectId.is_valid(value):
            return ObjectId(value)
        raise ValueError("Invalid ObjectId")


class MongoModel(BaseModel):
    """
    Base for stored documents.

    ``version`` is bumped on every write and checked on every balance
    update, so two requests racing on the same document cannot both win.
    ``amount_fields`` names the amount fields the codec encrypts at rest.
    """

    amount_fields: ClassVar[Tuple[str, ...]] = ()

    id: PyObjectId = Field(default_factory=PyObjectId, alias="_id")
    created_at: UtcDatetime = Field(default_factory=_utcnow)
    updated_at: UtcDatetime = Field(default_factory=_utcnow)
    version: int = 0

    model_config = ConfigDict(
        populate_by_name=True,
        arbitrary_types_allowed=True,
        from_attributes=True,
        use_enum_values=True
    )


class OwnedModel(MongoModel):
    owner_id: PyObjectId
