from beanie import PydanticObjectId
from bson.errors import InvalidId

from app.core.exceptions import NotFoundError


def object_id(value: str | PydanticObjectId, what: str = "Resource") -> PydanticObjectId:
    """Parse a path/str id; malformed ids read as not found."""
    if isinstance(value, PydanticObjectId):
        return value
    try:
        return PydanticObjectId(value)
    except (InvalidId, TypeError, ValueError):
        raise NotFoundError(f"{what} not found")
