"""
Database Schemas for the Store Directory

MongoDB collections are defined below using Pydantic models. Each class name is
converted to lowercase for the collection name (User -> "user").

We will use these collections:
- user: registered users, their credentials, reset tokens and hearted stores
- store: stores with tags and a geo point location
- review: user reviews for stores

The *Input models validate what callers hand to the repositories; the stored
documents add ids, timestamps and derived fields on top of them.
"""

from typing import Any, Dict, List, Literal, Optional, Type, TypeVar

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic import ValidationError as PydanticValidationError

from errors import ValidationError

ModelT = TypeVar("ModelT", bound=BaseModel)


class Location(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    type: Literal["Point"] = "Point"
    coordinates: List[float] = Field(..., min_length=2, max_length=2, description="[lng, lat]")
    address: str = Field(..., min_length=1)

    @field_validator("type", mode="before")
    @classmethod
    def _force_point(cls, v: Any) -> str:
        return "Point"

    @field_validator("coordinates")
    @classmethod
    def _check_range(cls, v: List[float]) -> List[float]:
        lng, lat = v
        if not (-180 <= lng <= 180 and -90 <= lat <= 90):
            raise ValueError("coordinates must be [lng, lat] within valid ranges")
        return v


class StoreInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    location: Location
    photo: Optional[str] = None
    author: Optional[str] = Field(None, description="Only checked against the current author, never written")

    @field_validator("tags")
    @classmethod
    def _dedupe_tags(cls, v: List[str]) -> List[str]:
        seen: List[str] = []
        for tag in v:
            tag = tag.strip()
            if tag and tag not in seen:
                seen.append(tag)
        return seen


class ReviewInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    rating: int = Field(..., ge=1, le=5)
    text: str = Field(..., min_length=1)


class RegisterInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    name: str = Field(..., min_length=1)
    password: str = Field(..., min_length=1)

    @field_validator("email", mode="before")
    @classmethod
    def _lowercase(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class AccountInput(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    email: EmailStr
    name: str = Field(..., min_length=1)

    @field_validator("email", mode="before")
    @classmethod
    def _lowercase(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v


class User(BaseModel):
    name: str
    email: EmailStr
    password_hash: str = Field(..., description="pbkdf2_sha256 hash, salt embedded")
    hearts: List[Any] = Field(default_factory=list, description="Store ObjectIds")


# Messages shown to users for the commonest mistakes, keyed by field path
FIELD_MESSAGES = {
    StoreInput: {
        ("name",): "Please enter a store name!",
        ("location",): "You must supply a location!",
        ("location", "address"): "You must supply an address!",
        ("location", "coordinates"): "You must supply coordinates!",
    },
    ReviewInput: {
        ("rating",): "Rating must be a whole number from 1 to 5",
        ("text",): "Please enter a review!",
    },
    RegisterInput: {
        ("email",): "Invalid Email Address",
        ("name",): "Please Supply a Name",
        ("password",): "Password Cannot be Blank!",
    },
    AccountInput: {
        ("email",): "Invalid Email Address",
        ("name",): "Please Supply a Name",
    },
}


def parse(model: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    """Validate `data` against `model`, raising our ValidationError with readable messages."""
    known = FIELD_MESSAGES.get(model, {})
    try:
        return model.model_validate(data)
    except PydanticValidationError as exc:
        messages = []
        for err in exc.errors():
            loc = tuple(str(part) for part in err["loc"])
            message = known.get(loc) or f"{'.'.join(loc)}: {err['msg']}"
            if message not in messages:
                messages.append(message)
        raise ValidationError("; ".join(messages))
