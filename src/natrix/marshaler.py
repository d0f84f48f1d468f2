"""Marshalers turn pydantic models into message payloads and back."""

from typing import Any, Protocol, TypeVar

from pydantic import BaseModel

T = TypeVar("T")


class Marshaler(Protocol):
    """Converts objects to bytes and back."""

    def marshal(self, obj: Any) -> bytes:
        """Serialize an object to bytes."""
        ...

    def unmarshal(self, data: bytes, type_: type[T]) -> T:
        """Deserialize bytes into an instance of ``type_``."""
        ...

    def name(self, obj_or_type: Any) -> str:
        """Name used to identify the type on the wire."""
        ...


class PydanticMarshaler:
    """JSON marshaler for pydantic models."""

    def marshal(self, obj: Any) -> bytes:
        if not isinstance(obj, BaseModel):
            msg = f"Expected BaseModel, got {type(obj).__name__}"
            raise TypeError(msg)
        return obj.model_dump_json().encode()

    def unmarshal(self, data: bytes, type_: type[T]) -> T:
        if not (isinstance(type_, type) and issubclass(type_, BaseModel)):
            msg = f"Expected BaseModel subclass, got {type_!r}"
            raise TypeError(msg)
        return type_.model_validate_json(data)  # type: ignore[return-value]

    def name(self, obj_or_type: Any) -> str:
        if isinstance(obj_or_type, type):
            return obj_or_type.__name__
        return type(obj_or_type).__name__
