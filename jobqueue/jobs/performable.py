"""
Deferred method calls.

A ``PerformableMethod`` captures a receiver, a method name and arguments so
that ``receiver.method(*args, **kwargs)`` can run later inside a worker. It is
a dataclass, so the payload codec stores it with the struct tag like any other
record-shaped payload.
"""

import inspect
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import inspect as sa_inspect
from sqlalchemy.ext.asyncio import AsyncSession

from jobqueue.core.exceptions import DeserializationError, InvalidJobError


@dataclass(frozen=True)
class ModelRef:
    """Durable reference to a persisted ORM row: its mapped class and primary key."""

    model: type
    id: Any

    @classmethod
    def for_instance(cls, instance: Any) -> "ModelRef":
        state = sa_inspect(instance, raiseerr=False)
        if state is None or not hasattr(state, "identity"):
            raise InvalidJobError(
                f"{type(instance).__qualname__} is not a mapped instance"
            )
        identity = state.identity
        if identity is None:
            raise InvalidJobError(
                f"{type(instance).__qualname__} must be persisted before it can be "
                "referenced by a job"
            )
        if len(identity) != 1:
            raise InvalidJobError(
                f"{type(instance).__qualname__} has a composite primary key; "
                "only single-column keys can be referenced"
            )
        return cls(model=type(instance), id=identity[0])

    async def load(self, session: AsyncSession) -> Any:
        instance = await session.get(self.model, self.id)
        if instance is None:
            raise DeserializationError(
                f"{self.model.__qualname__}#{self.id}",
                "model",
                reason=f"{self.model.__qualname__} with id {self.id!r} no longer exists",
            )
        return instance


def is_model_instance(value: Any) -> bool:
    """True for instances of SQLAlchemy mapped classes."""
    if isinstance(value, type):
        return False
    state = sa_inspect(value, raiseerr=False)
    return state is not None and hasattr(state, "identity")


@dataclass
class PerformableMethod:
    receiver: Any
    method: str
    args: list[Any] = field(default_factory=list)
    kwargs: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def build(
        cls, receiver: Any, method: str, *args: Any, **kwargs: Any
    ) -> "PerformableMethod":
        """Wrap a call, swapping persisted ORM instances for ``ModelRef``s."""
        target = receiver if isinstance(receiver, type) else type(receiver)
        if not callable(getattr(target, method, None)) and not callable(
            getattr(receiver, method, None)
        ):
            raise InvalidJobError(
                f"{target.__qualname__} does not respond to {method}",
                {"method": method},
            )
        if is_model_instance(receiver):
            receiver = ModelRef.for_instance(receiver)
        return cls(
            receiver=receiver,
            method=method,
            args=[_dump_arg(arg) for arg in args],
            kwargs={key: _dump_arg(value) for key, value in kwargs.items()},
        )

    @property
    def display_name(self) -> str:
        if isinstance(self.receiver, type):
            return f"{self.receiver.__qualname__}.{self.method}"
        if isinstance(self.receiver, ModelRef):
            return f"{self.receiver.model.__qualname__}#{self.method}"
        return f"{type(self.receiver).__qualname__}#{self.method}"

    async def perform(self, session: AsyncSession | None = None) -> Any:
        receiver = await _load_arg(self.receiver, session)
        args = [await _load_arg(arg, session) for arg in self.args]
        kwargs = {key: await _load_arg(value, session) for key, value in self.kwargs.items()}

        result = getattr(receiver, self.method)(*args, **kwargs)
        if inspect.isawaitable(result):
            result = await result
        return result


def _dump_arg(value: Any) -> Any:
    if is_model_instance(value):
        return ModelRef.for_instance(value)
    return value


async def _load_arg(value: Any, session: AsyncSession | None) -> Any:
    if not isinstance(value, ModelRef):
        return value
    if session is None:
        raise DeserializationError(
            f"{value.model.__qualname__}#{value.id}",
            "model",
            reason="a database session is required to load model references",
        )
    return await value.load(session)
