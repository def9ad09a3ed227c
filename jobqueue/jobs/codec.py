"""
Payload codec: turns an executable unit into a JSON handler blob and back.

The top-level document is a tagged variant::

    {"!object": "package.module:ClassName", "fields": {...}}
    {"!struct": "package.module:RecordName", "fields": {...}}

``!object`` payloads are plain instances rebuilt without calling ``__init__``;
``!struct`` payloads are dataclasses or NamedTuples rebuilt through their
constructor. Both resolve their type the same way: registry lookup, then an
attribute walk over already-imported modules, then one ``attempt_to_load``
retry, then ``DeserializationError``.
"""

import dataclasses
import importlib
import inspect
import json
import logging
import sys
from datetime import date, datetime, timedelta
from enum import Enum
from typing import Any

from jobqueue.core.exceptions import DeserializationError, InvalidJobError
from jobqueue.core.registries import TypeRegistry, type_registry
from jobqueue.jobs.performable import ModelRef, is_model_instance

logger = logging.getLogger(__name__)


class PayloadTag(str, Enum):
    """Payload shapes a handler document can take."""

    OBJECT = "object"
    STRUCT = "struct"

    @property
    def key(self) -> str:
        return f"!{self.value}"


class TypeResolver:
    """Maps stored type names to classes and back."""

    def __init__(self, registry: TypeRegistry | None = None):
        self.registry = registry if registry is not None else type_registry

    def type_name(self, cls: type) -> str:
        registered = self.registry.name_for(cls)
        if registered is not None:
            return registered
        if "<locals>" in cls.__qualname__:
            raise InvalidJobError(
                f"{cls.__qualname__} is defined inside a function and cannot be "
                "loaded by a worker; define it at module level"
            )
        return f"{cls.__module__}:{cls.__qualname__}"

    def lookup(self, name: str) -> type | None:
        """Find a class without importing anything."""
        try:
            return self.registry.get(name)
        except KeyError:
            pass

        module_name, sep, qualname = name.partition(":")
        if not sep:
            return None
        module = sys.modules.get(module_name)
        if module is None:
            return None

        found: Any = module
        for part in qualname.split("."):
            found = getattr(found, part, None)
            if found is None:
                return None
        return found if isinstance(found, type) else None

    def attempt_to_load(self, name: str) -> bool:
        """
        Try to make ``name`` resolvable, e.g. by importing its module.

        Returns True when something was loaded and a second lookup is worth
        trying. Subclasses can override this to plug in other loaders.
        """
        module_name, sep, _ = name.partition(":")
        if not sep or not module_name:
            return False
        try:
            importlib.import_module(module_name)
        except ImportError as e:
            logger.debug(
                "Could not import payload module",
                extra={"type_name": name, "error": str(e)},
            )
            return False
        return True

    def resolve(self, name: str, tag: PayloadTag | str) -> type:
        tag_value = tag.value if isinstance(tag, PayloadTag) else tag
        cls = self.lookup(name)
        if cls is None and self.attempt_to_load(name):
            cls = self.lookup(name)
        if cls is None:
            raise DeserializationError(name, tag_value)
        return cls


def _is_struct(value: Any) -> bool:
    if isinstance(value, type):
        return False
    if dataclasses.is_dataclass(value):
        return True
    return isinstance(value, tuple) and hasattr(type(value), "_fields")


class PayloadCodec:
    """Encodes executable units to JSON handler blobs and decodes them back."""

    def __init__(self, resolver: TypeResolver | None = None):
        self.resolver = resolver or TypeResolver()

    # Encoding

    def encode(self, unit: Any) -> str:
        scalar = (type, str, bytes, int, float, bool, list, dict, tuple, set)
        if unit is None or (isinstance(unit, scalar) and not _is_struct(unit)):
            raise InvalidJobError(
                f"Cannot encode {type(unit).__qualname__} as a job payload"
            )
        return json.dumps(self._dump_instance(unit), sort_keys=True)

    def _dump_instance(self, value: Any) -> dict[str, Any]:
        if _is_struct(value):
            if dataclasses.is_dataclass(value):
                fields = {
                    f.name: getattr(value, f.name) for f in dataclasses.fields(value)
                }
            else:
                fields = value._asdict()
            tag = PayloadTag.STRUCT
        else:
            fields = self._instance_fields(value)
            tag = PayloadTag.OBJECT

        return {
            tag.key: self.resolver.type_name(type(value)),
            "fields": {key: self._dump(item) for key, item in fields.items()},
        }

    def _instance_fields(self, value: Any) -> dict[str, Any]:
        if hasattr(value, "__dict__"):
            return dict(vars(value))
        slots: dict[str, Any] = {}
        for klass in type(value).__mro__:
            for slot in getattr(klass, "__slots__", ()):
                if hasattr(value, slot):
                    slots[slot] = getattr(value, slot)
        return slots

    def _dump(self, value: Any) -> Any:
        if isinstance(value, Enum):
            return {
                "!enum": self.resolver.type_name(type(value)),
                "value": self._dump(value.value),
            }
        if value is None or isinstance(value, (bool, int, float, str)):
            return value
        if isinstance(value, datetime):
            return {"!datetime": value.isoformat()}
        if isinstance(value, date):
            return {"!date": value.isoformat()}
        if isinstance(value, timedelta):
            return {"!timedelta": value.total_seconds()}
        if isinstance(value, type):
            return {"!class": self.resolver.type_name(value)}
        if isinstance(value, ModelRef):
            return {"!model": self.resolver.type_name(value.model), "id": self._dump(value.id)}
        if is_model_instance(value):
            return self._dump(ModelRef.for_instance(value))
        if _is_struct(value):
            return self._dump_instance(value)
        if isinstance(value, list):
            return {"!list": [self._dump(item) for item in value]}
        if isinstance(value, tuple):
            return {"!tuple": [self._dump(item) for item in value]}
        if isinstance(value, (set, frozenset)):
            return {"!set": [self._dump(item) for item in value]}
        if isinstance(value, dict):
            for key in value:
                if not isinstance(key, str):
                    raise InvalidJobError(
                        f"Job payload dict keys must be strings, got {type(key).__qualname__}"
                    )
            return {"!dict": {key: self._dump(item) for key, item in value.items()}}
        if inspect.isroutine(value) or inspect.ismodule(value):
            raise InvalidJobError(
                f"Cannot encode {value!r} in a job payload; use send_later for method calls"
            )
        if hasattr(value, "__dict__") or hasattr(type(value), "__slots__"):
            return self._dump_instance(value)
        raise InvalidJobError(
            f"Cannot encode {type(value).__qualname__} in a job payload"
        )

    # Decoding

    def decode(self, blob: str) -> Any:
        try:
            document = json.loads(blob)
        except (TypeError, ValueError) as e:
            raise DeserializationError(
                "", PayloadTag.OBJECT.value, reason=f"handler is not valid JSON ({e})"
            ) from e

        if not isinstance(document, dict) or not (
            PayloadTag.OBJECT.key in document or PayloadTag.STRUCT.key in document
        ):
            raise DeserializationError(
                "", PayloadTag.OBJECT.value, reason="handler is not an object or struct payload"
            )
        return self._load(document)

    def _load(self, value: Any) -> Any:
        if isinstance(value, list):
            return [self._load(item) for item in value]
        if not isinstance(value, dict):
            return value

        if PayloadTag.OBJECT.key in value:
            return self._load_object(value[PayloadTag.OBJECT.key], value.get("fields") or {})
        if PayloadTag.STRUCT.key in value:
            return self._load_struct(value[PayloadTag.STRUCT.key], value.get("fields") or {})
        if "!list" in value:
            return [self._load(item) for item in value["!list"]]
        if "!tuple" in value:
            return tuple(self._load(item) for item in value["!tuple"])
        if "!set" in value:
            return {self._load(item) for item in value["!set"]}
        if "!dict" in value:
            return {key: self._load(item) for key, item in value["!dict"].items()}
        if "!datetime" in value:
            return datetime.fromisoformat(value["!datetime"])
        if "!date" in value:
            return date.fromisoformat(value["!date"])
        if "!timedelta" in value:
            return timedelta(seconds=value["!timedelta"])
        if "!class" in value:
            return self.resolver.resolve(value["!class"], "class")
        if "!model" in value:
            model = self.resolver.resolve(value["!model"], "model")
            return ModelRef(model=model, id=self._load(value.get("id")))
        if "!enum" in value:
            enum_cls = self.resolver.resolve(value["!enum"], "enum")
            return enum_cls(self._load(value.get("value")))
        return {key: self._load(item) for key, item in value.items()}

    def _load_fields(self, fields: dict[str, Any]) -> dict[str, Any]:
        return {key: self._load(item) for key, item in fields.items()}

    def _load_object(self, type_name: str, fields: dict[str, Any]) -> Any:
        cls = self.resolver.resolve(type_name, PayloadTag.OBJECT)
        instance = cls.__new__(cls)
        for key, item in self._load_fields(fields).items():
            try:
                object.__setattr__(instance, key, item)
            except AttributeError as e:
                raise DeserializationError(
                    type_name,
                    PayloadTag.OBJECT.value,
                    reason=f"cannot restore attribute '{key}' on {type_name}",
                ) from e
        return instance

    def _load_struct(self, type_name: str, fields: dict[str, Any]) -> Any:
        cls = self.resolver.resolve(type_name, PayloadTag.STRUCT)
        values = self._load_fields(fields)
        try:
            if dataclasses.is_dataclass(cls):
                init_names = {f.name for f in dataclasses.fields(cls) if f.init}
                instance = cls(**{k: v for k, v in values.items() if k in init_names})
                for key, item in values.items():
                    if key not in init_names:
                        object.__setattr__(instance, key, item)
                return instance
            return cls(**values)
        except TypeError as e:
            raise DeserializationError(
                type_name,
                PayloadTag.STRUCT.value,
                reason=f"{type_name} rejected its stored fields ({e})",
            ) from e


default_codec = PayloadCodec()
