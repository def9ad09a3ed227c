from typing import Generic, TypeVar

# Base registry implementation
T = TypeVar("T")


class Registry(Generic[T]):
    """Generic registry for pluggable implementations."""

    def __init__(self, name: str):
        self.name = name
        self._implementations: dict[str, T] = {}
        self._frozen = False

    def register(self, name: str, implementation: T) -> None:
        """Register an implementation with a given name."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot register '{name}' in {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations[name] = implementation

    def get(self, name: str) -> T:
        """Get an implementation by name."""
        if name not in self._implementations:
            raise KeyError(
                f"No {self.name.lower()} implementation registered with name: {name}"
            )
        return self._implementations[name]

    def list(self) -> list[str]:
        """List all registered implementation names."""
        return list(self._implementations.keys())

    def unregister(self, name: str) -> None:
        """Remove an implementation; missing names are ignored."""
        if self._frozen:
            raise RuntimeError(
                f"Cannot unregister '{name}' from {self.name.lower()} registry: "
                "registry is frozen in production mode"
            )
        self._implementations.pop(name, None)

    def freeze(self) -> None:
        """Freeze the registry to prevent further modifications."""
        self._frozen = True

    def is_frozen(self) -> bool:
        """Check if the registry is frozen."""
        return self._frozen


class TypeRegistry(Registry[type]):
    """
    Registry of payload classes known under an explicit name.

    Classes registered here are serialized under their registered name instead
    of their ``module:QualName`` path, which lets bare names survive module
    moves.
    """

    def __init__(self):
        super().__init__("Type")

    def name_for(self, cls: type) -> str | None:
        """Return the registered name of a class, if any."""
        for name, registered in self._implementations.items():
            if registered is cls:
                return name
        return None


# Global registry instances (singletons)
type_registry = TypeRegistry()
