"""
Adaptors - named collections of operation factories.

An adaptor is any Python module whose public names include functions
decorated with @operation. Job scripts use them by alias:

    http.get("/patients", params={"since": S.cursor})

The registry maps aliases to Adaptor namespaces and loads adaptor modules by
import path. Every factory is treated the same way, whichever adaptor it
comes from.
"""

import importlib
import logging
from types import ModuleType
from typing import TYPE_CHECKING, Any, Callable, Optional, Union

from opflow.operation import Operation, is_operation_factory

if TYPE_CHECKING:
    from opflow.config import OpflowConfig

logger = logging.getLogger(__name__)


class Adaptor:
    """
    A namespace of operation factories.

    Usage:
        common = Adaptor.from_module(opflow.adaptors.common)
        step = common.assign("total", 3)
    """

    def __init__(self, name: str, operations: dict[str, Callable[..., Operation]]):
        for attr, factory in operations.items():
            if not is_operation_factory(factory):
                raise TypeError(f"Adaptor '{name}': '{attr}' is not an operation factory")
        self.name = name
        self._operations = dict(operations)

    @classmethod
    def from_module(cls, module: ModuleType, name: Optional[str] = None) -> "Adaptor":
        """Collect the public operation factories of ``module``."""
        operations = {
            attr: value
            for attr, value in vars(module).items()
            if not attr.startswith("_") and is_operation_factory(value)
        }
        return cls(name or module.__name__.rsplit(".", 1)[-1], operations)

    @property
    def operations(self) -> dict[str, Callable[..., Operation]]:
        return dict(self._operations)

    def list_operations(self) -> list[str]:
        return sorted(self._operations)

    def __getattr__(self, attr: str) -> Callable[..., Operation]:
        if attr.startswith("__") or attr == "_operations":
            raise AttributeError(attr)
        try:
            return self._operations[attr]
        except KeyError:
            raise AttributeError(
                f"Adaptor '{self.name}' has no operation '{attr}'. "
                f"Available: {self.list_operations()}"
            ) from None

    def __contains__(self, attr: str) -> bool:
        return attr in self._operations

    def __dir__(self) -> list[str]:
        return sorted(set(super().__dir__()) | set(self._operations))

    def __repr__(self) -> str:
        return f"Adaptor(name={self.name!r}, operations={self.list_operations()})"


class AdaptorRegistry:
    """
    Registry of adaptors by alias.

    Usage:
        registry = AdaptorRegistry.create_default()
        registry.load("my_project.adaptors.http", alias="http")

        namespace = registry.namespace()   # {"common": ..., "http": ...}
    """

    def __init__(self) -> None:
        """Initialize an empty adaptor registry."""
        self._adaptors: dict[str, Adaptor] = {}

    def register(self, alias: str, adaptor: Union[Adaptor, ModuleType]) -> Adaptor:
        """
        Register an adaptor under ``alias``.

        Args:
            alias: Name job scripts use for the adaptor
            adaptor: An Adaptor, or a module to build one from

        Returns:
            The registered Adaptor
        """
        if isinstance(adaptor, ModuleType):
            adaptor = Adaptor.from_module(adaptor, name=alias)
        if not isinstance(adaptor, Adaptor):
            raise TypeError(f"Cannot register {type(adaptor).__name__} as adaptor '{alias}'")
        if not alias.isidentifier():
            raise ValueError(f"Adaptor alias must be a Python identifier: {alias!r}")
        self._adaptors[alias] = adaptor
        logger.debug(f"Registered adaptor '{alias}' ({len(adaptor.list_operations())} operations)")
        return adaptor

    def get(self, alias: str) -> Adaptor:
        """
        Get the adaptor registered under ``alias``.

        Raises:
            KeyError: If no adaptor is registered under this alias
        """
        if alias not in self._adaptors:
            registered = list(self._adaptors.keys())
            raise KeyError(
                f"No adaptor registered under alias: {alias}. "
                f"Registered: {registered}"
            )
        return self._adaptors[alias]

    def has(self, alias: str) -> bool:
        return alias in self._adaptors

    def list_adaptors(self) -> list[str]:
        """
        List all registered aliases.

        Returns:
            List of registered adaptor aliases
        """
        return list(self._adaptors.keys())

    def load(self, module_path: str, alias: Optional[str] = None) -> Adaptor:
        """
        Import an adaptor module and register it.

        Args:
            module_path: Dotted import path of the module
            alias: Alias to register under (defaults to the module's last
                path component)

        Returns:
            The registered Adaptor

        Raises:
            ImportError: If the module cannot be imported
        """
        module = importlib.import_module(module_path)
        alias = alias or module_path.rsplit(".", 1)[-1]
        return self.register(alias, module)

    def namespace(self) -> dict[str, Any]:
        """Return a mapping of alias -> Adaptor for job scripts."""
        return dict(self._adaptors)

    def factories(self) -> dict[str, Callable[..., Operation]]:
        """Return every registered factory by qualified name ("alias.op")."""
        return {
            f"{alias}.{op_name}": factory
            for alias, adaptor in self._adaptors.items()
            for op_name, factory in adaptor.operations.items()
        }

    @classmethod
    def create_default(cls) -> "AdaptorRegistry":
        """
        Create a registry with the built-in ``common`` adaptor.

        Returns:
            Configured AdaptorRegistry
        """
        from opflow.adaptors import common

        registry = cls()
        registry.register("common", common)
        return registry

    @classmethod
    def from_config(cls, config: "OpflowConfig") -> "AdaptorRegistry":
        """Create the default registry plus the adaptors listed in ``config``."""
        registry = cls.create_default()
        for alias, module_path in config.adaptors.items():
            registry.load(module_path, alias=alias)
        return registry
