"""hook.py - Installs call/return instrumentation around eligible methods.

Installing a method replaces its entry in the owner's ``__dict__`` (a class or
a module) with a wrapper built by ``functools.wraps``. Every invocation of the
wrapper then performs, in order:

    before   Emit a MethodCall capturing the receiver, the bound arguments
             and the definition site, and note a start time.
    invoke   Call the original function with the original arguments.
    after    On every exit path, emit a MethodReturn whose ``parent_id`` is
             the call's id, capturing the return value or the raised
             exception chain. Then return the original value, or re-raise the
             original exception unchanged.

The call event and start time are locals of the wrapper frame, never shared
state, so concurrent calls on different threads pair up by id.

What gets hooked:
    - functions defined in a class body (instance methods), ``classmethod``
      and ``staticmethod`` objects, and module-level functions;
    - methods of mixins are wrapped once, in the mixin's own ``__dict__``,
      so every subclass that inherits them is covered;
    - ``async def`` functions and generator functions, whose wrappers are
      themselves coroutine and generator functions. They are recorded while
      they run, not when the coroutine or generator object is created.

What does not:
    - properties, slots and other descriptors;
    - async generator functions;
    - anything rejected by ``callmap.exclusions`` (constructors, accessors,
      special methods);
    - functions assigned to a single instance (``obj.method = f``). Python
      offers no hook for per-instance attribute assignment, so these calls
      are a known non-capture rather than an error.

Usage::

    from callmap import Config, Hook

    hook = Hook(Config.from_yaml("callmap.yml"))
    hook.enable()          # hook loaded modules and future imports
"""

import functools
import importlib.abc
import inspect
import logging
import sys
import threading
import time
from types import ModuleType
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .config import Config
from .context import ContextManager
from .errors import AlreadyHooked, Ineligible
from .event import NO_RECEIVER, MethodCall, emit_call, emit_return
from .exclusions import BUILTIN_EXCLUSIONS, ExclusionRule, exclusion_reason
from .identity import display_path
from .tracer import tracing

logger = logging.getLogger(__name__)

INSTANCE = "instance"
CLASS = "class"
STATIC = "static"
FUNCTION = "function"

# Attribute set on every wrapper, pointing back at its HookedMethod.
HOOKED_ATTR = "__callmap_hooked__"

EXCLUDED_BY_CONFIG = "excluded by configuration"

_ctx = ContextManager()

_registry: Dict[Tuple[Any, str], "HookedMethod"] = {}
_registry_lock = threading.Lock()


def _owner_name(owner: Any) -> str:
    if isinstance(owner, ModuleType):
        return owner.__name__
    return getattr(owner, "__qualname__", None) or repr(owner)


class MethodDescriptor:
    """Where a method lives and how it is bound.

    Attributes:
        owner: The class or module whose ``__dict__`` holds the method.
        name (str): The attribute name.
        attribute: The raw ``__dict__`` entry (function, classmethod or
            staticmethod object).
        function: The underlying plain function.
        kind (str): One of ``INSTANCE``, ``CLASS``, ``STATIC``, ``FUNCTION``.
    """

    __slots__ = ("owner", "name", "attribute", "function", "kind")

    def __init__(self, owner: Any, name: str, attribute: Any, function: Callable, kind: str) -> None:
        self.owner = owner
        self.name = name
        self.attribute = attribute
        self.function = function
        self.kind = kind

    @classmethod
    def of(cls, owner: Any, name: str) -> "MethodDescriptor":
        """Classify ``owner.__dict__[name]``.

        Raises:
            Ineligible: If the attribute is missing from the owner's own
                ``__dict__`` or is not a Python function.
        """
        target = f"{_owner_name(owner)}.{name}"
        try:
            attribute = vars(owner)[name]
        except (KeyError, TypeError):
            raise Ineligible(target, "not defined by this owner") from None

        if isinstance(attribute, staticmethod):
            kind, function = STATIC, attribute.__func__
        elif isinstance(attribute, classmethod):
            kind, function = CLASS, attribute.__func__
        elif inspect.isfunction(attribute):
            kind = FUNCTION if isinstance(owner, ModuleType) else INSTANCE
            function = attribute
        else:
            raise Ineligible(target, f"{type(attribute).__name__} is not a function")

        if not inspect.isfunction(function):
            raise Ineligible(target, f"{type(function).__name__} is not a function")
        if inspect.isasyncgenfunction(function):
            raise Ineligible(target, "async generator function")
        return cls(owner, name, attribute, function, kind)

    @property
    def is_static(self) -> bool:
        return self.kind != INSTANCE

    @property
    def defined_class(self) -> str:
        return _owner_name(self.owner)

    @property
    def source_path(self) -> str:
        return self.function.__code__.co_filename

    @property
    def lineno(self) -> int:
        return self.function.__code__.co_firstlineno

    def __repr__(self) -> str:  # pragma: no cover
        return f"MethodDescriptor({self.defined_class}.{self.name}, {self.kind})"


def _parameter_kind(param: inspect.Parameter) -> str:
    if param.kind is inspect.Parameter.VAR_POSITIONAL:
        return "rest"
    if param.kind is inspect.Parameter.VAR_KEYWORD:
        return "keyrest"
    if param.kind is inspect.Parameter.KEYWORD_ONLY:
        return "key"
    if param.default is inspect.Parameter.empty:
        return "req"
    return "opt"


class HookedMethod:
    """A method that has been wrapped.

    Identity is ``(defined_class, method_id, is_static)``. Instances are
    created by ``install()`` and do not change afterwards.
    """

    __slots__ = (
        "descriptor",
        "defined_class",
        "method_id",
        "is_static",
        "path",
        "lineno",
        "_signature",
    )

    def __init__(self, descriptor: MethodDescriptor) -> None:
        self.descriptor = descriptor
        self.defined_class = descriptor.defined_class
        self.method_id = descriptor.name
        self.is_static = descriptor.is_static
        self.path = display_path(descriptor.source_path)
        self.lineno = descriptor.lineno
        try:
            self._signature: Optional[inspect.Signature] = inspect.signature(descriptor.function)
        except (TypeError, ValueError):
            self._signature = None

    @property
    def function(self) -> Callable:
        return self.descriptor.function

    @property
    def location(self) -> str:
        return f"{self.path}:{self.lineno}"

    def _receiver(self, args: tuple) -> Any:
        kind = self.descriptor.kind
        if kind == STATIC:
            return self.descriptor.owner
        if kind in (INSTANCE, CLASS) and args:
            return args[0]
        return NO_RECEIVER

    def _parameters(self, args: tuple, kwargs: dict) -> List[Tuple[str, str, Any]]:
        sig = self._signature
        if sig is None:
            return []
        try:
            bound = sig.bind(*args, **kwargs)
        except TypeError:
            # The call itself is about to fail with the same TypeError.
            return []
        bound.apply_defaults()
        skip_first = self.descriptor.kind in (INSTANCE, CLASS)
        parameters = []
        for index, (name, value) in enumerate(bound.arguments.items()):
            if skip_first and index == 0:
                continue
            parameters.append((name, _parameter_kind(sig.parameters[name]), value))
        return parameters

    def before_hook(
        self, args: tuple, kwargs: dict, sessions: Optional[Tuple[Any, ...]] = None
    ) -> Optional[MethodCall]:
        """Emit the call event to ``sessions``. Returns None if capture failed."""
        with _ctx.suspended():
            try:
                return emit_call(
                    self._receiver(args),
                    self._parameters(args, kwargs),
                    self.defined_class,
                    self.method_id,
                    (self.path, self.lineno),
                    self.is_static,
                    method=self,
                    sessions=sessions,
                )
            except Exception:
                logger.exception("Failed to record call to %s.%s", self.defined_class, self.method_id)
                return None

    def after_hook(
        self,
        call_event: MethodCall,
        start_time: float,
        return_value: Any = None,
        exception: Optional[BaseException] = None,
        sessions: Optional[Tuple[Any, ...]] = None,
    ) -> None:
        """Emit the return event closing ``call_event`` to the same ``sessions``."""
        elapsed = time.perf_counter() - start_time
        with _ctx.suspended():
            try:
                emit_return(call_event.id, elapsed, return_value, exception, sessions)
            except Exception:
                logger.exception("Failed to record return from %s.%s", self.defined_class, self.method_id)

    def _key(self) -> Tuple[str, str, bool]:
        return (self.defined_class, self.method_id, self.is_static)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, HookedMethod):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def __repr__(self) -> str:
        sep = "." if self.is_static else "#"
        return f"HookedMethod({self.defined_class}{sep}{self.method_id})"


def _make_wrapper(hooked: HookedMethod) -> Callable:
    function = hooked.function

    if inspect.iscoroutinefunction(function):
        # The call is recorded when the coroutine starts running and the
        # return when it finishes, so elapsed covers every await.
        @functools.wraps(function)
        async def wrapper(*args, **kwargs):
            if not tracing.enabled or _ctx.is_suspended():
                return await function(*args, **kwargs)

            sessions = tracing.sessions
            call_event = hooked.before_hook(args, kwargs, sessions)
            if call_event is None:
                return await function(*args, **kwargs)
            start_time = time.perf_counter()
            try:
                return_value = await function(*args, **kwargs)
            except BaseException as exc:
                hooked.after_hook(call_event, start_time, exception=exc, sessions=sessions)
                raise
            hooked.after_hook(call_event, start_time, return_value=return_value, sessions=sessions)
            return return_value

    elif inspect.isgeneratorfunction(function):
        # Recorded from the first next() until the generator is exhausted;
        # the return value is the generator's own ``return`` value.
        @functools.wraps(function)
        def wrapper(*args, **kwargs):
            if not tracing.enabled or _ctx.is_suspended():
                return (yield from function(*args, **kwargs))

            sessions = tracing.sessions
            call_event = hooked.before_hook(args, kwargs, sessions)
            if call_event is None:
                return (yield from function(*args, **kwargs))
            start_time = time.perf_counter()
            try:
                return_value = yield from function(*args, **kwargs)
            except BaseException as exc:
                hooked.after_hook(call_event, start_time, exception=exc, sessions=sessions)
                raise
            hooked.after_hook(call_event, start_time, return_value=return_value, sessions=sessions)
            return return_value

    else:

        @functools.wraps(function)
        def wrapper(*args, **kwargs):
            if not tracing.enabled or _ctx.is_suspended():
                return function(*args, **kwargs)

            sessions = tracing.sessions
            call_event = hooked.before_hook(args, kwargs, sessions)
            if call_event is None:
                return function(*args, **kwargs)
            start_time = time.perf_counter()
            try:
                return_value = function(*args, **kwargs)
            except BaseException as exc:
                hooked.after_hook(call_event, start_time, exception=exc, sessions=sessions)
                raise
            hooked.after_hook(call_event, start_time, return_value=return_value, sessions=sessions)
            return return_value

    setattr(wrapper, HOOKED_ATTR, hooked)
    return wrapper


def _rebind(descriptor: MethodDescriptor, wrapper: Callable) -> Any:
    if descriptor.kind == STATIC:
        return staticmethod(wrapper)
    if descriptor.kind == CLASS:
        return classmethod(wrapper)
    return wrapper


def install(
    descriptor: MethodDescriptor,
    config: Optional[Config] = None,
    exclusions: Sequence[ExclusionRule] = BUILTIN_EXCLUSIONS,
) -> HookedMethod:
    """Wrap the method described by ``descriptor``.

    Args:
        descriptor: The method to wrap, see ``MethodDescriptor.of``.
        config: When given, the method must also be selected by it.
        exclusions: Built-in rules that veto hooking regardless of config.

    Returns:
        The registry entry for the newly wrapped method.

    Raises:
        AlreadyHooked: If the method is already wrapped.
        Ineligible: If ``config`` or an exclusion rule rejects the method.
    """
    key = (descriptor.owner, descriptor.name)
    target = f"{descriptor.defined_class}.{descriptor.name}"
    if key in _registry or hasattr(descriptor.function, HOOKED_ATTR):
        raise AlreadyHooked(descriptor.defined_class, descriptor.name)
    if config is not None and not config.eligible(
        descriptor.defined_class, descriptor.name, descriptor.source_path, descriptor.is_static
    ):
        raise Ineligible(target, EXCLUDED_BY_CONFIG)
    reason = exclusion_reason(descriptor, exclusions)
    if reason:
        raise Ineligible(target, reason)

    hooked = HookedMethod(descriptor)
    with _registry_lock:
        if key in _registry:
            raise AlreadyHooked(descriptor.defined_class, descriptor.name)
        setattr(descriptor.owner, descriptor.name, _rebind(descriptor, _make_wrapper(hooked)))
        _registry[key] = hooked
    logger.debug("Hooked %r at %s", hooked, hooked.location)
    return hooked


def uninstall(target: Union[HookedMethod, MethodDescriptor]) -> None:
    """Restore the original attribute of a hooked method.

    Uninstalling a method that is not hooked does nothing.
    """
    descriptor = target.descriptor if isinstance(target, HookedMethod) else target
    key = (descriptor.owner, descriptor.name)
    with _registry_lock:
        hooked = _registry.pop(key, None)
        if hooked is None:
            return
        setattr(descriptor.owner, descriptor.name, hooked.descriptor.attribute)
    logger.debug("Unhooked %r", hooked)


def unhook_all() -> None:
    """Uninstall every hooked method, returning the process to baseline."""
    for hooked in hooked_methods():
        uninstall(hooked)


def hooked_methods() -> List[HookedMethod]:
    """Return every currently hooked method, in installation order."""
    with _registry_lock:
        return list(_registry.values())


def is_hooked(owner: Any, name: str) -> bool:
    return (owner, name) in _registry


class _HookingLoader(importlib.abc.Loader):
    """Delegating loader that hooks a module right after it executes."""

    def __init__(self, loader: importlib.abc.Loader, hook: "Hook") -> None:
        self._loader = loader
        self._hook = hook

    def create_module(self, spec):
        return self._loader.create_module(spec)

    def exec_module(self, module: ModuleType) -> None:
        self._loader.exec_module(module)
        self._hook.hook_module(module)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._loader, name)


class _HookFinder(importlib.abc.MetaPathFinder):
    """``sys.meta_path`` entry that routes configured modules through _HookingLoader."""

    def __init__(self, hook: "Hook") -> None:
        self._hook = hook

    def find_spec(self, fullname, path, target=None):
        spec = None
        for finder in sys.meta_path:
            if isinstance(finder, _HookFinder) or not hasattr(finder, "find_spec"):
                continue
            spec = finder.find_spec(fullname, path, target)
            if spec is not None:
                break
        if spec is None or spec.loader is None or not hasattr(spec.loader, "exec_module"):
            return spec
        if self._hook.config.package_for(spec.origin) is not None:
            spec.loader = _HookingLoader(spec.loader, self._hook)
        return spec


class Hook:
    """Applies a Config to modules and classes.

    Attributes:
        config (Config): Decides which methods are selected.
        exclusions: Rules vetoing selected methods, see ``callmap.exclusions``.
    """

    def __init__(
        self, config: Config, exclusions: Sequence[ExclusionRule] = BUILTIN_EXCLUSIONS
    ) -> None:
        self.config = config
        self.exclusions = tuple(exclusions)
        self._finder: Optional[_HookFinder] = None

    def install(self, descriptor: MethodDescriptor) -> HookedMethod:
        return install(descriptor, self.config, self.exclusions)

    def _try_install(self, owner: Any, name: str) -> List[HookedMethod]:
        try:
            return [self.install(MethodDescriptor.of(owner, name))]
        except Ineligible as exc:
            if exc.reason != EXCLUDED_BY_CONFIG:
                logger.debug("Skipping %s: %s", exc.target, exc.reason)
            return []
        except AlreadyHooked:
            return []

    def hook_class(self, cls: type) -> List[HookedMethod]:
        """Hook the methods defined in ``cls`` and in classes nested inside it."""
        hooked = []
        prefix = cls.__qualname__ + "."
        for name, attr in list(vars(cls).items()):
            if inspect.isclass(attr):
                if attr.__module__ == cls.__module__ and attr.__qualname__.startswith(prefix):
                    hooked.extend(self.hook_class(attr))
            elif isinstance(attr, (staticmethod, classmethod)) or inspect.isfunction(attr):
                hooked.extend(self._try_install(cls, name))
        return hooked

    def hook_module(self, module: ModuleType) -> List[HookedMethod]:
        """Hook the classes and functions a module defines, if configured.

        Names the module merely imports from elsewhere are left alone; they
        are hooked through their own defining module.
        """
        if self.config.package_for(getattr(module, "__file__", None)) is None:
            return []
        if module.__name__ == "callmap" or module.__name__.startswith("callmap."):
            return []
        hooked = []
        for name, attr in list(vars(module).items()):
            if getattr(attr, "__module__", None) != module.__name__:
                continue
            if inspect.isclass(attr):
                if attr.__qualname__ == attr.__name__:
                    hooked.extend(self.hook_class(attr))
            elif inspect.isfunction(attr):
                hooked.extend(self._try_install(module, name))
        if hooked:
            logger.info("Hooked %d methods in %s", len(hooked), module.__name__)
        return hooked

    def hook_loaded_modules(self) -> List[HookedMethod]:
        hooked = []
        for module in list(sys.modules.values()):
            if isinstance(module, ModuleType):
                hooked.extend(self.hook_module(module))
        return hooked

    def enable_import_hook(self) -> None:
        """Hook configured modules as they are imported from now on."""
        if self._finder is None:
            self._finder = _HookFinder(self)
            sys.meta_path.insert(0, self._finder)

    def disable_import_hook(self) -> None:
        if self._finder is not None:
            try:
                sys.meta_path.remove(self._finder)
            except ValueError:
                pass
            self._finder = None

    def enable(self) -> List[HookedMethod]:
        """Hook every loaded configured module and every later import."""
        hooked = self.hook_loaded_modules()
        self.enable_import_hook()
        return hooked

    def disable(self) -> None:
        """Stop hooking new imports and restore every hooked method."""
        self.disable_import_hook()
        unhook_all()
