"""Extension support for the Aquila interpreter.

An extension is a Python file defining ``aquila_register(ext)``. It receives an
:class:`ExtensionAPI` and may add builtins, subscribe to interpreter events and
install rules that run every N logged steps. ``.aqx`` pointer files list
extension paths, one per line.
"""

from __future__ import annotations

import hashlib
import importlib.util
import os
import sys
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Sequence


EXTENSION_API_VERSION = 1

EVENTS = (
    "program_start",
    "program_end",
    "before_instruction",
    "after_instruction",
    "before_call",
    "after_call",
    "on_error",
    "on_change",
)

StepHandler = Callable[[Any, "StepContext"], None]


class AquilaExtensionError(Exception):
    pass


@dataclass(frozen=True)
class ExtensionMetadata:
    name: str
    version: str = "0.0.0"
    requires_api: int = EXTENSION_API_VERSION


@dataclass(frozen=True)
class StepContext:
    step_index: int
    rule: str
    location: Any  # SourceLocation | None
    extra: Optional[Dict[str, Any]]


@dataclass(frozen=True)
class EventHandler:
    priority: int
    handler: Callable[..., None]
    ext_name: str


@dataclass(frozen=True)
class StepRule:
    name: str
    every_n: int
    handler: StepHandler
    ext_name: str


@dataclass(frozen=True)
class BuiltinSpec:
    """A builtin contributed by an extension, registered when an interpreter is built."""

    name: str
    min_args: int
    max_args: Optional[int]
    impl: Callable[..., Any]
    doc: str = ""
    ext_name: str = ""


@dataclass
class HookRegistry:
    _events: Dict[str, List[EventHandler]] = field(default_factory=dict)
    _step_rules: List[StepRule] = field(default_factory=list)

    def on_event(self, event: str, handler: Callable[..., None], *, priority: int, ext_name: str) -> None:
        if event not in EVENTS:
            raise AquilaExtensionError(f"Unknown event '{event}' (expected one of: {', '.join(EVENTS)})")
        handlers = self._events.setdefault(event, [])
        handlers.append(EventHandler(priority=priority, handler=handler, ext_name=ext_name))
        # Stable: equal priorities keep registration order.
        handlers.sort(key=lambda entry: -entry.priority)

    def emit(self, event: str, *args: Any, **kwargs: Any) -> None:
        for entry in self._events.get(event, ()):
            entry.handler(*args, **kwargs)

    def add_step_rule(self, *, name: str, every_n: int, handler: StepHandler, ext_name: str) -> None:
        if every_n < 1:
            raise AquilaExtensionError(f"every_n_steps for '{name}' must be >= 1, got {every_n}")
        self._step_rules.append(StepRule(name=name, every_n=every_n, handler=handler, ext_name=ext_name))

    def after_step(self, interpreter: Any, ctx: StepContext) -> None:
        for rule in self._step_rules:
            if ctx.step_index % rule.every_n == 0:
                rule.handler(interpreter, ctx)


@dataclass
class RuntimeServices:
    metadata: List[ExtensionMetadata] = field(default_factory=list)
    hook_registry: HookRegistry = field(default_factory=HookRegistry)
    builtins: List[BuiltinSpec] = field(default_factory=list)


class ExtensionAPI:
    """The object handed to ``aquila_register``."""

    def __init__(self, *, services: RuntimeServices, ext_name: str) -> None:
        self._services = services
        self._ext_name = ext_name

    @property
    def name(self) -> str:
        return self._ext_name

    def metadata(self, *, name: str, version: str = "0.0.0", requires_api: int = EXTENSION_API_VERSION) -> None:
        if requires_api > EXTENSION_API_VERSION:
            raise AquilaExtensionError(
                f"Extension '{name}' requires API {requires_api}, host supports {EXTENSION_API_VERSION}"
            )
        self._services.metadata.append(ExtensionMetadata(name=name, version=version, requires_api=requires_api))

    def register_builtin(
        self,
        name: str,
        min_args: int,
        max_args: Optional[int],
        impl: Callable[..., Any],
        *,
        doc: str = "",
    ) -> None:
        if not name:
            raise AquilaExtensionError("Builtin name must be non-empty")
        for existing in self._services.builtins:
            if existing.name == name:
                raise AquilaExtensionError(f"Builtin '{name}' is already provided by extension '{existing.ext_name}'")
        self._services.builtins.append(
            BuiltinSpec(
                name=name,
                min_args=int(min_args),
                max_args=None if max_args is None else int(max_args),
                impl=impl,
                doc=doc,
                ext_name=self._ext_name,
            )
        )

    def builtin(self, name: str, min_args: int, max_args: Optional[int] = None, *, doc: str = ""):
        """Decorator form of :meth:`register_builtin`."""

        def deco(fn: Callable[..., Any]) -> Callable[..., Any]:
            self.register_builtin(name, min_args, max_args, fn, doc=doc or (fn.__doc__ or "").strip())
            return fn

        return deco

    def on_event(self, event: str, handler: Optional[Callable[..., None]] = None, *, priority: int = 0):
        def subscribe(fn: Callable[..., None]) -> Callable[..., None]:
            self._services.hook_registry.on_event(event, fn, priority=priority, ext_name=self._ext_name)
            return fn

        return subscribe if handler is None else subscribe(handler)

    def every_n_steps(self, every_n: int, handler: Optional[StepHandler] = None, *, name: str = ""):
        def install(fn: StepHandler) -> StepHandler:
            rule_name = name or getattr(fn, "__name__", "step_rule")
            self._services.hook_registry.add_step_rule(name=rule_name, every_n=every_n, handler=fn, ext_name=self._ext_name)
            return fn

        return install if handler is None else install(handler)


def _unique_module_name(path: str) -> str:
    stem = os.path.splitext(os.path.basename(path))[0]
    digest = hashlib.sha256(os.path.abspath(path).encode("utf-8")).hexdigest()[:12]
    cleaned = "".join(ch if ch.isalnum() else "_" for ch in stem)
    return f"aquila_ext_{cleaned}_{digest}"


def load_extension_module(path: str) -> Any:
    if not os.path.isfile(path):
        raise AquilaExtensionError(f"Extension not found: {path}")
    spec = importlib.util.spec_from_file_location(_unique_module_name(path), path)
    if spec is None or spec.loader is None:
        raise AquilaExtensionError(f"Failed to load extension module: {path}")
    module = importlib.util.module_from_spec(spec)

    # Extensions may import modules that sit next to them.
    ext_dir = os.path.dirname(os.path.abspath(path))
    sys.path.insert(0, ext_dir)
    try:
        spec.loader.exec_module(module)
    except AquilaExtensionError:
        raise
    except Exception as exc:
        raise AquilaExtensionError(f"Extension {path} failed to import: {exc}") from exc
    finally:
        if ext_dir in sys.path:
            sys.path.remove(ext_dir)
    return module


def read_aqx(pointer_file: str) -> List[str]:
    """Read a pointer file listing one extension path per line."""
    if not os.path.isfile(pointer_file):
        raise AquilaExtensionError(f".aqx file not found: {pointer_file}")
    base_dir = os.path.dirname(os.path.abspath(pointer_file))
    with open(pointer_file, "r", encoding="utf-8") as handle:
        entries = [raw.split("#", 1)[0].strip() for raw in handle]
    return [entry if os.path.isabs(entry) else os.path.join(base_dir, entry) for entry in entries if entry]


def gather_extension_paths(paths: Sequence[str]) -> List[str]:
    expanded: List[str] = []
    for path in paths:
        expanded.extend(read_aqx(path) if path.lower().endswith(".aqx") else [path])
    return [os.path.abspath(path) for path in expanded]


def build_default_services() -> RuntimeServices:
    return RuntimeServices()


def load_runtime_services(paths: Sequence[str], services: Optional[RuntimeServices] = None) -> RuntimeServices:
    """Load every extension in ``paths`` into ``services`` (a fresh set by default)."""
    services = services or build_default_services()
    for path in gather_extension_paths(paths):
        module = load_extension_module(path)
        api_version = getattr(module, "AQUILA_EXTENSION_API_VERSION", EXTENSION_API_VERSION)
        if api_version != EXTENSION_API_VERSION:
            raise AquilaExtensionError(
                f"Extension {path} requires API {api_version}, host supports {EXTENSION_API_VERSION}"
            )
        register = getattr(module, "aquila_register", None)
        if not callable(register):
            raise AquilaExtensionError(f"Extension {path} must define callable aquila_register(ext)")
        ext_name = str(getattr(module, "AQUILA_EXTENSION_NAME", os.path.splitext(os.path.basename(path))[0]))
        register(ExtensionAPI(services=services, ext_name=ext_name))
    return services
