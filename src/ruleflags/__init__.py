from __future__ import annotations
import logging
import os
import time
import json
import jsonschema
import threading
from abc import abstractmethod
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, ClassVar, TypeVar

import httpx
from prometheus_client import Counter, Histogram


logger = logging.getLogger(__name__)

Value = str | bool | int
DictConfig = dict[str, Any]
T = TypeVar("T", str, bool, int)


class FlagsetError(Exception):
    pass


class FlagsetDecodeError(FlagsetError):
    pass


class FlagsetSourceError(FlagsetError):
    pass


# Expression model.
#
# Every node is an immutable value object. Literal nodes double as the result
# values produced by the evaluator.


@dataclass(frozen=True, slots=True)
class String:
    value: str


@dataclass(frozen=True, slots=True)
class Integer:
    value: int


@dataclass(frozen=True, slots=True)
class Boolean:
    value: bool


TRUE = Boolean(True)
FALSE = Boolean(False)
ZERO = Integer(0)


@dataclass(frozen=True, slots=True)
class ContextRef:
    key: str


@dataclass(frozen=True, slots=True)
class ExprRef:
    key: str


@dataclass(frozen=True, slots=True)
class And:
    items: tuple[Expression, ...] = ()


@dataclass(frozen=True, slots=True)
class Or:
    items: tuple[Expression, ...] = ()


@dataclass(frozen=True, slots=True)
class Eq:
    items: tuple[Expression, ...] = ()


@dataclass(frozen=True, slots=True)
class Sum:
    items: tuple[Expression, ...] = ()


@dataclass(frozen=True, slots=True)
class Concat:
    items: tuple[Expression, ...] = ()


@dataclass(frozen=True, slots=True)
class Not:
    item: Expression


@dataclass(frozen=True, slots=True)
class Negate:
    item: Expression


@dataclass(frozen=True, slots=True)
class GreaterThan:
    left: Expression
    right: Expression


@dataclass(frozen=True, slots=True)
class LessThan:
    left: Expression
    right: Expression


@dataclass(frozen=True, slots=True)
class Mod:
    left: Expression
    right: Expression


Literal = String | Integer | Boolean
Expression = Literal | ContextRef | ExprRef | And | Or | Eq | Sum | Concat | Not | Negate | GreaterThan | LessThan | Mod


def literal(value: Value | Literal) -> Literal:
    """
    Convert a python value into a literal node. Only str, int and bool are
    representable. bool is checked first since it is a subclass of int.
    """
    if isinstance(value, (String, Integer, Boolean)):
        return value
    if isinstance(value, bool):
        return TRUE if value else FALSE
    if isinstance(value, int):
        return Integer(value)
    if isinstance(value, str):
        return String(value)
    raise TypeError(f"value must be a string, int or bool, not {type(value).__name__}")


def is_true(result: Literal) -> bool:
    return isinstance(result, Boolean) and result.value is True


def matches(a: Literal, b: Literal) -> bool:
    """
    Two results match only if they are of the same kind and carry the same
    value. Strings compare case-insensitively.
    """
    match a, b:
        case String(x), String(y):
            return x.casefold() == y.casefold()
        case Integer(x), Integer(y):
            return x == y
        case Boolean(x), Boolean(y):
            return x == y
        case _:
            return False


def _int_value(result: Literal) -> int | None:
    if isinstance(result, Integer):
        return result.value
    return None


def _truncating_mod(left: int, right: int) -> int:
    # Python's % floors; the sign of the result must follow the dividend.
    r = abs(left) % abs(right)
    return -r if left < 0 else r


# Context.


class Context:
    """
    A scope of literal values available to expressions through ContextRef.

    Contexts form a chain: a child holds a reference to its parent which is only
    ever used for lookups. A typical setup is a long lived server context with
    values such as the environment and a short lived child per request.
    """

    __slots__ = ("_parent", "_data")

    def __init__(self, parent: Context | None = None, data: Mapping[str, Value | Literal] | None = None):
        self._parent = parent
        self._data: dict[str, Literal] = {}
        if data:
            self.update(data)

    @staticmethod
    def create(**values: Value) -> Context:
        return Context(None, values)

    @property
    def parent(self) -> Context | None:
        return self._parent

    def resolve(self, key: str) -> Literal:
        """
        Look up the key walking from this context to the root. Unknown keys
        resolve to Boolean(false).
        """
        ctx: Context | None = self
        while ctx is not None:
            value = ctx._data.get(key)
            if value is not None:
                return value
            ctx = ctx._parent
        return FALSE

    def set(self, key: str, value: Value | Literal) -> Context:
        if not isinstance(key, str):
            raise TypeError(f"context key must be a string, not {type(key).__name__}")
        self._data[key] = literal(value)
        return self

    def update(self, values: Mapping[str, Value | Literal]) -> Context:
        for k, v in values.items():
            self.set(k, v)
        return self

    def child(self) -> Context:
        return Context(self)

    def __contains__(self, key: str) -> bool:
        ctx: Context | None = self
        while ctx is not None:
            if key in ctx._data:
                return True
            ctx = ctx._parent
        return False


# Evaluator.


class Evaluator:
    """
    Reduces expressions to literal results against a context and a library of
    named expressions.

    Evaluation is total: operand kind mismatches degrade to the operator's
    default value and unknown nodes evaluate to Boolean(false). Boolean
    combinators evaluate every operand, there is no short-circuiting.

    An evaluator tracks the chain of named expressions being resolved and is
    not meant to be shared between threads.
    """

    __slots__ = ("_context", "_library", "_resolving")

    def __init__(self, context: Context, library: Mapping[str, Expression] | None = None):
        self._context = context
        self._library = library if library is not None else {}
        self._resolving: set[str] = set()

    @staticmethod
    def is_true(result: Literal) -> bool:
        return is_true(result)

    def evaluate(self, e: Expression) -> Literal:
        match e:
            case String() | Integer() | Boolean():
                return e
            case ContextRef(key):
                return self.evaluate(self._context.resolve(key))
            case ExprRef(key):
                return self._evaluate_ref(key)
            case And(items):
                results = [self.evaluate(i) for i in items]
                return TRUE if all(is_true(r) for r in results) else FALSE
            case Or(items):
                results = [self.evaluate(i) for i in items]
                return TRUE if any(is_true(r) for r in results) else FALSE
            case Eq(items):
                if not items:
                    return TRUE
                first = self.evaluate(items[0])
                rest = [self.evaluate(i) for i in items[1:]]
                return TRUE if all(matches(first, r) for r in rest) else FALSE
            case GreaterThan(left, right):
                lv, rv = _int_value(self.evaluate(left)), _int_value(self.evaluate(right))
                if lv is None or rv is None:
                    return FALSE
                return literal(lv > rv)
            case LessThan(left, right):
                lv, rv = _int_value(self.evaluate(left)), _int_value(self.evaluate(right))
                if lv is None or rv is None:
                    return FALSE
                return literal(lv < rv)
            case Mod(left, right):
                lv, rv = _int_value(self.evaluate(left)), _int_value(self.evaluate(right))
                if lv is None or rv is None or rv == 0:
                    return ZERO
                return Integer(_truncating_mod(lv, rv))
            case Not(item):
                return FALSE if is_true(self.evaluate(item)) else TRUE
            case Negate(item):
                v = _int_value(self.evaluate(item))
                return ZERO if v is None else Integer(-v)
            case Sum(items):
                total = 0
                for i in items:
                    v = _int_value(self.evaluate(i))
                    if v is not None:
                        total += v
                return Integer(total)
            case Concat(items):
                parts = []
                for i in items:
                    r = self.evaluate(i)
                    parts.append(r.value if isinstance(r, String) else "")
                return String("".join(parts))
            case _:
                return FALSE

    def _evaluate_ref(self, key: str) -> Literal:
        e = self._library.get(key)
        if e is None:
            return FALSE
        if key in self._resolving:
            logger.warning("Circular expression reference to %r", key)
            return FALSE
        self._resolving.add(key)
        try:
            return self.evaluate(e)
        finally:
            self._resolving.discard(key)


# Variants, rules and flagsets.


@dataclass(frozen=True, slots=True)
class Variant:
    """
    A bundle of named, unevaluated expressions returned when a rule matches.
    """

    values: Mapping[str, Expression] = field(default_factory=dict)

    EMPTY: ClassVar[Variant]

    def __post_init__(self):
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))


Variant.EMPTY = Variant()


@dataclass(frozen=True, slots=True)
class VariantRef:
    """
    Reference to a variant in the flagset's shared variant table.
    """

    name: str

    def resolve(self, variants: Mapping[str, Variant]) -> Variant | None:
        return variants.get(self.name)


@dataclass(frozen=True, slots=True)
class InlineVariant:
    variant: Variant

    def resolve(self, variants: Mapping[str, Variant]) -> Variant | None:
        return self.variant


VariantTarget = VariantRef | InlineVariant


@dataclass(frozen=True, slots=True)
class Rule:
    condition: Expression
    target: VariantTarget


@dataclass(frozen=True, slots=True)
class Flagset:
    """
    The decoded set of variants, named expressions and per-flag rule lists.
    Flagsets are never mutated, a new one replaces the old one wholesale.
    """

    variants: Mapping[str, Variant] = field(default_factory=dict)
    expressions: Mapping[str, Expression] = field(default_factory=dict)
    rules: Mapping[str, tuple[Rule, ...]] = field(default_factory=dict)

    EMPTY: ClassVar[Flagset]

    def __post_init__(self):
        object.__setattr__(self, "variants", MappingProxyType(dict(self.variants)))
        object.__setattr__(self, "expressions", MappingProxyType(dict(self.expressions)))
        object.__setattr__(self, "rules", MappingProxyType({k: tuple(v) for k, v in self.rules.items()}))


Flagset.EMPTY = Flagset()


# Decoding.


def _decode_items(node: Any) -> tuple[Expression, ...]:
    # null items are dropped, anything else that isn't a node object decodes to
    # false via decode_expression.
    return tuple(decode_expression(i) for i in node if i is not None)


def decode_expression(node: Any) -> Expression:
    """
    Decode a single JSON expression node. The first recognized key wins, in
    this order:

    1. context, expr (string operand)
    2. eq, and, or, sum, concat (array of nodes)
    3. gt, lt, mod (object with left/right nodes)
    4. not, negate (node)
    5. string, integer, boolean (literal)

    A key whose value has the wrong JSON type is not recognized. Nodes that
    match no shape decode to Boolean(false).
    """
    if not isinstance(node, dict):
        return FALSE

    for key, cls in (("context", ContextRef), ("expr", ExprRef)):
        v = node.get(key)
        if isinstance(v, str):
            return cls(v)

    for key, cls in (("eq", Eq), ("and", And), ("or", Or), ("sum", Sum), ("concat", Concat)):
        v = node.get(key)
        if isinstance(v, list):
            return cls(_decode_items(v))

    for key, cls in (("gt", GreaterThan), ("lt", LessThan), ("mod", Mod)):
        v = node.get(key)
        if isinstance(v, dict):
            return cls(decode_expression(v.get("left")), decode_expression(v.get("right")))

    for key, cls in (("not", Not), ("negate", Negate)):
        v = node.get(key)
        if isinstance(v, dict):
            return cls(decode_expression(v))

    v = node.get("string")
    if isinstance(v, str):
        return String(v)
    v = node.get("integer")
    # JSON booleans load as python bools which are ints, and floats are not
    # part of the language.
    if isinstance(v, int) and not isinstance(v, bool):
        return Integer(v)
    v = node.get("boolean")
    if isinstance(v, bool):
        return literal(v)

    return FALSE


def _decode_variant(node: Any) -> Variant:
    if not isinstance(node, dict):
        return Variant.EMPTY
    return Variant({k: decode_expression(v) for k, v in node.items()})


def _decode_target(node: Any) -> VariantTarget:
    if isinstance(node, dict):
        name = node.get("variant")
        if isinstance(name, str):
            return VariantRef(name)
        inline = node.get("inline-variant")
        if isinstance(inline, dict):
            return InlineVariant(_decode_variant(inline))
    return InlineVariant(Variant.EMPTY)


def _decode_rules(node: Any) -> tuple[Rule, ...]:
    if not isinstance(node, list):
        return ()
    return tuple(
        Rule(decode_expression(r.get("when")), _decode_target(r.get("then")))
        for r in node
        if isinstance(r, dict)
    )


def _section(doc: DictConfig, name: str) -> dict[str, Any]:
    s = doc.get(name)
    return s if isinstance(s, dict) else {}


def decode(data: str | bytes | bytearray | Mapping[str, Any], strict: bool = False) -> Flagset:
    """
    Decode a JSON flagset document into a Flagset.

    Malformed content below the top level never fails the decode: sections of
    the wrong type are treated as empty and malformed nodes decode to
    Boolean(false). If the document itself is not valid JSON or not an object
    the result is Flagset.EMPTY, or FlagsetDecodeError is raised when strict is
    set. Documents nested too deeply to decode are treated the same way.
    """
    try:
        doc = data if isinstance(data, Mapping) else json.loads(data)
        if not isinstance(doc, Mapping):
            raise FlagsetDecodeError(f"flagset document must be an object, not {type(doc).__name__}")
        return Flagset(
            variants={k: _decode_variant(v) for k, v in _section(doc, "variants").items()},
            expressions={k: decode_expression(v) for k, v in _section(doc, "expressions").items()},
            rules={k: _decode_rules(v) for k, v in _section(doc, "rules").items()},
        )
    except FlagsetDecodeError as e:
        if strict:
            raise
        logger.warning("Invalid flagset document: %s", e)
        return Flagset.EMPTY
    except (ValueError, TypeError, RecursionError) as e:
        if strict:
            raise FlagsetDecodeError(f"invalid flagset document: {e}") from e
        logger.warning("Invalid flagset document: %s", e)
        return Flagset.EMPTY


# Flag resolution.


class FlagsetResolver:
    """
    Provides the current flagset. Implementations must return quickly and must
    never raise.
    """

    @abstractmethod
    def get_flagset(self) -> Flagset: ...


class StaticFlagsetResolver(FlagsetResolver):
    def __init__(self, flagset: Flagset):
        self._flagset = flagset

    def get_flagset(self) -> Flagset:
        return self._flagset


_prom_resolution_duration = Histogram(
    "ruleflags_variant_resolution_seconds",
    "Flag variant resolution duration in seconds",
    buckets=[1e-5, 1e-4, 1e-3, 1e-2, 1e-1, 1],
    labelnames=["flag", "matched"],
)


class FlagSession:
    """
    Resolves flags against one flagset and one context. Variant resolution is
    memoized per flag, including the absence of a match, so a session must not
    be reused across contexts. Sessions are cheap, create one per request.
    """

    __slots__ = ("_flagset", "_evaluator", "_cache")

    def __init__(self, flagset: Flagset, context: Context):
        self._flagset = flagset
        self._evaluator = Evaluator(context, flagset.expressions)
        self._cache: dict[str, Variant | None] = {}

    @property
    def flagset(self) -> Flagset:
        return self._flagset

    def evaluate(self, e: Expression) -> Literal:
        return self._evaluator.evaluate(e)

    def get_variant(self, flag: str) -> Variant | None:
        """
        Return the variant of the first rule of the flag whose condition is
        true. Returns None when no rule matches, and also when the matching rule
        references a shared variant that does not exist.
        """
        if flag in self._cache:
            return self._cache[flag]
        start = time.perf_counter()
        variant = None
        for rule in self._flagset.rules.get(flag, ()):
            if is_true(self._evaluator.evaluate(rule.condition)):
                variant = rule.target.resolve(self._flagset.variants)
                break
        # Unknown names come from callers, keep them out of the label set.
        if flag in self._flagset.rules:
            _prom_resolution_duration.labels(flag=flag, matched=str(variant is not None)).observe(time.perf_counter() - start)
        self._cache[flag] = variant
        return variant

    def _get_value(self, flag: str, variable: str, kind: type) -> Literal | None:
        variant = self.get_variant(flag)
        if variant is None:
            return None
        e = variant.values.get(variable)
        if e is None:
            return None
        result = self._evaluator.evaluate(e)
        return result if isinstance(result, kind) else None

    def get_string(self, flag: str, variable: str, default: str | None = None) -> str | None:
        r = self._get_value(flag, variable, String)
        return default if r is None else r.value

    def get_bool(self, flag: str, variable: str, default: bool | None = None) -> bool | None:
        r = self._get_value(flag, variable, Boolean)
        return default if r is None else r.value

    def get_int(self, flag: str, variable: str, default: int | None = None) -> int | None:
        r = self._get_value(flag, variable, Integer)
        return default if r is None else r.value

    def get(self, flag: str, variable: str, default: T) -> T:
        """
        Get the value of a variable of the variant resolved for the flag. The
        requested type is taken from the default. If the flag has no variant,
        the variable is missing or its value is of another type, the default is
        returned unchanged.
        """
        match default:
            case bool():
                return self.get_bool(flag, variable, default)  # type: ignore[return-value]
            case int():
                return self.get_int(flag, variable, default)  # type: ignore[return-value]
            case str():
                return self.get_string(flag, variable, default)  # type: ignore[return-value]
            case _:
                raise TypeError(f"default must be a string, int or bool, not {type(default).__name__}")


class FlagService:
    def __init__(self, resolver: FlagsetResolver):
        self._resolver = resolver

    def with_context(self, context: Context) -> FlagSession:
        """
        Bind the current flagset and the given context into a session. The
        flagset is captured once so all lookups in the session are consistent.
        """
        return FlagSession(self._resolver.get_flagset(), context)


# Settings.


with open(os.path.join(os.path.dirname(__file__), "settings_schema.json")) as f:
    _settings_schema = json.load(f)


def _validate_settings(c: DictConfig, definition: str):
    jsonschema.validate(c, {"$ref": f"#/$defs/{definition}", "$defs": _settings_schema["$defs"]})


class ResolverSettings:
    __slots__ = ("ttl_seconds", "retry_delay_seconds")

    def __init__(self, ttl_seconds: float = 120.0, retry_delay_seconds: float = 0.5):
        if ttl_seconds < 0 or retry_delay_seconds < 0:
            raise ValueError("ttl_seconds and retry_delay_seconds must not be negative")
        self.ttl_seconds = ttl_seconds
        self.retry_delay_seconds = retry_delay_seconds

    @staticmethod
    def from_dict(c: DictConfig) -> ResolverSettings:
        _validate_settings(c, "resolver")
        return ResolverSettings(**c)


class HttpSourceSettings:
    __slots__ = ("url", "api_key", "timeout_seconds")

    def __init__(self, url: str, api_key: str | None = None, timeout_seconds: float = 10.0):
        if not url:
            raise ValueError("url is required")
        self.url = url
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds

    @staticmethod
    def from_dict(c: DictConfig) -> HttpSourceSettings:
        _validate_settings(c, "http_source")
        return HttpSourceSettings(**c)


# Sources.


class FlagsetSource:
    """
    A slow source of raw flagset documents, typically fetched over the network.
    Failures are signalled by raising.
    """

    @abstractmethod
    def load_flagset(self) -> str | bytes: ...


API_KEY_HEADER = "X-API-Key"


class HttpFlagsetSource(FlagsetSource):
    """
    Fetches the flagset document with a GET request. Any transport error or
    non-2xx status is raised as FlagsetSourceError.
    """

    def __init__(self, settings: HttpSourceSettings, client: httpx.Client | None = None):
        if not settings.url:
            raise ValueError("url is required")
        self._settings = settings
        self._headers: dict[str, str] = {}
        if settings.api_key:
            self._headers[API_KEY_HEADER] = settings.api_key
        self._owns_client = client is None
        self._client = client if client is not None else httpx.Client(timeout=settings.timeout_seconds)

    def load_flagset(self) -> str:
        try:
            resp = self._client.get(self._settings.url, headers=self._headers)
            resp.raise_for_status()
        except httpx.HTTPError as e:
            raise FlagsetSourceError(f"failed to load flagset from {self._settings.url}: {e}") from e
        return resp.text

    def close(self):
        if self._owns_client:
            self._client.close()


# Caching.


@dataclass(frozen=True, slots=True)
class _Snapshot:
    flagset: Flagset
    expires_at: float


_prom_refresh_total = Counter(
    "ruleflags_refresh_total",
    "Number of flagset refreshes by outcome",
    labelnames=["outcome"],
)


class CachedFlagsetResolver(FlagsetResolver):
    """
    Serves the last successfully loaded flagset and refreshes it in the
    background when it is missing or expired. get_flagset never blocks on I/O:
    before the first successful load it returns Flagset.EMPTY, afterwards it
    returns the cached flagset even if it is stale.

    At most one refresh runs at a time. A failed refresh keeps the previous
    snapshot and holds off further attempts for retry_delay_seconds.
    get_flagset is thread-safe.
    """

    def __init__(
        self,
        source: FlagsetSource,
        settings: ResolverSettings | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._source = source
        self._settings = settings or ResolverSettings()
        self._clock = clock
        self._mu = threading.Lock()
        # Replaced as a whole, never mutated, so readers can't see a torn pair.
        self._snapshot: _Snapshot | None = None
        self._loading = False
        self._worker: threading.Thread | None = None

    @property
    def refresh_in_progress(self) -> bool:
        with self._mu:
            return self._loading

    def get_flagset(self) -> Flagset:
        snapshot = self._snapshot
        if snapshot is not None and snapshot.expires_at > self._clock():
            logger.debug("Returning cached flagset, %.1fs left", snapshot.expires_at - self._clock())
            return snapshot.flagset

        with self._mu:
            snapshot = self._snapshot
            if snapshot is not None and snapshot.expires_at > self._clock():
                return snapshot.flagset
            self._dispatch_refresh()

        if snapshot is None:
            logger.info("Flagset not loaded yet, returning empty flagset")
            return Flagset.EMPTY
        return snapshot.flagset

    def _dispatch_refresh(self):
        # Must be called with self._mu held.
        if self._loading:
            return
        worker = threading.Thread(target=self._refresh, name="ruleflags-refresh", daemon=True)
        try:
            worker.start()
        except RuntimeError:
            logger.exception("Error starting flagset refresh")
            return
        self._loading = True
        self._worker = worker

    def _refresh(self):
        snapshot = None
        try:
            data = self._source.load_flagset()
            flagset = decode(data, strict=True)
            snapshot = _Snapshot(flagset, self._clock() + self._settings.ttl_seconds)
            _prom_refresh_total.labels(outcome="success").inc()
        except Exception:
            logger.exception("Error loading flagset")
            _prom_refresh_total.labels(outcome="failure").inc()
            time.sleep(self._settings.retry_delay_seconds)
        finally:
            with self._mu:
                if snapshot is not None:
                    self._snapshot = snapshot
                self._loading = False

    def wait_for_refresh(self, timeout: float | None = None) -> bool:
        """
        Wait for the in-flight refresh, if any, to finish. Returns False if it
        is still running after timeout. Useful to warm the cache at startup.
        """
        with self._mu:
            worker = self._worker
        if worker is None:
            return True
        worker.join(timeout)
        return not worker.is_alive()
