"""
Request fingerprinting - structural equality and stable keys for requests.

Two requests are the same logical request when url and method match, params
and headers match as unordered multi-value maps, bodies hash identically under
a key-sorted JSON serialization, and context/flag fields are equal.
"""

import dataclasses
import json
from collections import Counter
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence
from urllib.parse import quote

from pydantic import BaseModel

ParamScalar = str | int | float | bool
ParamValue = ParamScalar | Sequence[ParamScalar]
BodyEqual = Callable[[Any, Any], bool]


@dataclass
class TransferCache:
    """Which response headers may be carried along with a transferred response."""

    include_headers: list[str] | None = None


@dataclass
class RequestDescriptor:
    """Structured description of an outgoing request."""

    url: str
    method: str = "GET"
    params: Mapping[str, ParamValue] | None = None
    headers: Mapping[str, str | Sequence[str]] | None = None
    body: Any = None
    context: Mapping[str, Any] | None = None
    with_credentials: bool | None = None
    report_progress: bool | None = None
    transfer_cache: bool | TransferCache | None = None

    def merge(self, **overrides: Any) -> "RequestDescriptor":
        """Return a copy with the given (non-None) fields replaced."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return dataclasses.replace(self, **changes)


def _to_jsonable(value: Any) -> Any:
    if isinstance(value, BaseModel):
        return value.model_dump(mode="json")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.asdict(value)
    if isinstance(value, (set, frozenset)):
        return sorted(value, key=repr)
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def stable_hash(*args: Any) -> str:
    """
    Generate a stable string hash from one or more values.

    Mapping keys are sorted recursively, so ``{"a": 1, "b": 2}`` and
    ``{"b": 2, "a": 1}`` produce the same hash.

        stable_hash("config", {"b": 2, "a": 1})
        # => '["config",{"a":1,"b":2}]'
    """
    return json.dumps(
        list(args),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=_to_jsonable,
    )


def _as_list(value: Any) -> list[Any]:
    if isinstance(value, (list, tuple)):
        return list(value)
    return [value]


def _multiset(values: list[Any]) -> Counter:
    return Counter(stable_hash(v) for v in values)


def _equal_multi_value_maps(
    a: Mapping[str, Any] | None,
    b: Mapping[str, Any] | None,
    normalize_key: Callable[[str], str] = str,
) -> bool:
    if not a and not b:
        return True
    if not a or not b:
        return False

    a_norm = {normalize_key(k): v for k, v in a.items()}
    b_norm = {normalize_key(k): v for k, v in b.items()}
    if a_norm.keys() != b_norm.keys():
        return False

    for key, a_value in a_norm.items():
        b_value = b_norm[key]
        if isinstance(a_value, (list, tuple)) or isinstance(b_value, (list, tuple)):
            a_list = _as_list(a_value)
            b_list = _as_list(b_value)
            if len(a_list) != len(b_list):
                return False
            if _multiset(a_list) != _multiset(b_list):
                return False
        elif a_value != b_value:
            return False
    return True


def equal_params(
    a: Mapping[str, ParamValue] | None, b: Mapping[str, ParamValue] | None
) -> bool:
    return _equal_multi_value_maps(a, b)


def equal_headers(
    a: Mapping[str, str | Sequence[str]] | None,
    b: Mapping[str, str | Sequence[str]] | None,
) -> bool:
    # header names are case-insensitive
    return _equal_multi_value_maps(a, b, normalize_key=str.lower)


def equal_body(a: Any, b: Any) -> bool:
    if a is None and b is None:
        return True
    if a is None or b is None:
        return False
    return stable_hash(a) == stable_hash(b)


def equal_context(a: Mapping[str, Any] | None, b: Mapping[str, Any] | None) -> bool:
    if not a and not b:
        return True
    if not a or not b:
        return False
    if len(a) != len(b):
        return False
    return all(key in b and b[key] == value for key, value in a.items())


def equal_transfer_cache(
    a: bool | TransferCache | None, b: bool | TransferCache | None
) -> bool:
    if not a and not b:
        return True
    if not a or not b:
        return False
    if isinstance(a, bool) or isinstance(b, bool):
        return a == b

    if not a.include_headers and not b.include_headers:
        return True
    if not a.include_headers or not b.include_headers:
        return False
    if len(a.include_headers) != len(b.include_headers):
        return False
    return set(a.include_headers) == set(b.include_headers)


def create_equal_request(
    body_equal: BodyEqual | None = None,
) -> Callable[[RequestDescriptor | None, RequestDescriptor | None], bool]:
    """Build a request equality function, optionally with a custom body comparison."""
    eq_body = body_equal or equal_body

    def equal(a: RequestDescriptor | None, b: RequestDescriptor | None) -> bool:
        if a is None and b is None:
            return True
        if a is None or b is None:
            return False
        if a is b:
            return True

        if a.url != b.url:
            return False
        if a.method.upper() != b.method.upper():
            return False
        if not equal_params(a.params, b.params):
            return False
        if not equal_headers(a.headers, b.headers):
            return False
        if not eq_body(a.body, b.body):
            return False
        if not equal_context(a.context, b.context):
            return False

        if a.with_credentials != b.with_credentials:
            return False
        if a.report_progress != b.report_progress:
            return False
        if not equal_transfer_cache(a.transfer_cache, b.transfer_cache):
            return False

        return True

    return equal


equal_request = create_equal_request()


def _encode(value: Any) -> str:
    if isinstance(value, bool):
        value = "true" if value else "false"
    return quote(str(value), safe="!~*'()")


def normalize_params(params: Mapping[str, ParamValue]) -> str:
    """Render params as a query string with sorted keys."""
    parts: list[tuple[str, str]] = []
    for key, value in params.items():
        if isinstance(value, (list, tuple)):
            parts.append((key, ",".join(_encode(v) for v in value)))
        else:
            parts.append((key, _encode(value)))
    return "&".join(f"{key}={value}" for key, value in sorted(parts))


def url_with_params(request: RequestDescriptor) -> str:
    if not request.params:
        return request.url
    return f"{request.url}?{normalize_params(request.params)}"


def fingerprint(request: RequestDescriptor) -> str:
    """Default cache key: method, url with sorted params and the body hash."""
    key = f"{request.method.upper()} {url_with_params(request)}"
    if request.body is not None:
        key += f" {stable_hash(request.body)}"
    return key


def _normalize_multi_value_map(
    values: Mapping[str, Any] | None, normalize_key: Callable[[str], str] = str
) -> list[list[Any]]:
    normalized = []
    for key, value in (values or {}).items():
        normalized.append([normalize_key(key), sorted(stable_hash(v) for v in _as_list(value))])
    return sorted(normalized)


def _normalize_transfer_cache(value: bool | TransferCache | None) -> Any:
    if not value:
        return None
    if isinstance(value, bool):
        return True
    headers = value.include_headers or []
    return [len(headers), sorted(set(headers))]


def request_key(request: RequestDescriptor) -> str:
    """
    Key covering every field equal_request compares. Requests that are equal
    under the default equality share a key; any difference changes it.
    """
    return stable_hash(
        request.method.upper(),
        request.url,
        _normalize_multi_value_map(request.params),
        _normalize_multi_value_map(request.headers, normalize_key=str.lower),
        request.body,
        sorted((str(k), stable_hash(v)) for k, v in (request.context or {}).items()),
        request.with_credentials,
        request.report_progress,
        _normalize_transfer_cache(request.transfer_cache),
    )
