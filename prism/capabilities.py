"""
capabilities.py — Browser-identity rewriting for WebDriver capability documents.

Two rewrites happen on every proxied exchange:

* **Inbound** (:func:`rewrite_request_body`): the client's capability
  document has its browser identity removed so the upstream server does
  not reject or mis-route the session request.  Both schemas are handled
  and may appear in the same document:

  - legacy ``desiredCapabilities.{browserName,version}``
  - W3C ``capabilities.{alwaysMatch,firstMatch}.{browserName,browserVersion}``

* **Outbound** (:func:`rewrite_response_body`): a successful (200)
  response has ``value.capabilities.{browserName,browserVersion}``
  overwritten with the canonical identity.

Only the top level must be a JSON object.  Anything nested that is not
the expected object (a string where ``desiredCapabilities`` should be,
an *array* ``firstMatch``) is left alone rather than rejected.
"""

from __future__ import annotations

import gzip
import json
import math
import zlib
from typing import Any

import brotli

from prism.log import get_logger

logger = get_logger(__name__)

LEGACY_KEY = "desiredCapabilities"
LEGACY_IDENTITY: tuple[str, ...] = ("browserName", "version")

W3C_KEY = "capabilities"
W3C_MATCH_KEYS: tuple[str, ...] = ("alwaysMatch", "firstMatch")
W3C_IDENTITY: tuple[str, ...] = ("browserName", "browserVersion")


class BadRequest(Exception):
    """The inbound body is not a JSON object."""


class EncodeFailure(Exception):
    """A parsed document could not be serialised again."""


class UpstreamDecodeFailure(Exception):
    """A 200 upstream body could not be decoded, so it is not forwarded."""


def _reject_constant(name: str) -> Any:
    raise ValueError(f"non-finite number {name} is not valid JSON")


def _parse_float(literal: str) -> float:
    value = float(literal)
    if math.isinf(value):
        raise ValueError(f"number {literal} is out of range")
    return value


def _decode_object(raw: bytes) -> dict[str, Any]:
    doc = json.loads(
        raw.decode("utf-8"),
        parse_constant=_reject_constant,
        parse_float=_parse_float,
    )
    if not isinstance(doc, dict):
        raise ValueError(f"expected a JSON object, got {type(doc).__name__}")
    return doc


def _encode(doc: dict[str, Any]) -> bytes:
    return json.dumps(
        doc, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    ).encode("utf-8")


def _strip(container: Any, keys: tuple[str, ...]) -> None:
    if isinstance(container, dict):
        for key in keys:
            container.pop(key, None)


def strip_identity(doc: dict[str, Any]) -> dict[str, Any]:
    """Delete browser-identity keys from both capability schemas in place."""
    _strip(doc.get(LEGACY_KEY), LEGACY_IDENTITY)

    w3c = doc.get(W3C_KEY)
    if isinstance(w3c, dict):
        for match in W3C_MATCH_KEYS:
            # A list-valued firstMatch is not rewritten.
            _strip(w3c.get(match), W3C_IDENTITY)
    return doc


def inject_identity(
    doc: dict[str, Any], browser_name: str, browser_version: str
) -> dict[str, Any]:
    """Force the canonical identity into ``value.capabilities`` in place."""
    value = doc.get("value")
    if isinstance(value, dict):
        caps = value.get("capabilities")
        if isinstance(caps, dict):
            caps["browserName"] = browser_name
            caps["browserVersion"] = browser_version
    return doc


def rewrite_request_body(raw: bytes) -> bytes:
    """Return *raw* re-encoded with the browser identity removed.

    Raises
    ------
    BadRequest
        *raw* is not UTF-8 JSON, or its top level is not an object.
    EncodeFailure
        The stripped document could not be serialised.
    """
    try:
        doc = _decode_object(raw)
    except ValueError as e:
        raise BadRequest(f"invalid capability document: {e}") from e

    strip_identity(doc)

    try:
        return _encode(doc)
    except (TypeError, ValueError) as e:
        raise EncodeFailure(f"encode capability document: {e}") from e


def decode_content(data: bytes, encoding: str) -> bytes:
    """Undo a ``Content-Encoding`` so the body can be parsed as JSON.

    Unlike a best-effort decoder this never hands back the raw bytes: an
    unknown or corrupt encoding raises :class:`UpstreamDecodeFailure`.
    """
    encoding = encoding.lower().strip()
    if not data or encoding in ("", "identity"):
        return data

    try:
        if encoding in ("gzip", "x-gzip"):
            return gzip.decompress(data)
        elif encoding == "deflate":
            # Try zlib-wrapped first, fall back to raw deflate
            try:
                return zlib.decompress(data)
            except zlib.error:
                return zlib.decompress(data, -zlib.MAX_WBITS)
        elif encoding == "br":
            return brotli.decompress(data)
    except (OSError, EOFError, zlib.error, brotli.error) as e:
        raise UpstreamDecodeFailure(f"decompress {encoding} response: {e}") from e

    raise UpstreamDecodeFailure(f"unsupported Content-Encoding: {encoding}")


def rewrite_response_body(
    raw: bytes, browser_name: str, browser_version: str
) -> bytes:
    """Return *raw* re-encoded with the canonical identity injected.

    Raises
    ------
    UpstreamDecodeFailure
        *raw* is not a JSON object or could not be serialised again.
    """
    try:
        doc = _decode_object(raw)
    except ValueError as e:
        raise UpstreamDecodeFailure(f"decode json response: {e}") from e

    inject_identity(doc, browser_name, browser_version)

    try:
        return _encode(doc)
    except (TypeError, ValueError) as e:
        raise UpstreamDecodeFailure(f"encode json response: {e}") from e
