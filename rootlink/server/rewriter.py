"""Adapts tunneled responses for delivery under the /t/<tunnelId> prefix."""

import codecs
import logging
import re
from typing import Optional

from aiohttp import web
from multidict import CIMultiDict

from ..core.protocol import Headers, iter_headers

logger = logging.getLogger(__name__)

# Framing headers that do not survive re-transmission
SKIP_HEADERS = frozenset(
    {"transfer-encoding", "connection", "keep-alive", "content-length"}
)

# Best effort: only these attribute names and plain url(...) forms are caught
_ATTR_RE = re.compile(r"""((?:src|href|action|content|data-[\w-]+)=["'])/(?!/)""")
_CSS_URL_RE = re.compile(r"""url\((["']?)/(?!/)""")
_HEAD_RE = re.compile(r"<head(?:\s[^>]*)?>", re.IGNORECASE)
_CHARSET_RE = re.compile(r"""charset=["']?([\w.:-]+)""", re.IGNORECASE)


def tunnel_prefix(tunnel_id: str) -> str:
    return f"/t/{tunnel_id}"


def rewrite_html(html: str, tunnel_id: str) -> str:
    """Prefix root-relative references and inject a <base> tag."""
    base = tunnel_prefix(tunnel_id)
    html = _ATTR_RE.sub(lambda m: f"{m.group(1)}{base}/", html)
    html = _CSS_URL_RE.sub(lambda m: f"url({m.group(1)}{base}/", html)
    html = _HEAD_RE.sub(
        lambda m: f'{m.group(0)}\n  <base href="{base}/">', html, count=1
    )
    return html


def _header(headers: Headers, name: str) -> str:
    value = headers.get(name, "")
    if isinstance(value, list):
        value = value[0] if value else ""
    return value


def _charset(content_type: str) -> str:
    match = _CHARSET_RE.search(content_type)
    if match:
        try:
            return codecs.lookup(match.group(1)).name
        except LookupError:
            logger.debug(f"Unknown charset {match.group(1)!r}, using utf-8")
    return "utf-8"


def should_rewrite(headers: Headers) -> bool:
    """Only uncompressed HTML bodies are rewritten."""
    content_type = _header(headers, "content-type").lower()
    encoding = _header(headers, "content-encoding").lower()
    return "text/html" in content_type and encoding in ("", "identity")


def rewrite_body(body: bytes, headers: Headers, tunnel_id: str) -> bytes:
    """Rewrite an HTML payload, keeping undecodable bytes intact."""
    charset = _charset(_header(headers, "content-type"))
    try:
        text = body.decode(charset, errors="surrogateescape")
        return rewrite_html(text, tunnel_id).encode(
            charset, errors="surrogateescape"
        )
    except UnicodeError as e:
        logger.warning(f"Leaving HTML body of tunnel {tunnel_id} as is: {e}")
        return body


def build_response(
    status: int,
    headers: Headers,
    body: Optional[bytes],
    tunnel_id: str,
) -> web.Response:
    """Turn a tunneled response into the public HTTP response."""
    out: CIMultiDict[str] = CIMultiDict()
    for name, value in iter_headers(headers):
        if name.lower() not in SKIP_HEADERS:
            out.add(name, value)

    if not body:
        return web.Response(status=status, headers=out)

    if should_rewrite(headers):
        body = rewrite_body(body, headers, tunnel_id)

    return web.Response(status=status, headers=out, body=body)
