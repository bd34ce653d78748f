"""
URL Resolver - turns a client supplied target into a validated absolute URL.
"""
import re
from dataclasses import dataclass
from urllib.parse import unquote, urlsplit, urlunsplit

from proxy_errors import InvalidTarget

ALLOWED_SCHEMES = ('http', 'https')
DEFAULT_PORTS = {'http': 80, 'https': 443}

# scheme per RFC 3986: ALPHA *( ALPHA / DIGIT / "+" / "-" / "." ) ":"
_SCHEME_RE = re.compile(r'^([a-zA-Z][a-zA-Z0-9+.\-]*):')
# host[:port] followed by a path, query, fragment or the end
_BARE_HOST_RE = re.compile(r'^[^\s/?#:@]+(:\d+)?([/?#]|$)')
_BAD_HOST_CHARS = re.compile(r"[\s<>\"{}|\\^`%]")


@dataclass(frozen=True)
class ResolvedTarget:
    url: str
    origin: str


def origin_of(url):
    """Return scheme://host[:port] for an absolute URL, omitting default ports."""
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or '').lower()
    if ':' in host:
        host = f'[{host}]'
    port = parts.port
    if port is None or DEFAULT_PORTS.get(scheme) == port:
        return f'{scheme}://{host}'
    return f'{scheme}://{host}:{port}'


def normalize_host(host):
    """Validate a bare host name and return its ASCII (IDNA) form."""
    if not host or _BAD_HOST_CHARS.search(host):
        raise InvalidTarget(f"Invalid host name: {host}")
    if ':' in host:
        return host.lower()
    try:
        return host.encode('idna').decode('ascii').lower()
    except UnicodeError as e:
        raise InvalidTarget(f"Invalid host name: {host}") from e


def resolve(raw):
    """
    Decode ``raw`` exactly once and validate it as an http(s) target.

    A bare domain such as ``example.com/path`` is treated as https.
    Raises InvalidTarget for anything else; no other exception escapes.
    """
    if not isinstance(raw, str):
        raise InvalidTarget("Target URL must be a string")

    try:
        value = unquote(raw, errors='strict').strip()
    except UnicodeDecodeError:
        raise InvalidTarget("Target URL is not valid UTF-8", url=raw)

    if not value:
        raise InvalidTarget("No target URL given", url=raw)
    if any(ch in value for ch in '\r\n\t\x00'):
        raise InvalidTarget("Target URL contains control characters", url=value)

    scheme_match = _SCHEME_RE.match(value)
    if scheme_match and value[len(scheme_match.group(0)):].startswith('//'):
        pass
    elif _BARE_HOST_RE.match(value):
        value = 'https://' + value
    elif scheme_match:
        raise InvalidTarget(f"Unsupported scheme: {scheme_match.group(1)}", url=value)
    else:
        raise InvalidTarget("Target URL has no recognizable host", url=value)

    try:
        parts = urlsplit(value)
        scheme = parts.scheme.lower()
        hostname = parts.hostname
        port = parts.port
    except ValueError as e:
        raise InvalidTarget(f"Malformed target URL: {e}", url=value) from e

    if scheme not in ALLOWED_SCHEMES:
        raise InvalidTarget(f"Unsupported scheme: {scheme}", url=value)
    if not hostname:
        raise InvalidTarget("Target URL has no host", url=value)
    try:
        host = normalize_host(hostname)
    except InvalidTarget as e:
        e.url = value
        raise

    netloc_host = f'[{host}]' if ':' in host else host
    netloc = netloc_host if port is None else f'{netloc_host}:{port}'
    if parts.username or parts.password:
        userinfo = parts.netloc.rsplit('@', 1)[0]
        netloc = f'{userinfo}@{netloc}'

    url = urlunsplit((scheme, netloc, parts.path or '/', parts.query, parts.fragment))
    return ResolvedTarget(url=url, origin=origin_of(url))
