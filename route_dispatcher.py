"""
Route Dispatcher - chooses a strategy per request and assembles the response.

Strategies:
  GENERIC_REWRITE     /proxy/{encodedUrl}: resolve, fetch, rewrite HTML/CSS
  PINNED_MOUNT        fixed prefix -> fixed origin, body forwarded unmodified
  BINARY_PASSTHROUGH  images, fonts, media: streamed through untouched

The dispatcher is the error boundary: whatever goes wrong below it comes back
as a rendered error page with a status code and an X-Proxy-Error header.
"""
import logging
from dataclasses import dataclass
from enum import Enum
from urllib.parse import unquote

from flask import Response, stream_with_context

import error_page
from content_rewriter import ContentRewriter, RewriteContext, strip_blocking_headers
from fetch_client import BINARY, CSS, HTML, FetchClient, content_category
from proxy_errors import ErrorKind, ProxyError, UpstreamError
from url_resolver import ResolvedTarget, resolve

logger = logging.getLogger(__name__)

CORS_HEADERS = (
    ('Access-Control-Allow-Origin', '*'),
    ('Access-Control-Allow-Methods', 'GET, POST, PUT, DELETE, OPTIONS'),
    ('Access-Control-Allow-Headers', 'Content-Type, Authorization'),
)


class Strategy(Enum):
    GENERIC_REWRITE = 'generic_rewrite'
    PINNED_MOUNT = 'pinned_mount'
    BINARY_PASSTHROUGH = 'binary_passthrough'


@dataclass(frozen=True)
class RouteDecision:
    strategy: Strategy
    mount_prefix: str = None
    target_origin: str = None


def log_request(mode, method, url, status="→"):
    """Consistent logging format"""
    logger.info(f"[{mode.upper():8}] {status} {method:4} {url[:80]}")


def find_mount(path, mounts):
    """Return (prefix, origin) of the longest pinned mount owning ``path``, or None."""
    best = None
    for prefix, origin in mounts.items():
        if path == prefix or path.startswith(prefix + '/'):
            if best is None or len(prefix) > len(best[0]):
                best = (prefix, origin)
    return best


def choose_route(path, mounts, content_type=None, binary_prefixes=()):
    """Pinned mounts win on path; otherwise a binary content type means passthrough."""
    mount = find_mount(path, mounts)
    if mount:
        return RouteDecision(Strategy.PINNED_MOUNT, mount_prefix=mount[0], target_origin=mount[1])
    if content_type is not None and content_category(content_type, binary_prefixes) == BINARY:
        return RouteDecision(Strategy.BINARY_PASSTHROUGH)
    return RouteDecision(Strategy.GENERIC_REWRITE)


def finalize_headers(headers):
    """Post-response transform: strip blocking headers, content type, and add CORS."""
    cors_names = {name.lower() for name, _ in CORS_HEADERS}
    kept = [
        (name, value) for name, value in strip_blocking_headers(headers)
        if name.lower() != 'content-type' and name.lower() not in cors_names
    ]
    return kept + list(CORS_HEADERS)


class Dispatcher:
    """Runs one proxied request from raw target to finished Flask response."""

    def __init__(self, config, fetch_client=None, rewriter=None):
        self.config = config
        self.fetch_client = fetch_client or FetchClient(config)
        self.rewriter = rewriter or ContentRewriter.from_config(config)

    # =========================================================================
    # ENTRY POINTS (error boundary)
    # =========================================================================

    def proxy(self, raw_target, method='GET', headers=None, body=None, query_string=''):
        """GENERIC_REWRITE for a still percent-encoded target."""
        requested = unquote(raw_target or '')
        try:
            return self._generic_rewrite(raw_target, method, headers, body, query_string)
        except ProxyError as e:
            log_request('proxy', method, requested, f"✗ {e}")
            return self.error_response(e, requested)
        except Exception:
            logger.exception(f"Unexpected error proxying {requested}")
            return self.error_response(ProxyError("Unexpected proxy failure"), requested)

    def mount(self, raw_path, method='GET', headers=None, body=None, query_string=''):
        """PINNED_MOUNT for a raw request path; returns None when no mount owns it."""
        decision = choose_route(raw_path, self.config.pinned_mounts)
        if decision.strategy is not Strategy.PINNED_MOUNT:
            return None
        suffix = raw_path[len(decision.mount_prefix):] or '/'
        url = decision.target_origin + suffix
        if query_string:
            url += '?' + query_string
        try:
            return self._pinned_mount(decision, url, method, headers, body)
        except ProxyError as e:
            log_request('mount', method, url, f"✗ {e}")
            return self.error_response(e, url)
        except Exception:
            logger.exception(f"Unexpected error proxying mount {url}")
            return self.error_response(ProxyError("Unexpected proxy failure"), url)

    # =========================================================================
    # STRATEGIES
    # =========================================================================

    def _generic_rewrite(self, raw_target, method, headers, body, query_string):
        target = resolve(raw_target)
        # /proxy/https://site/page?x=1 sent unencoded puts the query on our own URL
        if query_string and '?' not in target.url:
            target = ResolvedTarget(url=f'{target.url}?{query_string}', origin=target.origin)
        log_request('proxy', method, target.url)

        result = self.fetch_client.fetch(target, headers, method=method, body=body)
        decision = choose_route('', {}, result.content_type, self.config.binary_type_prefixes)
        if decision.strategy is Strategy.BINARY_PASSTHROUGH:
            log_request('binary', method, result.final_url, f"✓ {result.content_type or 'unknown type'}")
            return self._stream(result)

        payload = result.body
        if result.category in (HTML, CSS):
            ctx = RewriteContext(base_origin=result.origin, original_target=target.url)
            payload = self._rewrite(result, ctx)
        log_request('proxy', method, target.url, f"✓ {len(payload)}b")
        return Response(
            payload,
            status=result.status_code,
            headers=finalize_headers(result.headers.items()),
            content_type=result.content_type or 'application/octet-stream',
        )

    def _pinned_mount(self, decision, url, method, headers, body):
        target = ResolvedTarget(url=url, origin=decision.target_origin)
        log_request('mount', method, url)
        result = self.fetch_client.fetch(target, headers, method=method, body=body, raise_for_status=False)
        log_request('mount', method, url, f"✓ {result.status_code}")
        return self._stream(result)

    def _rewrite(self, result, ctx):
        text = self.rewriter.rewrite(result.text(), ctx, result.content_type)
        try:
            return text.encode(result.encoding, errors='surrogateescape')
        except UnicodeError as e:
            logger.warning(f"[REWRITE] could not re-encode {result.final_url} as {result.encoding}: {e}")
            return result.body

    def _stream(self, result):
        return Response(
            stream_with_context(result.iter_body(self.config.chunk_size)),
            status=result.status_code,
            headers=finalize_headers(result.headers.items()),
            content_type=result.content_type or 'application/octet-stream',
        )

    # =========================================================================
    # ERRORS
    # =========================================================================

    def error_response(self, error, requested_url):
        """Render ``error`` as an HTML page with a matching status and X-Proxy-Error."""
        # internal failures never show their text to the user
        detail = None if error.kind is ErrorKind.INTERNAL else error.message
        page = error_page.build(error.kind, requested_url, detail=detail)
        response = Response(page, status=error.status_code, mimetype='text/html')
        response.headers['X-Proxy-Error'] = error.kind.value
        if isinstance(error, UpstreamError) and error.status is not None:
            response.headers['X-Upstream-Status'] = str(error.status)
        for name, value in CORS_HEADERS:
            response.headers[name] = value
        return response
