"""
Fetch Client - performs the outbound request for a resolved target.

Every request goes out with the same browser identity, follows a bounded
number of redirects and fails with an UpstreamError instead of raising
whatever requests raised.
"""
import codecs
import logging
import time
from dataclasses import dataclass, field

import requests

from proxy_errors import ErrorKind, UpstreamError
from url_resolver import origin_of

logger = logging.getLogger(__name__)

# Only these caller headers are forwarded, everything else is the fixed identity
FORWARDED_HEADERS = ('Range', 'Content-Type')

HTML = 'html'
CSS = 'css'
TEXT = 'text'
BINARY = 'binary'

TEXT_TYPES = (
    'application/javascript',
    'application/x-javascript',
    'application/ecmascript',
    'application/json',
    'application/xml',
    'application/rss+xml',
    'application/atom+xml',
    'application/manifest+json',
)


def content_category(content_type, binary_prefixes=()):
    """Classify a Content-Type header value as html, css, text or binary."""
    mime = (content_type or '').split(';')[0].strip().lower()
    if mime in ('text/html', 'application/xhtml+xml'):
        return HTML
    if mime == 'text/css':
        return CSS
    if not mime or mime.startswith(tuple(binary_prefixes)):
        return BINARY
    if mime.startswith('text/') or mime in TEXT_TYPES or mime.endswith(('+json', '+xml')):
        return TEXT
    return BINARY


def _known_encoding(encoding):
    if not encoding:
        return 'utf-8'
    try:
        return codecs.lookup(encoding).name
    except LookupError:
        return 'utf-8'


@dataclass
class FetchResult:
    final_url: str
    status_code: int
    headers: dict
    content_type: str
    category: str
    body: bytes = None
    encoding: str = 'utf-8'
    _response: object = field(default=None, repr=False)
    _session: object = field(default=None, repr=False)

    @property
    def origin(self):
        return origin_of(self.final_url)

    @property
    def is_streamed(self):
        return self.body is None

    def text(self):
        """Decode the buffered body without losing undecodable bytes."""
        return self.body.decode(self.encoding, errors='surrogateescape')

    def iter_body(self, chunk_size=8192):
        """Yield the body; a streamed upstream response is closed when done."""
        if self.body is not None:
            if self.body:
                yield self.body
            return
        try:
            for chunk in self._response.iter_content(chunk_size=chunk_size):
                if chunk:
                    yield chunk
        finally:
            self.close()

    def close(self):
        if self._response is not None:
            self._response.close()
            self._response = None
        if self._session is not None:
            self._session.close()
            self._session = None


def _upstream_error(exc, url, timeout):
    if isinstance(exc, requests.exceptions.Timeout):
        return UpstreamError(ErrorKind.TIMEOUT, f"No response within {timeout:g} seconds", url=url)
    if isinstance(exc, requests.exceptions.TooManyRedirects):
        return UpstreamError(ErrorKind.TOO_MANY_REDIRECTS, "Too many redirects", url=url)
    return UpstreamError(ErrorKind.NETWORK, "Could not connect to the site", url=url)


class FetchClient:
    """Outbound HTTP with a spoofed browser identity, bounded redirects and a timeout."""

    def __init__(self, config, session_factory=requests.Session):
        self.config = config
        self._session_factory = session_factory

    def build_upstream_headers(self, client_headers=None):
        """Pre-request transform: fixed identity plus a small whitelist of caller headers."""
        headers = dict(self.config.browser_headers)
        if client_headers:
            for name in FORWARDED_HEADERS:
                value = client_headers.get(name)
                if value:
                    headers[name] = value
        return headers

    def fetch(self, target, client_headers=None, method='GET', body=None, raise_for_status=True):
        """
        Fetch ``target`` (a ResolvedTarget) and return a FetchResult.

        Text payloads are buffered for rewriting, binary payloads are left
        streaming. Raises UpstreamError on timeout, connection failure, too
        many redirects, or (with ``raise_for_status``) a non-2xx final status.
        A request is attempted once and never retried.

        The configured timeout is one overall budget: every redirect hop gets
        only what is left of it, and buffering a text body stops at the same
        deadline.
        """
        url = target.url
        timeout = self.config.timeout
        deadline = time.monotonic() + timeout

        session = self._session_factory()
        logger.info(f"[FETCH] → {method} {url}")

        try:
            resp = session.request(
                method=method,
                url=url,
                headers=self.build_upstream_headers(client_headers),
                data=body or None,
                allow_redirects=False,
                stream=True,
                timeout=self._remaining(deadline, url),
            )
            resp = self._follow_redirects(session, resp, deadline, url)
        except UpstreamError as error:
            session.close()
            logger.warning(f"[FETCH] ✗ {method} {url}: {error}")
            raise
        except requests.exceptions.RequestException as e:
            session.close()
            error = _upstream_error(e, url, timeout)
            logger.warning(f"[FETCH] ✗ {method} {url}: {error} ({e})")
            raise error from e

        final_url = resp.url or url
        if len(resp.history) > 0:
            logger.info(f"[FETCH] {url} redirected {len(resp.history)}x to {final_url}")

        if raise_for_status and not 200 <= resp.status_code < 300:
            resp.close()
            session.close()
            logger.warning(f"[FETCH] ✗ {method} {final_url}: upstream answered {resp.status_code}")
            raise UpstreamError(
                ErrorKind.HTTP_ERROR,
                f"The site answered with status {resp.status_code}",
                url=url,
                status=resp.status_code,
            )

        content_type = resp.headers.get('Content-Type', '')
        category = content_category(content_type, self.config.binary_type_prefixes)
        result = FetchResult(
            final_url=final_url,
            status_code=resp.status_code,
            headers=resp.headers,
            content_type=content_type,
            category=category,
            encoding=_known_encoding(resp.encoding),
        )

        if category == BINARY:
            result._response = resp
            result._session = session
            logger.info(f"[FETCH] ✓ {resp.status_code} {final_url} (streaming {content_type or 'unknown type'})")
            return result

        try:
            result.body = self._read_body(resp, deadline, url)
        finally:
            resp.close()
            session.close()
        logger.info(f"[FETCH] ✓ {resp.status_code} {final_url} ({len(result.body)}b {content_type})")
        return result

    def _remaining(self, deadline, url):
        """Seconds left before ``deadline``; raises UpstreamError(TIMEOUT) once it has passed."""
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise UpstreamError(
                ErrorKind.TIMEOUT,
                f"No response within {self.config.timeout:g} seconds",
                url=url,
            )
        return remaining

    def _follow_redirects(self, session, resp, deadline, url):
        """Follow redirects hop by hop, each hop bounded by the time left."""
        history = []
        while resp.is_redirect:
            if len(history) >= self.config.max_redirects:
                resp.close()
                raise requests.exceptions.TooManyRedirects(
                    f"Exceeded {self.config.max_redirects} redirects", response=resp
                )
            # prepared by requests: method rewrite, auth stripping and cookies included
            next_request = resp.next
            history.append(resp)
            resp.close()
            resp = session.send(
                next_request,
                allow_redirects=False,
                stream=True,
                timeout=self._remaining(deadline, url),
            )
        resp.history = history
        return resp

    def _read_body(self, resp, deadline, url):
        chunks = []
        try:
            for chunk in resp.iter_content(chunk_size=self.config.chunk_size):
                chunks.append(chunk)
                if time.monotonic() > deadline:
                    raise UpstreamError(
                        ErrorKind.TIMEOUT,
                        f"No complete response within {self.config.timeout:g} seconds",
                        url=url,
                    )
        except requests.exceptions.RequestException as e:
            raise _upstream_error(e, url, self.config.timeout) from e
        return b''.join(chunks)
