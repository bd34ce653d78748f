"""
Content Rewriter - makes fetched HTML and CSS render from the proxy's origin.

The rules are regular expressions behind ContentRewriter.rewrite(); callers
never see them.
Rules run in a fixed order; each one is guarded so that a failing rule
passes its input through unchanged instead of aborting the response.
"""
import html as html_lib
import logging
import re
from dataclasses import dataclass

from fetch_client import CSS, HTML, content_category
from proxy_errors import RewriteFailure

logger = logging.getLogger(__name__)

# Headers that stop a page from being framed or loaded cross-origin
BLOCKING_HEADERS = (
    'x-frame-options',
    'content-security-policy',
    'content-security-policy-report-only',
    'cross-origin-embedder-policy',
    'cross-origin-resource-policy',
)
# Hop-by-hop and length headers; Flask sets its own
EXCLUDED_HEADERS = ('content-encoding', 'content-length', 'transfer-encoding', 'connection', 'keep-alive')

VOID_TAGS = frozenset((
    'area', 'base', 'br', 'col', 'embed', 'hr', 'img', 'input',
    'link', 'meta', 'param', 'source', 'track', 'wbr',
))
# Never removed by the ad pass, even when they carry a marker
PROTECTED_TAGS = frozenset(('html', 'head', 'body'))

_BLOCKING_META_RE = re.compile(
    r'<meta\b[^>]*?\bhttp-equiv\s*=\s*["\']?\s*'
    r'(?:content-security-policy|x-frame-options|x-content-type-options)\b[^>]*>',
    re.IGNORECASE,
)
# Markup the absolutizer visits: script and style elements whole, comments, start tags
_HTML_TOKEN_RE = re.compile(
    r'(?P<script><script\b[^>]*>)(?P<script_body>.*?)(?P<script_end></script\s*>)'
    r'|(?P<style><style\b[^>]*>)(?P<style_body>.*?)(?P<style_end></style\s*>)'
    r'|(?P<comment><!--.*?-->)'
    r'|(?P<tag><[a-zA-Z][^>]*>)',
    re.IGNORECASE | re.DOTALL,
)
_TAG_NAME_RE = re.compile(r'<[a-zA-Z][^\s/>]*')
# name[=value] inside a start tag; value double quoted, single quoted or bare
_TAG_ATTR_RE = re.compile(r'([^\s"\'<>/=]+)(?:(\s*=\s*)(?:"([^"]*)"|\'([^\']*)\'|([^\s"\'>]+)))?')
_URL_ATTRS = frozenset(('href', 'src', 'action'))
_URL_HOST_RE = re.compile(r'^\s*(?:https?:)?//(?:[^/?#\s@]*@)?([^/?#\s:]+)', re.IGNORECASE)
_CSS_URL_RE = re.compile(r'(?<![\w-])(url\(\s*)(&quot;|&#39;|["\']|)([^)]*?)\2(\s*\))', re.IGNORECASE)
_CSS_IMPORT_RE = re.compile(r'(@import\s+)(["\'])([^"\']*)\2', re.IGNORECASE)
_HEAD_RE = re.compile(r'<head\b[^>]*>', re.IGNORECASE)
_HTML_RE = re.compile(r'<html\b[^>]*>', re.IGNORECASE)
_SCHEME_RE = re.compile(r'^[a-zA-Z][a-zA-Z0-9+.\-]*:')


@dataclass(frozen=True)
class RewriteContext:
    """Per-request rewrite input; base_origin comes from the post-redirect URL."""
    base_origin: str
    original_target: str

    @property
    def scheme(self):
        return self.base_origin.split(':', 1)[0]


def absolutize(value, ctx):
    """
    Rewrite one reference against ``ctx.base_origin``.

    Relative paths resolve against the origin root, not the document's
    directory.
    """
    stripped = value.strip()
    if not stripped or stripped.startswith('#'):
        return value
    if stripped.lower().startswith(('http://', 'https://')):
        return value
    if stripped.startswith('//'):
        return f'{ctx.scheme}:{stripped}'
    if _SCHEME_RE.match(stripped):
        # data:, javascript:, mailto:, blob: ...
        return value
    if stripped.startswith('/'):
        return ctx.base_origin + stripped
    while stripped.startswith('./'):
        stripped = stripped[2:]
    return f'{ctx.base_origin}/{stripped}'


def strip_blocking_headers(headers):
    """Drop embedding-blocking and hop-by-hop headers, keeping order and repeats."""
    return [
        (name, value) for name, value in headers
        if name.lower() not in BLOCKING_HEADERS and name.lower() not in EXCLUDED_HEADERS
    ]


class ContentRewriter:
    """Stateless HTML/CSS rewriter; one instance is shared by all requests."""

    def __init__(self, strip_ads=True, ad_markers=(), ad_hosts=()):
        self.strip_ads = strip_ads
        self._ad_markers = frozenset(m.lower() for m in ad_markers)
        self._ad_hosts = tuple(h.lower() for h in ad_hosts)
        self._marker_re = None
        if ad_markers:
            # whole tokens only: "ad-container" must not hit "thread-container"
            marker_alt = '|'.join(re.escape(m) for m in ad_markers)
            self._marker_re = re.compile(r'(?<![\w-])(?:' + marker_alt + r')(?![a-zA-Z0-9])', re.IGNORECASE)
        self._ad_open_re = self._compile_ad_pattern(ad_markers, ad_hosts)

    @classmethod
    def from_config(cls, config):
        return cls(strip_ads=config.strip_ads, ad_markers=config.ad_markers, ad_hosts=config.ad_hosts)

    @staticmethod
    def _compile_ad_pattern(markers, hosts):
        """Cheap pre-filter: start tags mentioning a marker or an ad host anywhere."""
        needles = [re.escape(m) for m in markers] + [re.escape(h) for h in hosts] + ['data-ad-']
        return re.compile(
            r'<([a-zA-Z][a-zA-Z0-9]*)\b(?=[^>]*?(?:' + '|'.join(needles) + r'))[^>]*>',
            re.IGNORECASE,
        )

    def is_ad_tag(self, tag):
        """
        True when a start tag marks an ad: a marker token in class or id, a
        data-ad-* (or marker-named) attribute, or a src on a known ad host.
        """
        name_end = _TAG_NAME_RE.match(tag).end()
        for match in _TAG_ATTR_RE.finditer(tag, name_end):
            name = match.group(1).lower()
            value = next((v for v in match.group(3, 4, 5) if v is not None), '')
            if name in self._ad_markers or name.startswith('data-ad-'):
                return True
            if name in ('class', 'id') and self._marker_re and self._marker_re.search(value):
                return True
            if name == 'src' and self._ad_hosts:
                host = _URL_HOST_RE.match(value)
                if host and self._is_ad_host(host.group(1).lower()):
                    return True
        return False

    def _is_ad_host(self, host):
        return any(host == h or host.endswith('.' + h) for h in self._ad_hosts)

    def rewrite(self, body, ctx, content_type):
        """Rewrite an HTML or CSS body; any other content type is returned as is."""
        category = content_category(content_type)
        if category == HTML:
            body = self._apply('embedding-unblock', self.strip_blocking_meta, body)
            body = self._apply('absolutize', self.absolutize_html, body, ctx)
            body = self._apply('base-tag', self.inject_base, body, ctx)
            if self.strip_ads:
                body = self._apply('ad-removal', self.remove_ads, body)
        elif category == CSS:
            body = self._apply('absolutize-css', self.absolutize_css, body, ctx)
        return body

    def _apply(self, rule, func, text, *args):
        try:
            return func(text, *args)
        except Exception as e:
            logger.warning(str(RewriteFailure(rule, e)))
            return text

    # =========================================================================
    # RULE 1: EMBEDDING-UNBLOCK
    # =========================================================================

    def strip_blocking_meta(self, html):
        return _BLOCKING_META_RE.sub('', html)

    # =========================================================================
    # RULE 2: REFERENCE ABSOLUTIZATION
    # =========================================================================

    def absolutize_html(self, html, ctx):
        """
        Absolutize href/src/action and inline CSS, touching start tags only.
        Script bodies, comments and text are copied through as they are.
        """
        def rewrite_token(match):
            if match.group('script'):
                return (
                    self.absolutize_tag(match.group('script'), ctx)
                    + match.group('script_body')
                    + match.group('script_end')
                )
            if match.group('style'):
                return (
                    self.absolutize_tag(match.group('style'), ctx)
                    + self.absolutize_css(match.group('style_body'), ctx)
                    + match.group('style_end')
                )
            if match.group('comment'):
                return match.group('comment')
            return self.absolutize_tag(match.group('tag'), ctx)

        return _HTML_TOKEN_RE.sub(rewrite_token, html)

    def absolutize_tag(self, tag, ctx):
        """Rewrite the URL and style attributes of a single start tag."""
        def rewrite_attr(match):
            name, eq, double, single, bare = match.groups()
            if eq is None:
                return match.group(0)
            name_lower = name.lower()
            if name_lower in _URL_ATTRS:
                convert = absolutize
            elif name_lower == 'style' and bare is None:
                convert = self.absolutize_css
            else:
                return match.group(0)
            if double is not None:
                new = convert(double, ctx)
                return match.group(0) if new == double else f'{name}{eq}"{new}"'
            if single is not None:
                new = convert(single, ctx)
                return match.group(0) if new == single else f"{name}{eq}'{new}'"
            new = convert(bare, ctx)
            return match.group(0) if new == bare else f'{name}{eq}{new}'

        name_end = _TAG_NAME_RE.match(tag).end()
        return tag[:name_end] + _TAG_ATTR_RE.sub(rewrite_attr, tag[name_end:])

    def absolutize_css(self, css, ctx):
        def rewrite_url(match):
            opening, quote, value, closing = match.groups()
            new = absolutize(value, ctx)
            return match.group(0) if new == value else f'{opening}{quote}{new}{quote}{closing}'

        def rewrite_import(match):
            prefix, quote, value = match.groups()
            new = absolutize(value, ctx)
            return match.group(0) if new == value else f'{prefix}{quote}{new}{quote}'

        css = _CSS_URL_RE.sub(rewrite_url, css)
        return _CSS_IMPORT_RE.sub(rewrite_import, css)

    # =========================================================================
    # RULE 3: BASE TAG INJECTION
    # =========================================================================

    def inject_base(self, html, ctx):
        tag = f'<base href="{html_lib.escape(ctx.base_origin, quote=True)}">'
        if tag in html:
            return html
        match = _HEAD_RE.search(html)
        if match:
            return html[:match.end()] + tag + html[match.end():]
        match = _HTML_RE.search(html)
        if match:
            return html[:match.end()] + '<head>' + tag + '</head>' + html[match.end():]
        return tag + html

    # =========================================================================
    # RULE 4: AD / TRACKING REMOVAL
    # =========================================================================

    def remove_ads(self, html):
        """
        Remove elements whose opening tag is_ad_tag() accepts. The close tag
        is found by counting nested tags of the same name; an element without
        a balanced close tag is left in place.
        """
        pieces = []
        pos = 0
        search_from = 0
        removed = 0
        while True:
            match = self._ad_open_re.search(html, search_from)
            if not match:
                break
            end = self._element_end(html, match) if self.is_ad_tag(match.group(0)) else None
            if end is None:
                search_from = match.end()
                continue
            pieces.append(html[pos:match.start()])
            pos = search_from = end
            removed += 1
        if not removed:
            return html
        pieces.append(html[pos:])
        logger.debug(f"[REWRITE] removed {removed} ad element(s)")
        return ''.join(pieces)

    def _element_end(self, html, match):
        tag = match.group(1).lower()
        if tag in PROTECTED_TAGS:
            return None
        if tag in VOID_TAGS or match.group(0).endswith('/>'):
            return match.end()
        pattern = re.compile(r"<(/?)" + re.escape(tag) + r"\b[^>]*>", re.IGNORECASE)
        depth = 1
        for m in pattern.finditer(html, match.end()):
            if m.group(1):
                depth -= 1
            elif not m.group(0).endswith('/>'):
                depth += 1
            if depth == 0:
                return m.end()
        return None
