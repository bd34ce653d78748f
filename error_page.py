"""
Error Page Builder - the page every failed proxy request renders.
"""
import html

from proxy_errors import ErrorKind

TITLES = {
    ErrorKind.INVALID_TARGET: ('Invalid address', "That doesn't look like a web address the proxy can open."),
    ErrorKind.TIMEOUT: ('Site took too long', 'The site did not respond in time.'),
    ErrorKind.HTTP_ERROR: ('Site returned an error', 'The site answered, but with an error status.'),
    ErrorKind.NETWORK: ('Connection error', 'Unable to reach this site. It might be down or blocked.'),
    ErrorKind.TOO_MANY_REDIRECTS: ('Redirect loop', 'The site kept redirecting and never settled on a page.'),
    ErrorKind.INTERNAL: ('Something went wrong', 'The proxy hit an unexpected problem loading this page.'),
}

PAGE_TEMPLATE = '''<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <title>{title} - Phaser Proxy</title>
    <style>
        body {{ font-family: system-ui, -apple-system, sans-serif; background: #1f1f2e; color: #eee; display: flex; align-items: center; justify-content: center; min-height: 100vh; margin: 0; }}
        .card {{ background: #2a2a3d; border-radius: 12px; padding: 32px 40px; max-width: 640px; box-shadow: 0 10px 30px rgba(0,0,0,0.4); }}
        h1 {{ color: #FF746C; margin-top: 0; }}
        .url {{ font-family: monospace; background: #1a1a28; padding: 8px 12px; border-radius: 6px; word-break: break-all; }}
        .actions {{ margin-top: 24px; display: flex; gap: 12px; }}
        .actions a {{ color: #fff; background: #E5554D; padding: 10px 18px; border-radius: 8px; text-decoration: none; font-weight: bold; }}
    </style>
</head>
<body>
    <div class="card" data-error-kind="{kind}">
        <h1>{title}</h1>
        <p>{message}</p>
        {detail}
        <p>Requested address:</p>
        <div class="url">{url}</div>
        <div class="actions">
            <a href="javascript:history.back()">Go back</a>
            <a href="javascript:location.reload()">Retry</a>
        </div>
    </div>
</body>
</html>
'''

FALLBACK_PAGE = (
    '<!DOCTYPE html><html><head><meta charset="UTF-8"><title>Error - Phaser Proxy</title></head>'
    '<body><h1>Something went wrong</h1><p>The page could not be loaded.</p>'
    '<a href="javascript:history.back()">Go back</a> '
    '<a href="javascript:location.reload()">Retry</a></body></html>'
)


def build(cause, requested_url, detail=None):
    """Render the error page for ``cause`` (an ErrorKind). Never raises."""
    try:
        if not isinstance(cause, ErrorKind):
            cause = ErrorKind.INTERNAL
        title, message = TITLES[cause]
        detail_html = f'<p class="detail">{html.escape(str(detail))}</p>' if detail else ''
        return PAGE_TEMPLATE.format(
            title=html.escape(title),
            kind=cause.value,
            message=html.escape(message),
            detail=detail_html,
            url=html.escape(str(requested_url or '(none)')),
        )
    except Exception:
        return FALLBACK_PAGE
