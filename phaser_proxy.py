#!/usr/bin/env python3
"""
PHASER PROXY - web unblocking reverse proxy
Fetch-and-rewrite proxy with pinned site mounts, search shortcuts and a byte tunnel
"""
import logging
import sys
import time
from urllib.parse import quote, urlsplit

from flask import Flask, Response, jsonify, redirect, request
from flask_sock import Sock
from werkzeug.exceptions import HTTPException

from fetch_client import FetchClient
from content_rewriter import ContentRewriter
from proxy_config import ProxyConfig
from proxy_errors import InvalidTarget, ProxyError
from route_dispatcher import Dispatcher
from tunnel_endpoint import register_tunnel

logger = logging.getLogger(__name__)

SERVICE_NAME = 'Phaser Proxy'
VERSION = '2.0.0'
PROXY_PREFIX = '/proxy/'
PROXY_METHODS = ['GET', 'POST', 'PUT', 'DELETE', 'PATCH', 'HEAD']

_logging_configured = False


def configure_logging(config):
    """Console logging, plus a log file when LOG_FILE is set."""
    global _logging_configured
    if _logging_configured:
        return
    formatter = logging.Formatter('[%(asctime)s] [%(levelname)s] %(message)s')
    root = logging.getLogger()
    root.setLevel(config.log_level)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if config.log_file:
        file_handler = logging.FileHandler(config.log_file)
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)
    _logging_configured = True


def raw_request_path():
    """
    The request path exactly as the client sent it, still percent-encoded.

    Werkzeug has already decoded PATH_INFO, so decoding the proxy target
    again would decode it twice. Servers that do not expose the raw URI get
    the decoded path re-quoted, which one unquote turns back into that path.
    """
    raw = request.environ.get('RAW_URI') or request.environ.get('REQUEST_URI')
    if raw:
        path = raw.split('?', 1)[0]
        if not path.startswith('/'):
            path = urlsplit(raw).path
        script_root = request.script_root
        if script_root and path.startswith(script_root):
            path = path[len(script_root):]
        return path
    return quote(request.path, safe='/')


def search_url(config, query, engine):
    """Build the search URL for ``engine``, falling back to the default engine."""
    base = config.search_engines.get((engine or '').lower())
    if base is None:
        base = config.search_engines[config.default_engine]
    return base + quote(query, safe="-_.!~*'()")


def create_app(config=None, fetch_client=None):
    """Application factory; all shared state is the read-only config."""
    config = config or ProxyConfig.from_env()
    configure_logging(config)

    app = Flask(__name__)
    # /proxy/https://site keeps its double slash
    app.url_map.merge_slashes = False
    app.config['PROXY_CONFIG'] = config
    started = time.time()

    dispatcher = Dispatcher(
        config,
        fetch_client or FetchClient(config),
        ContentRewriter.from_config(config),
    )
    app.extensions['phaser_dispatcher'] = dispatcher

    sock = Sock(app)
    register_tunnel(sock, config)

    # =========================================================================
    # GENERIC REWRITE PROXY
    # =========================================================================

    @app.route('/proxy', methods=PROXY_METHODS)
    @app.route('/proxy/', methods=PROXY_METHODS)
    @app.route('/proxy/<path:target>', methods=PROXY_METHODS)
    def proxy(target=''):
        """Proxy any URL passed percent-encoded after /proxy/"""
        raw_path = raw_request_path()
        index = raw_path.find(PROXY_PREFIX)
        if index >= 0:
            raw_target = raw_path[index + len(PROXY_PREFIX):]
        else:
            raw_target = quote(target, safe='/')
        return dispatcher.proxy(
            raw_target,
            method=request.method,
            headers=request.headers,
            body=request.get_data() or None,
            query_string=request.query_string.decode('latin-1'),
        )

    # =========================================================================
    # SEARCH SHORTCUT
    # =========================================================================

    @app.route('/search')
    def search():
        """Redirect a search into the proxy: /search?q=...&engine=..."""
        query = request.args.get('q', '').strip()
        if not query:
            return dispatcher.error_response(InvalidTarget("No search query given"), request.url)
        url = search_url(config, query, request.args.get('engine'))
        return redirect(PROXY_PREFIX + quote(url, safe=''), code=302)

    # =========================================================================
    # STATUS ENDPOINTS
    # =========================================================================

    @app.route('/health')
    def health():
        return jsonify({
            'status': 'healthy',
            'uptime': round(time.time() - started, 3),
            'timestamp': int(time.time() * 1000),
            'features': config.features(),
        })

    @app.route('/api/status')
    def api_status():
        return jsonify({
            'status': 'ok',
            'service': SERVICE_NAME,
            'version': VERSION,
            'uptime': round(time.time() - started, 3),
            'timestamp': int(time.time() * 1000),
        })

    @app.route('/api/search-engines')
    def api_search_engines():
        engines = []
        for key, url in config.search_engines.items():
            engines.append({
                'key': key,
                'name': urlsplit(url).hostname,
                'url': url,
                'mount': f'/search/{key}' if f'/search/{key}' in config.pinned_mounts else None,
            })
        return jsonify({'engines': engines, 'default': config.default_engine})

    @app.route('/')
    def index():
        """Landing page listing the routes"""
        return Response(INDEX_HTML.format(
            name=SERVICE_NAME,
            version=VERSION,
            mounts=''.join(
                f'<li><code>{prefix}/</code> → {origin}</li>'
                for prefix, origin in sorted(config.pinned_mounts.items())
            ),
        ), mimetype='text/html')

    # =========================================================================
    # PINNED MOUNTS + ERRORS
    # =========================================================================

    @app.route('/<path:path>', methods=PROXY_METHODS)
    def pinned_mount(path):
        response = dispatcher.mount(
            raw_request_path(),
            method=request.method,
            headers=request.headers,
            body=request.get_data() or None,
            query_string=request.query_string.decode('latin-1'),
        )
        if response is None:
            return page_not_found(None)
        return response

    @app.errorhandler(404)
    def page_not_found(e):
        return jsonify({'error': 'Page not found'}), 404

    @app.errorhandler(Exception)
    def unexpected_error(e):
        if isinstance(e, HTTPException):
            return e
        logger.exception(f"Unhandled error on {request.path}")
        return dispatcher.error_response(ProxyError("Unexpected proxy failure"), request.url)

    return app


INDEX_HTML = '''<!DOCTYPE html>
<html>
<head>
    <meta charset="UTF-8">
    <title>{name}</title>
    <style>
        body {{ font-family: system-ui, -apple-system, sans-serif; max-width: 760px; margin: 40px auto; padding: 0 20px; color: #333; }}
        h1 {{ color: #E5554D; }}
        code {{ background: #f4f4f4; padding: 2px 6px; border-radius: 4px; }}
    </style>
</head>
<body>
    <h1>🚀 {name}</h1>
    <p>Web unblocking proxy, v{version}</p>
    <ul>
        <li><code>/proxy/&lt;encoded url&gt;</code> → fetch and rewrite any page</li>
        <li><code>/search?q=&lt;query&gt;&amp;engine=&lt;name&gt;</code> → search through the proxy</li>
        <li><code>/tunnel?host=&lt;host&gt;&amp;port=&lt;port&gt;</code> → WebSocket byte tunnel</li>
        <li><code>/health</code> → service status</li>
    </ul>
    <h2>Pinned sites</h2>
    <ul>{mounts}</ul>
</body>
</html>
'''


def main():
    config = ProxyConfig.from_env()
    app = create_app(config)
    logger.info("=" * 70)
    logger.info(f"🚀 {SERVICE_NAME} {VERSION} running on http://{config.host}:{config.port}")
    logger.info(f"🔧 Health check: http://localhost:{config.port}/health")
    logger.info(f"🔍 Search engines: {', '.join(config.search_engines)}")
    logger.info("=" * 70)
    app.run(host=config.host, port=config.port, debug=False, threaded=True)


if __name__ == '__main__':
    main()
