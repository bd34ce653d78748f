#!/usr/bin/env python3
"""
End-to-end tests for the Phaser Proxy Flask app
Every upstream request is answered by FakeUpstream
"""
import unittest
from urllib.parse import quote, unquote

import requests

from phaser_proxy import create_app, raw_request_path
from proxy_config import ProxyConfig
from upstream_fakes import FakeUpstream, LoopingUpstream, make_client


def proxied(url):
    return '/proxy/' + quote(url, safe='')


class PhaserProxyTestCase(unittest.TestCase):
    """Base test case with an app wired to a fake upstream"""

    config = ProxyConfig()

    def setUp(self):
        self.upstream = FakeUpstream()
        self.app = create_app(self.config, fetch_client=make_client(self.upstream, self.config))
        self.app.testing = True
        self.client = self.app.test_client()


class TestGenericRewrite(PhaserProxyTestCase):
    """GET /proxy/<encoded url>"""

    def test_page_is_rewritten(self):
        self.upstream.add(
            'https://example.com/',
            '<html><head><title>Example</title></head><body>'
            '<a href="/about">About</a><img src="logo.png">'
            '<div class="adsbygoogle"><p>buy now</p></div>'
            '</body></html>',
            headers={'X-Frame-Options': 'DENY', 'Content-Security-Policy': "frame-ancestors 'none'"},
        )
        resp = self.client.get(proxied('https://example.com'))
        html = resp.get_data(as_text=True)

        self.assertEqual(resp.status_code, 200)
        self.assertIn('text/html', resp.headers['Content-Type'])
        self.assertIn('href="https://example.com/about"', html)
        self.assertIn('src="https://example.com/logo.png"', html)
        self.assertIn('<base href="https://example.com">', html)
        self.assertNotIn('adsbygoogle', html)
        self.assertNotIn('X-Frame-Options', resp.headers)
        self.assertNotIn('Content-Security-Policy', resp.headers)
        self.assertEqual(resp.headers['Access-Control-Allow-Origin'], '*')

    def test_target_is_decoded_once(self):
        self.upstream.add('https://example.com/a%20b', '<p>spaced</p>')
        resp = self.client.get(proxied('https://example.com/a%20b'))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.upstream.requests[0].url, 'https://example.com/a%20b')

    def test_target_query_string(self):
        self.upstream.add('https://example.com/search?q=phaser', '<p>results</p>')
        resp = self.client.get(proxied('https://example.com/search?q=phaser'))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.upstream.requests[0].url, 'https://example.com/search?q=phaser')

    def test_unencoded_target_keeps_its_query(self):
        self.upstream.add('https://example.com/page?x=1', '<p>x</p>')
        resp = self.client.get('/proxy/https://example.com/page?x=1')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(self.upstream.requests[0].url, 'https://example.com/page?x=1')

    def test_bare_domain_target(self):
        self.upstream.add('https://example.com/', '<p>bare</p>')
        resp = self.client.get('/proxy/example.com')
        self.assertEqual(resp.status_code, 200)

    def test_redirects_rebase_on_final_origin(self):
        self.upstream.redirect('https://a.example.com/', 'https://b.example.org/next')
        self.upstream.redirect('https://b.example.org/next', 'https://c.example.net/landing', status=301)
        self.upstream.add('https://c.example.net/landing', '<html><head></head><a href="/x">x</a></html>')

        html = self.client.get(proxied('https://a.example.com/')).get_data(as_text=True)
        self.assertIn('href="https://c.example.net/x"', html)
        self.assertIn('<base href="https://c.example.net">', html)

    def test_css_is_rewritten(self):
        self.upstream.add('https://example.com/site.css', 'body { background: url(/bg.png) }', content_type='text/css')
        resp = self.client.get(proxied('https://example.com/site.css'))
        self.assertEqual(resp.get_data(as_text=True), 'body { background: url(https://example.com/bg.png) }')
        self.assertIn('text/css', resp.headers['Content-Type'])

    def test_binary_passes_through_untouched(self):
        png = b'\x89PNG\r\n\x1a\n' + bytes(range(256)) * 100
        self.upstream.add('https://example.com/logo.png', png, content_type='image/png')
        resp = self.client.get(proxied('https://example.com/logo.png'))
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.headers['Content-Type'], 'image/png')
        self.assertEqual(resp.data, png)

    def test_missing_content_type_is_binary(self):
        body = b'<a href="/x">not touched</a>'
        self.upstream.add('https://example.com/blob', body, content_type=None)
        resp = self.client.get(proxied('https://example.com/blob'))
        self.assertEqual(resp.data, body)

    def test_text_encoding_preserved(self):
        body = '<p>café</p>'.encode('iso-8859-1') + b'<a href="/x">x</a>'
        self.upstream.add('https://example.com/', body, content_type='text/html; charset=iso-8859-1')
        resp = self.client.get(proxied('https://example.com/'))
        self.assertIn(b'caf\xe9', resp.data)
        self.assertIn(b'href="https://example.com/x"', resp.data)

    def test_invalid_bytes_preserved(self):
        self.upstream.add('https://example.com/', b'<p>\xff\xfe</p>')
        resp = self.client.get(proxied('https://example.com/'))
        self.assertIn(b'<p>\xff\xfe</p>', resp.data)

    def test_post_is_forwarded(self):
        self.upstream.add('https://example.com/form', '<p>thanks</p>')
        resp = self.client.post(
            proxied('https://example.com/form'),
            data=b'name=phaser',
            content_type='application/x-www-form-urlencoded',
        )
        self.assertEqual(resp.status_code, 200)
        sent = self.upstream.requests[0]
        self.assertEqual(sent.method, 'POST')
        self.assertEqual(sent.body, b'name=phaser')


class TestProxyErrors(PhaserProxyTestCase):
    """Failures come back as error pages"""

    def test_invalid_target(self):
        resp = self.client.get(proxied('ftp://example.com/file'))
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.headers['X-Proxy-Error'], 'invalid_target')
        self.assertIn('ftp://example.com/file', resp.get_data(as_text=True))
        self.assertEqual(self.upstream.requests, [])

    def test_empty_target(self):
        for path in ('/proxy', '/proxy/'):
            with self.subTest(path=path):
                resp = self.client.get(path)
                self.assertEqual(resp.status_code, 400)
                self.assertEqual(resp.headers['X-Proxy-Error'], 'invalid_target')

    def test_timeout_page(self):
        self.upstream.fail('https://slow.example.com/', requests.exceptions.ReadTimeout('read timed out'))
        resp = self.client.get(proxied('https://slow.example.com/'))
        html = resp.get_data(as_text=True)
        self.assertIn(resp.status_code, (500, 502))
        self.assertEqual(resp.headers['X-Proxy-Error'], 'timeout')
        self.assertIn('text/html', resp.headers['Content-Type'])
        self.assertIn('https://slow.example.com/', html)
        self.assertIn('Retry', html)
        self.assertNotIn('read timed out', html)

    def test_connection_failure_page(self):
        resp = self.client.get(proxied('https://down.example.com/'))
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.headers['X-Proxy-Error'], 'network_error')

    def test_upstream_http_error(self):
        self.upstream.add('https://example.com/missing', 'nope', status=404)
        resp = self.client.get(proxied('https://example.com/missing'))
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.headers['X-Proxy-Error'], 'http_error')
        self.assertEqual(resp.headers['X-Upstream-Status'], '404')

    def test_redirect_loop(self):
        app = create_app(self.config, fetch_client=make_client(LoopingUpstream(), self.config))
        resp = app.test_client().get(proxied('https://loop.example.com/'))
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.headers['X-Proxy-Error'], 'too_many_redirects')

    def test_internal_error_hides_details(self):
        class ExplodingClient:
            def fetch(self, *args, **kwargs):
                raise KeyError('secret internals')

        app = create_app(self.config, fetch_client=ExplodingClient())
        resp = app.test_client().get(proxied('https://example.com/'))
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.headers['X-Proxy-Error'], 'internal_error')
        self.assertNotIn('secret internals', resp.get_data(as_text=True))


class TestPinnedMounts(PhaserProxyTestCase):
    """Fixed prefix -> fixed origin"""

    def test_github_mount(self):
        body = '<a href="/explore">Explore</a>'
        self.upstream.add('https://github.com/phaser/proxy?tab=readme', body)
        resp = self.client.get('/gh/phaser/proxy?tab=readme')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_data(as_text=True), body)
        self.assertEqual(resp.headers['Access-Control-Allow-Origin'], '*')

    def test_mount_root(self):
        self.upstream.add('https://www.youtube.com/', '<p>yt</p>')
        self.assertEqual(self.client.get('/yt').status_code, 200)

    def test_search_engine_mount(self):
        self.upstream.add('https://www.bing.com/search?q=phaser', '<p>bing</p>')
        resp = self.client.get('/search/bing/search?q=phaser')
        self.assertEqual(resp.get_data(as_text=True), '<p>bing</p>')

    def test_mount_passes_upstream_status(self):
        self.upstream.add('https://github.com/nobody', 'Not Found', status=404)
        resp = self.client.get('/gh/nobody')
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.get_data(as_text=True), 'Not Found')

    def test_mount_suffix_not_decoded(self):
        self.upstream.add('https://github.com/a%2Fb', 'ok')
        self.client.get('/gh/a%2Fb')
        self.assertEqual(self.upstream.requests[0].url, 'https://github.com/a%2Fb')

    def test_prefix_needs_a_boundary(self):
        resp = self.client.get('/ghost')
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(self.upstream.requests, [])

    def test_mount_upstream_failure(self):
        resp = self.client.get('/gh/unreachable')
        self.assertEqual(resp.status_code, 502)
        self.assertEqual(resp.headers['X-Proxy-Error'], 'network_error')


class TestSearch(PhaserProxyTestCase):
    """GET /search?q=...&engine=..."""

    def test_search_redirects_into_proxy(self):
        resp = self.client.get('/search?q=hello+world&engine=duckduckgo')
        self.assertEqual(resp.status_code, 302)
        location = resp.headers['Location']
        self.assertIn('/proxy/', location)
        self.assertEqual(unquote(location.split('/proxy/', 1)[1]), 'https://duckduckgo.com/?q=hello%20world')

    def test_unknown_engine_falls_back_to_default(self):
        resp = self.client.get('/search?q=phaser&engine=altavista')
        target = unquote(resp.headers['Location'].split('/proxy/', 1)[1])
        self.assertEqual(target, 'https://www.google.com/search?q=phaser')

    def test_missing_query(self):
        resp = self.client.get('/search')
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(resp.headers['X-Proxy-Error'], 'invalid_target')


class TestServiceEndpoints(PhaserProxyTestCase):

    def test_health(self):
        resp = self.client.get('/health')
        data = resp.get_json()
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(data['status'], 'healthy')
        self.assertGreaterEqual(data['uptime'], 0)
        self.assertIn('timestamp', data)
        self.assertIn('/gh', data['features']['pinned_mounts'])

    def test_api_status(self):
        data = self.client.get('/api/status').get_json()
        self.assertEqual(data['status'], 'ok')
        self.assertEqual(data['service'], 'Phaser Proxy')

    def test_search_engines(self):
        data = self.client.get('/api/search-engines').get_json()
        keys = [engine['key'] for engine in data['engines']]
        self.assertIn('google', keys)
        self.assertEqual(data['default'], 'google')

    def test_index(self):
        resp = self.client.get('/')
        self.assertEqual(resp.status_code, 200)
        self.assertIn('Phaser Proxy', resp.get_data(as_text=True))

    def test_unknown_path(self):
        resp = self.client.get('/definitely/not/here')
        self.assertEqual(resp.status_code, 404)
        self.assertEqual(resp.get_json(), {'error': 'Page not found'})

    def test_tunnel_route_registered(self):
        rules = [rule.rule for rule in self.app.url_map.iter_rules()]
        self.assertIn('/tunnel', rules)


class TestRawRequestPath(PhaserProxyTestCase):

    def test_raw_uri_preferred(self):
        with self.app.test_request_context('/proxy/x', environ_overrides={'RAW_URI': '/proxy/a%252F?q=1'}):
            self.assertEqual(raw_request_path(), '/proxy/a%252F')

    def test_falls_back_to_requoted_path(self):
        with self.app.test_request_context('/proxy/a b', environ_overrides={'RAW_URI': '', 'REQUEST_URI': ''}):
            self.assertEqual(raw_request_path(), '/proxy/a%20b')


if __name__ == '__main__':
    unittest.main()
