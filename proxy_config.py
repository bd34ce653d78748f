"""
Startup configuration for the proxy.

Everything here is read once when the app is created and never mutated:
identity headers, pinned mounts, search engines and the ad tables.
"""
import os
from dataclasses import dataclass, field
from types import MappingProxyType

from dotenv import load_dotenv

# =============================================================================
# DEFAULT TABLES
# =============================================================================

BROWSER_HEADERS = MappingProxyType({
    'User-Agent': 'Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36',
    'Accept': 'text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8',
    'Accept-Language': 'en-US,en;q=0.9',
})

SEARCH_ENGINES = MappingProxyType({
    'google': 'https://www.google.com/search?q=',
    'duckduckgo': 'https://duckduckgo.com/?q=',
    'bing': 'https://www.bing.com/search?q=',
    'yahoo': 'https://search.yahoo.com/search?p=',
    'brave': 'https://search.brave.com/search?q=',
    'ecosia': 'https://www.ecosia.org/search?q=',
})

SEARCH_ORIGINS = MappingProxyType({
    'google': 'https://www.google.com',
    'duckduckgo': 'https://duckduckgo.com',
    'bing': 'https://www.bing.com',
    'yahoo': 'https://search.yahoo.com',
    'brave': 'https://search.brave.com',
    'ecosia': 'https://www.ecosia.org',
})

PINNED_MOUNTS = MappingProxyType(dict(
    [('/gh', 'https://github.com'), ('/yt', 'https://www.youtube.com')]
    + [(f'/search/{name}', origin) for name, origin in SEARCH_ORIGINS.items()]
))

AD_HOSTS = (
    'doubleclick.net',
    'googlesyndication.com',
    'googleadservices.com',
    'adservice.google.com',
    'amazon-adsystem.com',
    'adnxs.com',
    'taboola.com',
    'outbrain.com',
    'criteo.com',
    'moatads.com',
)

AD_MARKERS = (
    'adsbygoogle',
    'data-ad-slot',
    'data-ad-client',
    'ad-slot',
    'ad-container',
    'ad-banner',
    'advertisement',
    'google_ads',
    'sponsored-content',
)

BINARY_TYPE_PREFIXES = (
    'image/',
    'font/',
    'audio/',
    'video/',
    'application/octet-stream',
    'application/font',
    'application/x-font',
    'application/vnd.ms-fontobject',
    'application/pdf',
    'application/zip',
    'application/wasm',
)


def _env_bool(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_ports(name, default):
    value = os.environ.get(name)
    if value is None:
        return default
    value = value.strip()
    if value == '*':
        return None
    return tuple(int(p) for p in value.split(',') if p.strip())


@dataclass(frozen=True)
class ProxyConfig:
    """Immutable process-wide settings, passed by reference into each component."""
    host: str = '0.0.0.0'
    port: int = 3000
    timeout: float = 30.0
    max_redirects: int = 10
    strip_ads: bool = True
    chunk_size: int = 8192
    # None means any port is allowed
    tunnel_allowed_ports: tuple = (80, 443)
    log_file: str = None
    log_level: str = 'INFO'
    browser_headers: MappingProxyType = field(default_factory=lambda: BROWSER_HEADERS)
    pinned_mounts: MappingProxyType = field(default_factory=lambda: PINNED_MOUNTS)
    search_engines: MappingProxyType = field(default_factory=lambda: SEARCH_ENGINES)
    default_engine: str = 'google'
    ad_hosts: tuple = AD_HOSTS
    ad_markers: tuple = AD_MARKERS
    binary_type_prefixes: tuple = BINARY_TYPE_PREFIXES

    def __post_init__(self):
        if self.timeout <= 0:
            raise ValueError(f"timeout must be positive, got {self.timeout}")
        if self.max_redirects < 0:
            raise ValueError(f"max_redirects must not be negative, got {self.max_redirects}")
        if self.default_engine not in self.search_engines:
            raise ValueError(f"default engine {self.default_engine!r} is not configured")

    @classmethod
    def from_env(cls):
        """Build the configuration from the environment (and a .env file if present)."""
        load_dotenv()
        return cls(
            host=os.environ.get('HOST', '0.0.0.0'),
            port=int(os.environ.get('PORT', 3000)),
            timeout=float(os.environ.get('PROXY_TIMEOUT', 30)),
            max_redirects=int(os.environ.get('PROXY_MAX_REDIRECTS', 10)),
            strip_ads=_env_bool('PROXY_STRIP_ADS', True),
            tunnel_allowed_ports=_env_ports('TUNNEL_ALLOWED_PORTS', (80, 443)),
            log_file=os.environ.get('LOG_FILE') or None,
            log_level=os.environ.get('LOG_LEVEL', 'INFO').upper(),
        )

    def features(self):
        """Feature flags reported by /health."""
        return {
            'rewrite': True,
            'ad_stripping': self.strip_ads,
            'tunnel': True,
            'pinned_mounts': sorted(self.pinned_mounts),
            'search_engines': sorted(self.search_engines),
        }
