#!/usr/bin/env python3
from flask import Flask, request, Response
from functools import partial
from logging.handlers import RotatingFileHandler
from dotenv import load_dotenv
from werkzeug.http import http_date
import os, copy, time, sys, logging, toml

from album_source import AlbumResolver, SuitabilityFilter, build_session, download_image, fetch_heavy, fetch_lightweight
from frame_errors import ConfigError, FrameError
from frame_render import RenderOptions
from frame_store import PersistentStore, UrlCache
from pregen import CandidateSelector, PregenerationManager

app = Flask(__name__)
START_TIME = time.time()

CONFIG_PATH = os.environ.get('INKFRAME_CONFIG', 'config.toml')
DEFAULT_CONFIG = {
    "album": {
        "url": "",
        "cache_ttl": 3600
    },
    "server": {
        "host": "0.0.0.0",
        "port": 3000
    },
    "image": {
        "width": 800,
        "height": 480,
        "landscape_only": True,
        "crop_strategy": "center",
        "dither_mode": "burkes",
        "max_attempts": 10
    },
    "storage": {
        "data_dir": "data"
    },
    "network": {
        "request_timeout": 15,
        "scrape_timeout": 120
    },
    "logging": {
        "level": "INFO",
        "log_file": "inkframe.log",
        "max_log_lines": 10000,
        "max_backup_files": 5
    }
}

# env var -> (section, key, type)
ENV_OVERRIDES = {
    'SHARED_ALBUM_URL': ('album', 'url', str),
    'URL_CACHE_TTL': ('album', 'cache_ttl', int),
    'HOST': ('server', 'host', str),
    'PORT': ('server', 'port', int),
    'IMAGE_WIDTH': ('image', 'width', int),
    'IMAGE_HEIGHT': ('image', 'height', int),
    'LANDSCAPE_ONLY': ('image', 'landscape_only', bool),
    'CROP_STRATEGY': ('image', 'crop_strategy', str),
    'DITHER_MODE': ('image', 'dither_mode', str),
    'MAX_ATTEMPTS': ('image', 'max_attempts', int),
    'DATA_DIR': ('storage', 'data_dir', str),
    'REQUEST_TIMEOUT': ('network', 'request_timeout', int),
    'SCRAPE_TIMEOUT': ('network', 'scrape_timeout', int),
    'LOG_LEVEL': ('logging', 'level', str),
}

TRUE_VALUES = {'1', 'true', 'yes', 'on'}
FALSE_VALUES = {'0', 'false', 'no', 'off'}

services = None


def _merge(base, override):
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(path=None):
    path = path or CONFIG_PATH
    if not os.path.exists(path):
        with open(path, 'w') as f:
            toml.dump(DEFAULT_CONFIG, f)
        return copy.deepcopy(DEFAULT_CONFIG)
    try:
        with open(path, 'r') as f:
            return _merge(DEFAULT_CONFIG, toml.load(f))
    except (OSError, toml.TomlDecodeError) as e:
        logging.getLogger('inkframe').warning(f"Error loading config {path}: {e}; using default configuration")
        return copy.deepcopy(DEFAULT_CONFIG)


def _coerce(name, raw, kind):
    value = raw.strip()
    if kind is bool:
        if value.lower() in TRUE_VALUES:
            return True
        if value.lower() in FALSE_VALUES:
            return False
        raise ConfigError(f"{name} must be a boolean, got {raw!r}")
    if kind is int:
        try:
            return int(value)
        except ValueError:
            raise ConfigError(f"{name} must be an integer, got {raw!r}") from None
    return value


def coerce_setting(name, value, kind):
    """Type-check one setting from the config file; strings are parsed like env vars."""
    if kind is bool and isinstance(value, bool):
        return value
    if kind is int and isinstance(value, int) and not isinstance(value, bool):
        return value
    if isinstance(value, str):
        return _coerce(name, value, kind)
    raise ConfigError(f"{name} must be {kind.__name__}, got {value!r}")


def apply_env_overrides(config, environ=None):
    environ = os.environ if environ is None else environ
    config = copy.deepcopy(config)
    for name, (section, key, kind) in ENV_OVERRIDES.items():
        raw = environ.get(name)
        if raw is None or raw == '':
            continue
        config.setdefault(section, {})[key] = _coerce(name, raw, kind)
    return config


POSITIVE_SETTINGS = [
    ('album', 'cache_ttl'),
    ('image', 'width'),
    ('image', 'height'),
    ('image', 'max_attempts'),
    ('network', 'request_timeout'),
    ('network', 'scrape_timeout'),
]


def validate_config(config):
    """Return a copy of ``config`` with every known setting type-checked."""
    config = copy.deepcopy(config)
    for section, key, kind in ENV_OVERRIDES.values():
        values = config.setdefault(section, {})
        if key in values:
            values[key] = coerce_setting(f"{section}.{key}", values[key], kind)
    if not config['album'].get('url'):
        raise ConfigError('SHARED_ALBUM_URL environment variable is not set.')
    for section, key in POSITIVE_SETTINGS:
        value = config[section].get(key, DEFAULT_CONFIG[section][key])
        if value < 1:
            raise ConfigError(f"{section}.{key} must be positive, got {value}")
    return config


def setup_logging(config=None):
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    logger = logging.getLogger('inkframe')
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    log_config = (config or {}).get('logging', {})
    level = getattr(logging, str(log_config.get('level', 'INFO')).upper(), logging.INFO)
    logger.setLevel(level)
    formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)
    log_file = log_config.get('log_file')
    if log_file:
        try:
            max_lines = log_config.get('max_log_lines', 10000)
            file_handler = RotatingFileHandler(
                log_file,
                maxBytes=max_lines * 100,
                backupCount=log_config.get('max_backup_files', 5)
            )
            file_handler.setLevel(level)
            file_handler.setFormatter(formatter)
            logger.addHandler(file_handler)
        except OSError as e:
            print(f"Failed to setup file logging: {e}")
    return logger


class FrameService:
    """Process-wide wiring of caches, stores, resolver, selector and artifact."""

    def __init__(self, config, lightweight=None, heavy=None, session=None, executor=None):
        album_cfg = config['album']
        image_cfg = config['image']
        net_cfg = config['network']
        data_dir = config['storage']['data_dir']
        timeout = net_cfg['request_timeout']

        self.album_url = album_cfg['url']
        self.max_attempts = int(image_cfg['max_attempts'])
        self.options = RenderOptions.from_config(image_cfg)
        self.session = session or build_session()
        self.url_cache = UrlCache(ttl=album_cfg['cache_ttl'])
        self.blocklist = PersistentStore(os.path.join(data_dir, 'blocklist.db'))
        self.metadata = PersistentStore(os.path.join(data_dir, 'album_meta.db'))
        self.resolver = AlbumResolver(
            self.url_cache, self.metadata,
            lightweight=lightweight or partial(fetch_lightweight, session=self.session, timeout=timeout),
            heavy=heavy or partial(fetch_heavy, timeout=net_cfg['scrape_timeout']),
            landscape_only=self.options.landscape_only,
        )
        self.suitability = SuitabilityFilter(self.blocklist, self.session, timeout)
        fetch = partial(download_image, self.session,
                        width=self.options.width, height=self.options.height, timeout=timeout)
        self.selector = CandidateSelector(self.suitability, fetch, self.options)
        self.manager = PregenerationManager(data_dir, self.generate, executor=executor)

    def generate(self):
        urls = self.resolver.resolve(self.album_url)
        return self.selector.select_and_process(urls, self.max_attempts)


def init_services(config, **kwargs):
    global services
    services = FrameService(validate_config(config), **kwargs)
    return services


@app.route('/image')
def image():
    logger = logging.getLogger('inkframe')
    logger.info('Request received for /image')
    if services is None:
        return Response('Image service not initialised', status=500, mimetype='text/plain')
    try:
        served = services.manager.serve_current()
    except FrameError as e:
        logger.error(f"Failed to produce image: {e}")
        return Response(f"Failed to produce image: {e}", status=500, mimetype='text/plain')
    except Exception:  # pylint: disable=broad-except
        logger.exception('Server Error')
        return Response('Internal Server Error', status=500, mimetype='text/plain')

    last_modified = http_date(served.mtime)
    headers = {
        'Cache-Control': 'no-cache',
        'ETag': served.etag,
        'Last-Modified': last_modified,
    }
    if request.headers.get('If-Modified-Since') == last_modified:
        return Response(status=304, headers=headers)
    return Response(served.data, status=200, mimetype=served.mimetype, headers=headers)


@app.route('/health')
def health():
    health_info = {
        'uptime_seconds': int(time.time() - START_TIME),
        'album_configured': services is not None,
    }
    if services is not None:
        health_info.update(services.manager.status())
        health_info['cached_urls'] = services.url_cache.size(services.album_url)
        health_info['blocklist_size'] = len(services.blocklist)
        health_info['observed_album_size'] = services.resolver.observed_size(services.album_url)
    return health_info


def main():
    load_dotenv()
    config = load_config(os.environ.get('INKFRAME_CONFIG'))
    logger = setup_logging(config)
    try:
        config = validate_config(apply_env_overrides(config))
        setup_logging(config)
        init_services(config)
    except ConfigError as e:
        logger.error(f"Error: {e}")
        sys.exit(1)

    host = config['server']['host']
    port = config['server']['port']
    logger.info(f"Server running on port {port}")
    logger.info(f"Monitoring album: {services.album_url}")
    try:
        app.run(host=host, port=port, debug=False, use_reloader=False, threaded=True)
    finally:
        services.manager.close()


if __name__ == '__main__':
    main()
