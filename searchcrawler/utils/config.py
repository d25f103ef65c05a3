"""
Configuration management for the web crawler system.

Precedence: built-in defaults (with environment overrides) < config file < CLI flags.
"""

import os
import copy
import yaml
import logging
from pathlib import Path
from typing import Dict, List, Any, Optional, Mapping
from dataclasses import dataclass, field, asdict


class ConfigError(ValueError):
    """Invalid or unreadable configuration."""
    pass


@dataclass
class CrawlerConfig:
    """Configuration for crawler behavior."""
    seed_urls: List[str]
    max_pages: int
    max_depth: int
    request_delay_ms: float
    concurrency: int
    request_timeout: float
    user_agent: str
    respect_robots_txt: bool
    follow_redirects: bool
    max_pages_per_domain: int
    backoff_interval: float
    allowed_domains: List[str] = field(default_factory=list)
    blocked_domains: List[str] = field(default_factory=list)


@dataclass
class RenderConfig:
    """Configuration for headless-browser rendering."""
    enabled: bool
    auto_detect: bool
    url_patterns: List[str]
    wait_time_ms: int
    wait_for_selector: str
    scroll_to_bottom: bool
    max_scroll_distance: int
    headless: bool


@dataclass
class PriorityConfig:
    """Configuration for priority-ordered crawling."""
    enabled: bool
    important_domains: List[Dict[str, Any]]
    important_patterns: List[Dict[str, Any]]


@dataclass
class DatabaseConfig:
    """Configuration for page storage and the crawl state tracker."""
    type: str
    state_backend: str
    file: Dict[str, Any]
    cassandra: Dict[str, Any]


@dataclass
class RedisConfig:
    """Configuration for Redis."""
    url: str
    key_prefix: str


@dataclass
class LoggingConfig:
    """Configuration for logging."""
    level: str
    file: str
    format: str
    json: bool


@dataclass
class MonitoringConfig:
    """Configuration for monitoring."""
    prometheus_port: int
    metrics_enabled: bool


@dataclass
class ServerConfig:
    """Configuration for the query API."""
    host: str
    port: int


@dataclass
class Config:
    """Main configuration class."""
    crawler: CrawlerConfig
    render: RenderConfig
    priority: PriorityConfig
    database: DatabaseConfig
    redis: RedisConfig
    logging: LoggingConfig
    monitoring: MonitoringConfig
    server: ServerConfig

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


DATABASE_TYPES = ('file', 'cassandra')
STATE_BACKENDS = ('redis', 'memory')


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    value = env.get(name)
    if value is None or value == '':
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def _env_number(env: Mapping[str, str], name: str, default, convert):
    value = env.get(name)
    if value is None or value.strip() == '':
        return default
    try:
        return convert(value)
    except ValueError:
        raise ConfigError(f"Environment variable {name} must be a number, got '{value}'") from None


def _env_int(env: Mapping[str, str], name: str, default: int) -> int:
    return _env_number(env, name, default, int)


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    return _env_number(env, name, default, float)


def default_config_data(env: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    """Built-in defaults with environment variables applied."""
    env = os.environ if env is None else env

    return {
        'crawler': {
            'seed_urls': [],
            'max_pages': _env_int(env, 'MAX_PAGES', 100),
            'max_depth': _env_int(env, 'MAX_DEPTH', 3),
            'request_delay_ms': _env_float(env, 'REQUEST_DELAY', 1000.0),
            'concurrency': _env_int(env, 'CONCURRENCY', 5),
            'request_timeout': _env_float(env, 'REQUEST_TIMEOUT', 10.0),
            'user_agent': env.get('USER_AGENT', 'SearchCrawler/1.0 (+https://example.com/bot)'),
            'respect_robots_txt': env.get('RESPECT_ROBOTS', 'true').strip().lower() != 'false',
            'follow_redirects': True,
            'max_pages_per_domain': _env_int(env, 'MAX_PAGES_PER_DOMAIN', 1000),
            'backoff_interval': 1.0,
            'allowed_domains': [],
            'blocked_domains': [],
        },
        'render': {
            'enabled': _env_bool(env, 'ENABLE_RENDERING', False),
            'auto_detect': _env_bool(env, 'RENDER_AUTO_DETECT', False),
            'url_patterns': [r'\.js$', '(angular|react|vue)', 'spa', 'single-page'],
            'wait_time_ms': _env_int(env, 'RENDER_WAIT_TIME', 1000),
            'wait_for_selector': 'body',
            'scroll_to_bottom': True,
            'max_scroll_distance': 10000,
            'headless': True,
        },
        'priority': {
            'enabled': _env_bool(env, 'ENABLE_PRIORITY', False),
            'important_domains': [],
            'important_patterns': [
                {'pattern': 'sitemap', 'importance': 9},
                {'pattern': '/index.html', 'importance': 8},
                {'pattern': '/about', 'importance': 7},
                {'pattern': '/blog', 'importance': 6},
            ],
        },
        'database': {
            'type': env.get('DATABASE_TYPE', 'file'),
            'state_backend': env.get('STATE_BACKEND', 'redis'),
            'file': {'data_directory': env.get('DATA_DIRECTORY', 'data')},
            'cassandra': {
                'hosts': ['localhost'],
                'port': 9042,
                'keyspace': 'crawler_data',
                'replication_factor': 1,
            },
        },
        'redis': {
            'url': env.get('REDIS_URL', 'redis://localhost:6379/0'),
            'key_prefix': 'crawler',
        },
        'logging': {
            'level': env.get('LOG_LEVEL', 'INFO'),
            'file': env.get('LOG_FILE', 'logs/crawler.log'),
            'format': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            'json': _env_bool(env, 'LOG_JSON', False),
        },
        'monitoring': {
            'prometheus_port': _env_int(env, 'PROMETHEUS_PORT', 8000),
            'metrics_enabled': _env_bool(env, 'METRICS_ENABLED', False),
        },
        'server': {
            'host': env.get('API_HOST', '0.0.0.0'),
            'port': _env_int(env, 'API_PORT', 3000),
        },
    }


def merge_config_data(base: Dict[str, Any], overlay: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
    """
    Recursively merge overlay onto base without mutating either.
    Nested dicts merge; any other value in overlay replaces the base value.
    """
    merged = copy.deepcopy(base)
    for key, value in (overlay or {}).items():
        if isinstance(value, Mapping) and isinstance(merged.get(key), dict):
            merged[key] = merge_config_data(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def build_config(data: Mapping[str, Any]) -> Config:
    """Build a typed Config from merged configuration data."""
    sections = {
        'crawler': CrawlerConfig,
        'render': RenderConfig,
        'priority': PriorityConfig,
        'database': DatabaseConfig,
        'redis': RedisConfig,
        'logging': LoggingConfig,
        'monitoring': MonitoringConfig,
        'server': ServerConfig,
    }
    parsed = {}
    for name, section_cls in sections.items():
        try:
            parsed[name] = section_cls(**data.get(name, {}))
        except TypeError as e:
            raise ConfigError(f"Invalid '{name}' configuration: {e}") from e
    return Config(**parsed)


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_path: Optional[str] = None,
                 env: Optional[Mapping[str, str]] = None):
        self.config_path = Path(config_path) if config_path else None
        self.env = env
        self._config: Optional[Config] = None

    def read_file(self) -> Dict[str, Any]:
        """Read a JSON or YAML configuration file."""
        if self.config_path is None:
            return {}
        if not self.config_path.exists():
            raise ConfigError(f"Configuration file not found: {self.config_path}")

        try:
            with open(self.config_path, 'r', encoding='utf-8') as file:
                config_data = yaml.safe_load(file) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Could not parse {self.config_path}: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigError(f"Configuration file must contain a mapping: {self.config_path}")

        # JSON configs may keep seed URLs at the top level
        if 'seed_urls' in config_data:
            crawler_section = dict(config_data.get('crawler') or {})
            crawler_section.setdefault('seed_urls', config_data.pop('seed_urls'))
            config_data['crawler'] = crawler_section

        return config_data

    def load_config(self, overrides: Optional[Mapping[str, Any]] = None,
                    require_seeds: bool = False) -> Config:
        """Merge defaults, the config file and CLI overrides, then validate."""
        data = default_config_data(self.env)
        data = merge_config_data(data, self.read_file())
        data = merge_config_data(data, overrides)

        self._config = build_config(data)
        validate_config(self._config, require_seeds=require_seeds)
        return self._config

    @property
    def config(self) -> Config:
        """Get the loaded configuration."""
        if not self._config:
            raise ConfigError("Configuration not loaded. Call load_config() first.")
        return self._config


def validate_config(config: Config, require_seeds: bool = False):
    """Validate configuration values."""
    crawler = config.crawler

    if require_seeds and not crawler.seed_urls:
        raise ConfigError("At least one seed URL must be provided")

    if crawler.max_depth < 0:
        raise ConfigError("max_depth must be non-negative")

    if crawler.max_pages < 1:
        raise ConfigError("max_pages must be at least 1")

    if crawler.request_delay_ms < 0:
        raise ConfigError("request_delay_ms must be non-negative")

    if crawler.concurrency < 1:
        raise ConfigError("concurrency must be at least 1")

    if crawler.backoff_interval <= 0:
        raise ConfigError("backoff_interval must be positive")

    if config.database.type not in DATABASE_TYPES:
        raise ConfigError(f"Database type must be one of {', '.join(DATABASE_TYPES)}")

    if config.database.state_backend not in STATE_BACKENDS:
        raise ConfigError(f"State backend must be one of {', '.join(STATE_BACKENDS)}")

    logging.getLogger(__name__).debug("Configuration validation passed")


def load_config(config_path: Optional[str] = None,
                overrides: Optional[Mapping[str, Any]] = None,
                require_seeds: bool = False,
                env: Optional[Mapping[str, str]] = None) -> Config:
    """Load configuration from defaults, an optional file and overrides."""
    return ConfigManager(config_path, env).load_config(overrides, require_seeds=require_seeds)
