"""
Web crawler core components.
"""

from .url_frontier import URLFrontier, URLTask, TaskStatus, calculate_url_priority
from .fetcher import WebFetcher, FetchResult, FetchError
from .parser import ContentParser, PageData, normalize_url
from .rate_limiter import DomainRateLimiter
from .render_strategy import RenderMode, RenderStrategySelector

__all__ = [
    'URLFrontier', 'URLTask', 'TaskStatus', 'calculate_url_priority',
    'WebFetcher', 'FetchResult', 'FetchError',
    'ContentParser', 'PageData', 'normalize_url',
    'DomainRateLimiter',
    'RenderMode', 'RenderStrategySelector'
]
