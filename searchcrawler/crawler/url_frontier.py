"""
URL Frontier implementation for managing URLs to crawl.
Implements dedup, priority scheduling and per-domain quotas.
"""

import heapq
import itertools
import logging
import re
import time
from typing import Dict, Set, Optional, List, Tuple, Any
from urllib.parse import urlparse
from dataclasses import dataclass, field
from enum import Enum

from .parser import extract_domain


class InvalidTransitionError(ValueError):
    """Raised when a task status would move backwards."""
    pass


class TaskStatus(Enum):
    """Crawl task lifecycle. Status only moves forward."""
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    ERROR = 'error'

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.ERROR)


_ALLOWED_TRANSITIONS = {
    TaskStatus.PENDING: {TaskStatus.PROCESSING},
    TaskStatus.PROCESSING: {TaskStatus.COMPLETED, TaskStatus.ERROR},
    TaskStatus.COMPLETED: set(),
    TaskStatus.ERROR: set(),
}


def can_transition(current: TaskStatus, new: TaskStatus) -> bool:
    return new in _ALLOWED_TRANSITIONS[current]


@dataclass
class URLTask:
    """Represents a URL crawling task."""
    url: str
    depth: int
    parent_url: Optional[str] = None
    priority_score: Optional[float] = None
    status: TaskStatus = TaskStatus.PENDING
    discovered_time: float = field(default_factory=time.time)
    updated_time: float = field(default_factory=time.time)

    @property
    def domain(self) -> Optional[str]:
        return extract_domain(self.url)

    def transition_to(self, status: TaskStatus):
        """Move the task to a new status, refusing backward moves."""
        if not can_transition(self.status, status):
            raise InvalidTransitionError(
                f"Cannot move {self.url} from {self.status.value} to {status.value}"
            )
        self.status = status
        self.updated_time = time.time()

    def to_dict(self) -> dict:
        """Convert to dictionary for serialization."""
        return {
            'url': self.url,
            'depth': self.depth,
            'parent_url': self.parent_url,
            'priority_score': self.priority_score,
            'status': self.status.value,
            'discovered_time': self.discovered_time,
            'updated_time': self.updated_time
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'URLTask':
        """Create URLTask from dictionary."""
        return cls(
            url=data['url'],
            depth=int(data['depth']),
            parent_url=data.get('parent_url') or None,
            priority_score=data.get('priority_score'),
            status=TaskStatus(data.get('status', TaskStatus.PENDING.value)),
            discovered_time=float(data.get('discovered_time', time.time())),
            updated_time=float(data.get('updated_time', time.time()))
        )


BASE_PRIORITY = 100
SEED_PRIORITY = 0

# derived URLs can score below 0, so seeds get their own heap tier
SEED_TIER = 0
DERIVED_TIER = 1

HOME_PAGE_PATTERN = re.compile(r'/(index|home|main)(\.(html|php|asp))?$', re.IGNORECASE)
INFO_PAGE_PATTERN = re.compile(r'/(about|contact|faq)(\.(html|php|asp))?$', re.IGNORECASE)
CONTENT_PAGE_PATTERN = re.compile(r'/(blog|news|article)s?/', re.IGNORECASE)
LISTING_PAGE_PATTERN = re.compile(r'/(tag|category|archive|search)', re.IGNORECASE)
PAGINATION_PATTERN = re.compile(r'/page/\d+', re.IGNORECASE)
PAGINATION_QUERY_PATTERN = re.compile(r'(^|&)page=', re.IGNORECASE)
STATIC_ASSET_PATTERN = re.compile(r'\.(jpg|jpeg|png|gif|css|js)$', re.IGNORECASE)


def calculate_url_priority(url: str, depth: int = 0, parent_importance: float = 0,
                           url_importance: float = 0, domain_importance: float = 0) -> float:
    """
    Score a URL for crawl order. Lower scores are crawled sooner.

    Args:
        url: The URL to score
        depth: Link depth from the seed set
        parent_importance: Importance derived from the linking page's score
        url_importance: Importance configured for this exact URL
        domain_importance: Importance configured for the URL's domain

    Returns:
        Priority score (base 100, adjusted additively)
    """
    score = BASE_PRIORITY
    score += depth * 10
    score -= domain_importance * 20
    score -= url_importance * 30
    score -= parent_importance * 5

    parsed = urlparse(url)
    path = parsed.path

    score += len([segment for segment in path.split('/') if segment]) * 5

    if HOME_PAGE_PATTERN.search(path):
        score -= 15
    if INFO_PAGE_PATTERN.search(path):
        score -= 10
    if CONTENT_PAGE_PATTERN.search(path):
        score -= 5

    if LISTING_PAGE_PATTERN.search(path):
        score += 20
    if PAGINATION_PATTERN.search(path) or PAGINATION_QUERY_PATTERN.search(parsed.query):
        score += 15
    if STATIC_ASSET_PATTERN.search(path):
        score += 50

    if 'sitemap' in url:
        score -= 50

    return score


def parent_importance_from_score(parent_score: Optional[float]) -> float:
    """
    Importance handed from a parent page to its children.

    Low-priority parents (score above 200) yield negative importance, which
    pushes their children further back.
    """
    if parent_score is None:
        return 0
    return 10 - parent_score / 20


@dataclass(order=True)
class FrontierEntry:
    """Heap entry ordered by (tier, score, insertion sequence). Seeds sit in tier 0."""
    tier: int
    priority_score: float
    sequence: int
    url: str = field(compare=False)
    metadata: Dict[str, Any] = field(compare=False, default_factory=dict)


class URLFrontier:
    """
    In-memory priority frontier.

    Owns the pending queue, the set of dequeued URLs and the per-domain
    quota counts. Every method is synchronous, so under a single event loop
    each call is atomic with respect to concurrent workers.
    """

    def __init__(self, default_domain_limit: int = 1000,
                 important_patterns: Optional[List[Dict[str, Any]]] = None):
        self.default_domain_limit = default_domain_limit
        self.important_patterns = [
            (item['pattern'], item['importance']) for item in (important_patterns or [])
        ]
        self.logger = logging.getLogger(__name__)

        self._heap: List[FrontierEntry] = []
        self._sequence = itertools.count()
        self._queued: Set[str] = set()
        self.visited: Set[str] = set()

        self.domain_limits: Dict[str, int] = {}
        self.domain_counts: Dict[str, int] = {}
        self.url_importance: Dict[str, float] = {}
        self.domain_importance: Dict[str, float] = {}
        self._visited_domains: Set[str] = set()

    def initialize(self, seed_urls: List[str],
                   important_domains: Optional[List[Dict[str, Any]]] = None) -> int:
        """Register domain importance and add the seed URLs. Returns seeds added."""
        for item in important_domains or []:
            self.set_domain_importance(item['domain'], item['importance'])

        added = sum(1 for url in seed_urls if self.add_url(url, is_seed=True))
        self.logger.info(f"URL frontier initialized with {added} seed URLs, "
                         f"{len(self.domain_importance)} important domains")
        return added

    def add_url(self, url: str, depth: int = 0, parent_url: Optional[str] = None,
                parent_importance: float = 0, is_seed: bool = False) -> bool:
        """
        Add a URL to the frontier.
        Returns True if the URL was queued, False if it was a duplicate or
        its domain quota is exhausted.
        """
        if url in self.visited or url in self._queued:
            return False

        domain = extract_domain(url)

        if is_seed:
            score = SEED_PRIORITY
        else:
            limit = self.domain_limits.get(domain, self.default_domain_limit)
            if self.domain_counts.get(domain, 0) >= limit:
                self.logger.debug(f"Domain limit reached for {domain} ({limit}), skipping {url}")
                return False

            score = calculate_url_priority(
                url,
                depth=depth,
                parent_importance=parent_importance,
                url_importance=self._url_importance_for(url),
                domain_importance=self.domain_importance.get(domain, 0)
            )

        heapq.heappush(self._heap, FrontierEntry(
            tier=SEED_TIER if is_seed else DERIVED_TIER,
            priority_score=score,
            sequence=next(self._sequence),
            url=url,
            metadata={'depth': depth, 'parent_url': parent_url}
        ))
        self._queued.add(url)
        self.domain_counts[domain] = self.domain_counts.get(domain, 0) + 1

        self.logger.debug(f"Added URL to frontier: {url} (score={score})")
        return True

    def get_next_url(self) -> Optional[URLTask]:
        """Remove and return the most urgent task, marking it visited."""
        if not self._heap:
            return None

        entry = heapq.heappop(self._heap)
        self._queued.discard(entry.url)
        self.visited.add(entry.url)
        domain = extract_domain(entry.url)
        if domain:
            self._visited_domains.add(domain)

        return URLTask(
            url=entry.url,
            depth=entry.metadata['depth'],
            parent_url=entry.metadata['parent_url'],
            priority_score=entry.priority_score
        )

    def _url_importance_for(self, url: str) -> float:
        if url in self.url_importance:
            return self.url_importance[url]
        for pattern, importance in self.important_patterns:
            if pattern in url:
                return importance
        return 0

    def set_domain_limit(self, domain: str, limit: int):
        self.domain_limits[domain] = limit

    def set_url_importance(self, url: str, importance: float):
        self.url_importance[url] = importance

    def set_domain_importance(self, domain: str, importance: float):
        self.domain_importance[domain] = importance

    def queued_entries(self) -> List[Tuple[float, str]]:
        """Pending (score, url) pairs in crawl order."""
        return [(entry.priority_score, entry.url) for entry in sorted(self._heap)]

    def is_empty(self) -> bool:
        return not self._heap

    def __len__(self) -> int:
        return len(self._heap)

    def get_stats(self) -> Dict[str, int]:
        """Get frontier statistics."""
        return {
            'queue_size': len(self._heap),
            'visited_count': len(self.visited),
            'domains_visited': len(self._visited_domains)
        }
