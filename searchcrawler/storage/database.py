"""
Database storage layer for crawled pages and crawl errors.
Supports both file-based and Cassandra storage.
"""

import hashlib
import json
import logging
import re
import traceback
from pathlib import Path
from typing import Optional, Dict, List, Any
from dataclasses import asdict
from datetime import datetime, timezone

from ..crawler.parser import PageData
from ..utils.config import DatabaseConfig


SNIPPET_LENGTH = 200
PAGE_ID_PATTERN = re.compile(r'[0-9a-f]{64}')


class DatabaseError(Exception):
    """Storage backend could not be reached or written."""
    pass


def page_id_for(url: str) -> str:
    """Stable document id for a page URL."""
    return hashlib.sha256(url.encode('utf-8')).hexdigest()


def is_valid_page_id(page_id: str) -> bool:
    return bool(PAGE_ID_PATTERN.fullmatch(page_id or ''))


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def _matches(document: Dict[str, Any], terms: List[str]) -> bool:
    haystack = ' '.join(
        str(document.get(key) or '') for key in ('title', 'description', 'body_text')
    ).lower()
    return all(term in haystack for term in terms)


def _summary(document: Dict[str, Any]) -> Dict[str, Any]:
    return {
        'id': document.get('id') or page_id_for(document['url']),
        'url': document['url'],
        'title': document.get('title', ''),
        'description': document.get('description', ''),
        'snippet': (document.get('body_text') or '')[:SNIPPET_LENGTH],
        'timestamp': document.get('timestamp'),
    }


class StorageBackend:
    """Abstract base class for storage backends."""

    async def initialize(self):
        raise NotImplementedError

    async def save_page(self, page: PageData) -> bool:
        raise NotImplementedError

    async def get_page(self, page_id: str) -> Optional[Dict[str, Any]]:
        raise NotImplementedError

    async def list_pages(self, limit: int = 10, offset: int = 0,
                         domain: Optional[str] = None) -> Dict[str, Any]:
        raise NotImplementedError

    async def search(self, query: str, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
        raise NotImplementedError

    async def log_crawl_error(self, url: str, error: BaseException):
        raise NotImplementedError

    async def get_stats(self) -> Dict[str, Any]:
        raise NotImplementedError

    async def close(self):
        raise NotImplementedError


class FileStorageBackend(StorageBackend):
    """File-based storage backend for development and small-scale deployments."""

    def __init__(self, data_directory: str):
        self.data_directory = Path(data_directory)
        self.logger = logging.getLogger(__name__)
        self.index: Dict[str, Dict[str, Any]] = {}
        self.stats = {
            'total_stored': 0,
            'storage_errors': 0,
            'errors_logged': 0
        }

    @property
    def index_file(self) -> Path:
        return self.data_directory / 'index' / 'url_index.json'

    @property
    def errors_file(self) -> Path:
        return self.data_directory / 'errors' / 'crawl_errors.jsonl'

    async def initialize(self):
        """Create data directory structure and load the URL index."""
        try:
            for subdirectory in ('content', 'index', 'errors'):
                (self.data_directory / subdirectory).mkdir(parents=True, exist_ok=True)

            if self.index_file.exists():
                with open(self.index_file, 'r', encoding='utf-8') as f:
                    self.index = json.load(f)

            stats_file = self.data_directory / 'stats.json'
            if stats_file.exists():
                with open(stats_file, 'r', encoding='utf-8') as f:
                    self.stats.update(json.load(f))

            self.logger.info(f"File storage initialized at {self.data_directory}")

        except (OSError, json.JSONDecodeError) as e:
            raise DatabaseError(f"Failed to initialize file storage: {e}") from e

    def _get_file_path(self, page_id: str) -> Path:
        # First 2 chars of the hash as directory
        return self.data_directory / 'content' / page_id[:2] / f"{page_id}.json"

    async def save_page(self, page: PageData) -> bool:
        """Store page data to a JSON document, replacing any earlier version."""
        page_id = page_id_for(page.url)
        try:
            file_path = self._get_file_path(page_id)
            file_path.parent.mkdir(parents=True, exist_ok=True)

            document = asdict(page)
            document['id'] = page_id
            document['stored_at'] = _utcnow()

            with open(file_path, 'w', encoding='utf-8') as f:
                json.dump(document, f, ensure_ascii=False, indent=2)

            self.index[page_id] = {
                'url': page.url,
                'domain': page.domain,
                'file_path': str(file_path.relative_to(self.data_directory)),
                'indexed_at': document['stored_at']
            }
            self._write_index()

            self.stats['total_stored'] += 1
            self.logger.debug(f"Stored page {page.url} to {file_path}")
            return True

        except OSError as e:
            self.stats['storage_errors'] += 1
            self.logger.error(f"Error storing page for {page.url}: {e}")
            return False

    def _write_index(self):
        with open(self.index_file, 'w', encoding='utf-8') as f:
            json.dump(self.index, f, ensure_ascii=False, indent=2)

    def _load_document(self, page_id: str) -> Optional[Dict[str, Any]]:
        if not is_valid_page_id(page_id):
            return None
        file_path = self._get_file_path(page_id)
        if not file_path.exists():
            return None
        with open(file_path, 'r', encoding='utf-8') as f:
            return json.load(f)

    def _entries_newest_first(self, domain: Optional[str] = None) -> List[str]:
        entries = [
            (entry['indexed_at'], page_id) for page_id, entry in self.index.items()
            if domain is None or entry.get('domain') == domain
            or (entry.get('domain') or '').endswith('.' + domain)
        ]
        return [page_id for _, page_id in sorted(entries, reverse=True)]

    async def get_page(self, page_id: str) -> Optional[Dict[str, Any]]:
        return self._load_document(page_id)

    async def list_pages(self, limit: int = 10, offset: int = 0,
                         domain: Optional[str] = None) -> Dict[str, Any]:
        page_ids = self._entries_newest_first(domain)
        pages = []
        for page_id in page_ids[offset:offset + limit]:
            document = self._load_document(page_id)
            if document:
                pages.append(_summary(document))
        return {'total': len(page_ids), 'pages': pages}

    async def search(self, query: str, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
        """Pages containing every query term, newest first."""
        terms = [term for term in query.lower().split() if term]
        matches = []
        for page_id in self._entries_newest_first():
            document = self._load_document(page_id)
            if document and _matches(document, terms):
                matches.append(_summary(document))
        return {'total': len(matches), 'results': matches[offset:offset + limit]}

    async def log_crawl_error(self, url: str, error: BaseException):
        record = {
            'url': url,
            'error_type': type(error).__name__,
            'message': str(error),
            'stack': ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
            'timestamp': _utcnow()
        }
        try:
            with open(self.errors_file, 'a', encoding='utf-8') as f:
                f.write(json.dumps(record, ensure_ascii=False) + '\n')
            self.stats['errors_logged'] += 1
        except OSError as e:
            self.logger.error(f"Error logging crawl error for {url}: {e}")

    async def get_errors(self, url: Optional[str] = None) -> List[Dict[str, Any]]:
        if not self.errors_file.exists():
            return []
        with open(self.errors_file, 'r', encoding='utf-8') as f:
            records = [json.loads(line) for line in f if line.strip()]
        return [record for record in records if url is None or record['url'] == url]

    async def get_stats(self) -> Dict[str, Any]:
        return {
            'pages': len(self.index),
            'errors': len(await self.get_errors()),
            'domains': len({entry.get('domain') for entry in self.index.values()}),
            **self.stats
        }

    async def close(self):
        """Save statistics."""
        try:
            with open(self.data_directory / 'stats.json', 'w', encoding='utf-8') as f:
                json.dump(self.stats, f, indent=2)
        except OSError as e:
            self.logger.error(f"Error saving statistics: {e}")


class CassandraStorageBackend(StorageBackend):
    """Cassandra storage backend for production deployments."""

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.cluster = None
        self.session = None
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_stored': 0,
            'storage_errors': 0,
            'query_errors': 0
        }

    async def initialize(self):
        """Initialize Cassandra connection and keyspace."""
        try:
            from cassandra.cluster import Cluster
            from cassandra.policies import DCAwareRoundRobinPolicy
        except ImportError as e:
            raise DatabaseError("Cassandra driver not available. Install cassandra-driver package.") from e

        try:
            self.cluster = Cluster(
                self.config.get('hosts', ['localhost']),
                port=self.config.get('port', 9042),
                load_balancing_policy=DCAwareRoundRobinPolicy()
            )
            self.session = self.cluster.connect()

            keyspace = self.config.get('keyspace', 'crawler_data')
            replication_factor = self.config.get('replication_factor', 1)

            self.session.execute(f"""
                CREATE KEYSPACE IF NOT EXISTS {keyspace}
                WITH replication = {{
                    'class': 'SimpleStrategy',
                    'replication_factor': {replication_factor}
                }}
            """)
            self.session.set_keyspace(keyspace)
            self._create_tables()

            self.logger.info(f"Cassandra storage initialized with keyspace: {keyspace}")

        except Exception as e:
            raise DatabaseError(f"Failed to initialize Cassandra: {e}") from e

    def _create_tables(self):
        self.session.execute("""
            CREATE TABLE IF NOT EXISTS pages (
                page_id text PRIMARY KEY,
                url text,
                domain text,
                title text,
                description text,
                body_text text,
                document text,
                crawled_at timestamp
            )
        """)
        self.session.execute("""
            CREATE TABLE IF NOT EXISTS crawl_errors (
                url text,
                error_id timeuuid,
                error_type text,
                message text,
                stack text,
                occurred_at timestamp,
                PRIMARY KEY (url, error_id)
            )
        """)
        self.session.execute("""
            CREATE TABLE IF NOT EXISTS crawler_stats (
                stat_type text PRIMARY KEY,
                value counter
            )
        """)

    async def save_page(self, page: PageData) -> bool:
        try:
            document = asdict(page)
            self.session.execute("""
                INSERT INTO pages (page_id, url, domain, title, description, body_text, document, crawled_at)
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            """, (
                page_id_for(page.url),
                page.url,
                page.domain,
                page.title,
                page.description,
                page.body_text,
                json.dumps(document, ensure_ascii=False),
                datetime.now(timezone.utc)
            ))
            self.session.execute(
                "UPDATE crawler_stats SET value = value + 1 WHERE stat_type = 'pages_stored'"
            )
            self.stats['total_stored'] += 1
            return True

        except Exception as e:
            self.stats['storage_errors'] += 1
            self.logger.error(f"Error storing page for {page.url}: {e}")
            return False

    def _row_document(self, row) -> Dict[str, Any]:
        document = json.loads(row.document) if row.document else {'url': row.url}
        document['id'] = row.page_id
        return document

    async def get_page(self, page_id: str) -> Optional[Dict[str, Any]]:
        row = self.session.execute(
            "SELECT page_id, url, document FROM pages WHERE page_id = %s", (page_id,)
        ).one()
        return self._row_document(row) if row else None

    def _scan(self):
        return self.session.execute(
            "SELECT page_id, url, domain, title, description, body_text, document FROM pages"
        )

    async def list_pages(self, limit: int = 10, offset: int = 0,
                         domain: Optional[str] = None) -> Dict[str, Any]:
        documents = [
            self._row_document(row) for row in self._scan()
            if domain is None or (row.domain or '') == domain or (row.domain or '').endswith('.' + domain)
        ]
        documents.sort(key=lambda document: document.get('timestamp') or '', reverse=True)
        return {'total': len(documents), 'pages': [_summary(d) for d in documents[offset:offset + limit]]}

    async def search(self, query: str, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
        terms = [term for term in query.lower().split() if term]
        matches = [
            _summary(self._row_document(row)) for row in self._scan()
            if _matches({'title': row.title, 'description': row.description, 'body_text': row.body_text}, terms)
        ]
        return {'total': len(matches), 'results': matches[offset:offset + limit]}

    async def log_crawl_error(self, url: str, error: BaseException):
        try:
            self.session.execute("""
                INSERT INTO crawl_errors (url, error_id, error_type, message, stack, occurred_at)
                VALUES (%s, now(), %s, %s, %s, %s)
            """, (
                url,
                type(error).__name__,
                str(error),
                ''.join(traceback.format_exception(type(error), error, error.__traceback__)),
                datetime.now(timezone.utc)
            ))
            self.session.execute(
                "UPDATE crawler_stats SET value = value + 1 WHERE stat_type = 'errors'"
            )
        except Exception as e:
            self.stats['query_errors'] += 1
            self.logger.error(f"Error logging crawl error for {url}: {e}")

    async def get_stats(self) -> Dict[str, Any]:
        try:
            result = self.session.execute("SELECT stat_type, value FROM crawler_stats")
            db_stats = {row.stat_type: row.value for row in result}
        except Exception as e:
            self.stats['query_errors'] += 1
            self.logger.error(f"Error getting stats: {e}")
            db_stats = {}

        return {
            'pages': db_stats.get('pages_stored', 0),
            'errors': db_stats.get('errors', 0),
            **self.stats
        }

    async def close(self):
        if self.cluster:
            self.cluster.shutdown()
            self.logger.info("Cassandra connections closed")


class DatabaseManager:
    """Main database manager that handles different storage backends."""

    def __init__(self, config: DatabaseConfig):
        self.config = config
        self.backend: Optional[StorageBackend] = None
        self.logger = logging.getLogger(__name__)

    async def initialize(self):
        """Initialize the appropriate storage backend."""
        backend_type = self.config.type.lower()

        if backend_type == 'cassandra':
            self.backend = CassandraStorageBackend(self.config.cassandra)
        elif backend_type == 'file':
            self.backend = FileStorageBackend(self.config.file['data_directory'])
        else:
            raise DatabaseError(f"Unknown database type: {backend_type}")

        await self.backend.initialize()
        self.logger.info(f"Database manager initialized with {backend_type} backend")

    def _require_backend(self) -> StorageBackend:
        if not self.backend:
            raise DatabaseError("Database not initialized")
        return self.backend

    async def save_page(self, page: PageData) -> bool:
        return await self._require_backend().save_page(page)

    async def get_page(self, page_id: str) -> Optional[Dict[str, Any]]:
        if not is_valid_page_id(page_id):
            return None
        return await self._require_backend().get_page(page_id)

    async def list_pages(self, limit: int = 10, offset: int = 0,
                         domain: Optional[str] = None) -> Dict[str, Any]:
        return await self._require_backend().list_pages(limit, offset, domain)

    async def search(self, query: str, limit: int = 10, offset: int = 0) -> Dict[str, Any]:
        return await self._require_backend().search(query, limit, offset)

    async def log_crawl_error(self, url: str, error: BaseException):
        await self._require_backend().log_crawl_error(url, error)

    async def get_stats(self) -> Dict[str, Any]:
        return await self._require_backend().get_stats()

    async def close(self):
        if self.backend:
            await self.backend.close()
            self.backend = None
