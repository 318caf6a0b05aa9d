"""
Image metadata storage.
Supports both Cassandra and file-based storage.
"""

import asyncio
import json
import logging
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from functools import partial
from pathlib import Path
from typing import Optional, Dict, List, Any

try:
    from cassandra.cluster import Cluster
    from cassandra.policies import DCAwareRoundRobinPolicy
    CASSANDRA_AVAILABLE = True
except ImportError:
    CASSANDRA_AVAILABLE = False

from ..utils.config import DatabaseConfig


DEFAULT_QUERY_LIMIT = 500


class DatabaseError(Exception):
    """Custom exception for database operations."""
    pass


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class ImageMetadata:
    """Persisted record for one downloaded image."""
    url: str
    filename: str
    thumbnail_path: Optional[str] = None
    alt: str = ""
    title: str = ""
    width: int = 0
    height: int = 0
    format: str = ""
    crawled_at: datetime = field(default_factory=_utcnow)
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data['crawled_at'] = self.crawled_at.isoformat()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ImageMetadata':
        data = dict(data)
        crawled_at = data.get('crawled_at')
        if isinstance(crawled_at, str):
            data['crawled_at'] = datetime.fromisoformat(crawled_at)
        return cls(**data)


@dataclass
class ImageQuery:
    """Filters understood by every backend. Unset fields do not filter."""
    format: Optional[str] = None
    filename: Optional[str] = None
    min_width: Optional[int] = None
    min_height: Optional[int] = None
    limit: int = DEFAULT_QUERY_LIMIT

    def matches(self, record: ImageMetadata) -> bool:
        if self.format and record.format != self.format:
            return False
        if self.filename and self.filename not in record.filename:
            return False
        if self.min_width is not None and record.width < self.min_width:
            return False
        if self.min_height is not None and record.height < self.min_height:
            return False
        return True

    def apply(self, records: List[ImageMetadata]) -> List[ImageMetadata]:
        """Filter, order newest first, and cap at limit."""
        selected = [record for record in records if self.matches(record)]
        selected.sort(key=lambda record: record.crawled_at, reverse=True)
        return selected[:self.limit]


class StorageBackend:
    """Abstract base class for storage backends."""

    async def initialize(self):
        """Initialize the storage backend."""
        raise NotImplementedError

    async def insert_image(self, record: ImageMetadata) -> bool:
        """Store one image record. Returns False if it could not be stored."""
        raise NotImplementedError

    async def query_images(self, query: ImageQuery) -> List[ImageMetadata]:
        """Return records matching the query, newest first."""
        raise NotImplementedError

    async def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        raise NotImplementedError

    async def close(self):
        """Close storage connections."""
        raise NotImplementedError


class FileStorageBackend(StorageBackend):
    """Append-only JSON lines storage for development and small crawls."""

    def __init__(self, data_directory: str):
        self.data_directory = Path(data_directory)
        self.records_file = self.data_directory / 'images.jsonl'
        self.logger = logging.getLogger(__name__)
        self._write_lock = asyncio.Lock()
        self.stats = {
            'total_stored': 0,
            'storage_errors': 0
        }

    async def initialize(self):
        """Create the data directory and load saved statistics."""
        try:
            self.data_directory.mkdir(parents=True, exist_ok=True)
            self.records_file.touch(exist_ok=True)

            stats_file = self.data_directory / 'stats.json'
            if stats_file.exists():
                with open(stats_file, 'r') as f:
                    self.stats.update(json.load(f))

            self.logger.info(f"File storage initialized at {self.data_directory}")

        except (OSError, ValueError) as e:
            raise DatabaseError(f"Failed to initialize file storage: {e}")

    async def insert_image(self, record: ImageMetadata) -> bool:
        """Append one record as a JSON line."""
        line = json.dumps(record.to_dict(), ensure_ascii=False)
        try:
            async with self._write_lock:
                with open(self.records_file, 'a', encoding='utf-8') as f:
                    f.write(line + '\n')

            self.stats['total_stored'] += 1
            self.logger.debug(f"Stored image record {record.id} for {record.url}")
            return True

        except OSError as e:
            self.stats['storage_errors'] += 1
            self.logger.error(f"Error storing image record for {record.url}: {e}")
            return False

    async def query_images(self, query: ImageQuery) -> List[ImageMetadata]:
        records = []
        if not self.records_file.exists():
            return records

        with open(self.records_file, 'r', encoding='utf-8') as f:
            for line_number, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(ImageMetadata.from_dict(json.loads(line)))
                except (ValueError, TypeError) as e:
                    self.logger.warning(f"Skipping malformed record on line {line_number}: {e}")

        return query.apply(records)

    async def get_stats(self) -> Dict[str, Any]:
        stats = self.stats.copy()
        if self.records_file.exists():
            stats['total_size_bytes'] = self.records_file.stat().st_size
        return stats

    async def close(self):
        """Save statistics."""
        try:
            stats_file = self.data_directory / 'stats.json'
            with open(stats_file, 'w') as f:
                json.dump(self.stats, f, indent=2)
        except OSError as e:
            self.logger.error(f"Error saving statistics: {e}")


class CassandraStorageBackend(StorageBackend):
    """Cassandra storage backend for production deployments."""

    def __init__(self, config: Dict[str, Any]):
        if not CASSANDRA_AVAILABLE:
            raise DatabaseError("Cassandra driver not available. Install the cassandra extra.")

        self.config = config
        self.cluster = None
        self.session = None
        self._insert_statement = None
        self.logger = logging.getLogger(__name__)
        self.stats = {
            'total_stored': 0,
            'storage_errors': 0,
            'query_errors': 0
        }

    async def _execute(self, statement, parameters=None):
        """Run a blocking driver call off the event loop."""
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, partial(self.session.execute, statement, parameters))

    async def initialize(self):
        """Initialize Cassandra connection, keyspace and table."""
        try:
            hosts = self.config.get('hosts', ['localhost'])
            port = self.config.get('port', 9042)

            self.cluster = Cluster(
                hosts,
                port=port,
                load_balancing_policy=DCAwareRoundRobinPolicy()
            )
            loop = asyncio.get_running_loop()
            self.session = await loop.run_in_executor(None, self.cluster.connect)

            keyspace = self.config.get('keyspace', 'image_crawler')
            replication_factor = self.config.get('replication_factor', 1)

            await self._execute(f"""
                CREATE KEYSPACE IF NOT EXISTS {keyspace}
                WITH replication = {{
                    'class': 'SimpleStrategy',
                    'replication_factor': {replication_factor}
                }}
            """)
            self.session.set_keyspace(keyspace)

            await self._execute("""
                CREATE TABLE IF NOT EXISTS images (
                    id text PRIMARY KEY,
                    url text,
                    filename text,
                    thumbnail_path text,
                    alt_text text,
                    title_text text,
                    width int,
                    height int,
                    format text,
                    crawled_at timestamp
                )
            """)

            self._insert_statement = self.session.prepare("""
                INSERT INTO images (
                    id, url, filename, thumbnail_path, alt_text, title_text,
                    width, height, format, crawled_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """)

            self.logger.info(f"Cassandra storage initialized with keyspace: {keyspace}")

        except Exception as e:
            raise DatabaseError(f"Failed to initialize Cassandra: {e}")

    async def insert_image(self, record: ImageMetadata) -> bool:
        try:
            await self._execute(self._insert_statement, (
                record.id,
                record.url,
                record.filename,
                record.thumbnail_path,
                record.alt,
                record.title,
                record.width,
                record.height,
                record.format,
                record.crawled_at
            ))
            self.stats['total_stored'] += 1
            self.logger.debug(f"Stored image record to Cassandra: {record.url}")
            return True

        except Exception as e:
            self.stats['storage_errors'] += 1
            self.logger.error(f"Error storing image record for {record.url}: {e}")
            return False

    async def query_images(self, query: ImageQuery) -> List[ImageMetadata]:
        """
        Scan the table and filter client-side; Cassandra has no substring match
        or cross-partition ordering without secondary indexes.
        """
        try:
            rows = await self._execute("SELECT * FROM images")
        except Exception as e:
            self.stats['query_errors'] += 1
            raise DatabaseError(f"Image query failed: {e}")

        records = []
        for row in rows:
            crawled_at = row.crawled_at
            if crawled_at is not None and crawled_at.tzinfo is None:
                crawled_at = crawled_at.replace(tzinfo=timezone.utc)
            records.append(ImageMetadata(
                id=row.id,
                url=row.url,
                filename=row.filename,
                thumbnail_path=row.thumbnail_path,
                alt=row.alt_text or "",
                title=row.title_text or "",
                width=row.width or 0,
                height=row.height or 0,
                format=row.format or "",
                crawled_at=crawled_at or _utcnow()
            ))
        return query.apply(records)

    async def get_stats(self) -> Dict[str, Any]:
        return self.stats.copy()

    async def close(self):
        """Close Cassandra connections."""
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
            self.backend = FileStorageBackend(self.config.file.get('data_directory', 'data'))
        else:
            raise DatabaseError(f"Unknown database type: {backend_type}")

        await self.backend.initialize()
        self.logger.info(f"Database manager initialized with {backend_type} backend")

    def _require_backend(self) -> StorageBackend:
        if not self.backend:
            raise DatabaseError("Database not initialized")
        return self.backend

    async def insert_image(self, record: ImageMetadata) -> bool:
        """Store one image record."""
        return await self._require_backend().insert_image(record)

    async def query_images(self, query: Optional[ImageQuery] = None) -> List[ImageMetadata]:
        """Query image records, newest first."""
        return await self._require_backend().query_images(query or ImageQuery())

    async def get_stats(self) -> Dict[str, Any]:
        """Get storage statistics."""
        return await self._require_backend().get_stats()

    async def close(self):
        """Close database connections."""
        if self.backend:
            await self.backend.close()
