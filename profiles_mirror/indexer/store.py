"""
PostgreSQL profile store.

One row per address. Writes go through ``upsert`` which merges the incoming
record into the stored one under a row lock, so concurrent writers (live
events, rollback deletes, catch-up) never lose fields.
"""
import re
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

import psycopg2
import psycopg2.extras
import psycopg2.pool
import structlog

from profiles_mirror.indexer.errors import SchemaError

log = structlog.get_logger()

COLUMNS = ("address", "content_id", "last_updated_at", "name", "description", "registered_name")

SCHEMA = [
    """
    CREATE TABLE IF NOT EXISTS profiles (
        address TEXT PRIMARY KEY,
        content_id TEXT NOT NULL DEFAULT '',
        last_updated_at BIGINT NOT NULL DEFAULT 0,
        name TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        search_vector TSVECTOR GENERATED ALWAYS AS (
            to_tsvector('simple', coalesce(name, '') || ' ' || coalesce(description, ''))
        ) STORED
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_profiles_content_id ON profiles (content_id)",
    "CREATE INDEX IF NOT EXISTS idx_profiles_last_updated_at ON profiles (last_updated_at)",
    "CREATE INDEX IF NOT EXISTS idx_profiles_search ON profiles USING GIN (search_vector)",
]

MIGRATIONS = [
    # registered names arrived after the first release
    "ALTER TABLE profiles ADD COLUMN IF NOT EXISTS registered_name TEXT NOT NULL DEFAULT ''",
    "CREATE INDEX IF NOT EXISTS idx_profiles_registered_name ON profiles (registered_name)",
]

SEARCH_TERM = re.compile(r"\w+", re.UNICODE)


@dataclass(frozen=True)
class ProfileRecord:
    address: str
    content_id: str = ""
    last_updated_at: int = 0
    name: str = ""
    description: str = ""
    registered_name: str = ""

    @classmethod
    def from_row(cls, row: Dict) -> "ProfileRecord":
        return cls(**{col: row[col] if row[col] is not None else cls.__dataclass_fields__[col].default
                      for col in COLUMNS})

    def merge(self, incoming: "ProfileRecord") -> "ProfileRecord":
        """
        Merge a newer observation into this record.

        Non-empty incoming fields win, field by field, whatever block they come
        from; empty ones keep the stored value. ``last_updated_at`` never moves
        backwards.
        """
        if incoming.address != self.address:
            raise ValueError(f"Cannot merge {incoming.address} into {self.address}")

        def pick(current, new):
            return new if new else current

        return replace(
            self,
            content_id=pick(self.content_id, incoming.content_id),
            name=pick(self.name, incoming.name),
            description=pick(self.description, incoming.description),
            registered_name=pick(self.registered_name, incoming.registered_name),
            last_updated_at=max(self.last_updated_at, incoming.last_updated_at),
        )

    def to_dict(self) -> Dict:
        return {col: getattr(self, col) for col in COLUMNS}


def build_search_query(text: str) -> str:
    """Prefix query for to_tsquery: every term must match as a prefix."""
    terms = SEARCH_TERM.findall(text or "")
    return " & ".join(f"{term.lower()}:*" for term in terms)


class ProfileStore:
    """PostgreSQL-backed profile table."""

    def __init__(self, dsn: str, pool_size: int = 8, max_results: int = 100):
        self.dsn = dsn
        self.pool_size = pool_size
        self.max_results = max_results
        self.pool = None

    def connect(self):
        self.pool = psycopg2.pool.ThreadedConnectionPool(1, self.pool_size, self.dsn)

    def close(self):
        if self.pool:
            self.pool.closeall()
            self.pool = None

    @contextmanager
    def cursor(self):
        """Cursor inside a transaction on a pooled connection."""
        conn = self.pool.getconn()
        try:
            with conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor) as cur:
                yield cur
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            self.pool.putconn(conn)

    # Schema

    def init_schema(self):
        with self.cursor() as cur:
            for statement in SCHEMA + MIGRATIONS:
                cur.execute(statement)
        self.verify_schema()
        log.info("schema_ready")

    def verify_schema(self):
        with self.cursor() as cur:
            cur.execute("""
                SELECT column_name FROM information_schema.columns
                WHERE table_name = 'profiles'
            """)
            present = {row['column_name'] for row in cur.fetchall()}
        missing = [col for col in COLUMNS + ("search_vector",) if col not in present]
        if missing:
            raise SchemaError(f"profiles table is missing columns: {', '.join(missing)}")

    # Writes

    def upsert(self, record: ProfileRecord) -> ProfileRecord:
        with self.cursor() as cur:
            cur.execute("""
                INSERT INTO profiles (address) VALUES (%s)
                ON CONFLICT (address) DO NOTHING
            """, (record.address,))
            cur.execute("""
                SELECT address, content_id, last_updated_at, name, description, registered_name
                FROM profiles WHERE address = %s FOR UPDATE
            """, (record.address,))
            existing = ProfileRecord.from_row(cur.fetchone())

            merged = existing.merge(record)
            if merged != existing:
                cur.execute("""
                    UPDATE profiles
                    SET content_id = %s, last_updated_at = %s, name = %s,
                        description = %s, registered_name = %s
                    WHERE address = %s
                """, (
                    merged.content_id,
                    merged.last_updated_at,
                    merged.name,
                    merged.description,
                    merged.registered_name,
                    merged.address
                ))
        return merged

    def delete_from_block(self, block_number: int) -> int:
        """Delete every record last touched at or after ``block_number``."""
        with self.cursor() as cur:
            cur.execute("DELETE FROM profiles WHERE last_updated_at >= %s", (block_number,))
            deleted = cur.rowcount
        log.info("records_deleted", from_block=block_number, count=deleted)
        return deleted

    # Reads

    def get_last_processed_block(self) -> int:
        with self.cursor() as cur:
            cur.execute("SELECT COALESCE(MAX(last_updated_at), 0) AS last_processed FROM profiles")
            return cur.fetchone()['last_processed']

    def get(self, address: str) -> Optional[ProfileRecord]:
        with self.cursor() as cur:
            cur.execute("""
                SELECT address, content_id, last_updated_at, name, description, registered_name
                FROM profiles WHERE address = %s
            """, (address.lower(),))
            row = cur.fetchone()
        return ProfileRecord.from_row(row) if row else None

    def search(self, text: str = "", address: str = None, content_id: str = None,
               registered_name: str = None, limit: int = None) -> List[ProfileRecord]:
        limit = min(limit or self.max_results, self.max_results)
        conditions = []
        params = []

        query = build_search_query(text)
        if query:
            conditions.append("search_vector @@ to_tsquery('simple', %s)")
            params.append(query)
        if address:
            conditions.append("address = %s")
            params.append(address.lower())
        if content_id:
            conditions.append("content_id = %s")
            params.append(content_id)
        if registered_name:
            conditions.append("registered_name = %s")
            params.append(registered_name)

        if not conditions:
            return []

        with self.cursor() as cur:
            cur.execute(f"""
                SELECT address, content_id, last_updated_at, name, description, registered_name
                FROM profiles
                WHERE {' AND '.join(conditions)}
                ORDER BY last_updated_at DESC
                LIMIT %s
            """, (*params, limit))
            rows = cur.fetchall()
        return [ProfileRecord.from_row(row) for row in rows]
