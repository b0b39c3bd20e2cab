import json
import logging
import os
import sqlite3
import threading
import time

logger = logging.getLogger('inkframe.store')

DEFAULT_URL_TTL = 3600


class PersistentStore:
    """Durable key/value mapping backed by a single SQLite file.

    Values are stored as JSON text. Every mutation is committed before the
    call returns, so a restart sees the last completed write.
    """

    def __init__(self, path):
        self.path = str(path)
        parent = os.path.dirname(self.path)
        if parent:
            os.makedirs(parent, exist_ok=True)
        self._lock = threading.Lock()
        self._conn = sqlite3.connect(self.path, check_same_thread=False)
        cursor = self._conn.cursor()
        cursor.execute('''
            CREATE TABLE IF NOT EXISTS kv (
                key TEXT PRIMARY KEY,
                value TEXT NOT NULL,
                updated_ts INTEGER
            )
        ''')
        self._conn.commit()

    def get(self, key, default=None):
        with self._lock:
            row = self._conn.execute('SELECT value FROM kv WHERE key = ?', (key,)).fetchone()
        if row is None:
            return default
        try:
            return json.loads(row[0])
        except ValueError:
            logger.warning(f"Corrupt value for {key!r} in {self.path}, ignoring")
            return default

    def set(self, key, value):
        payload = json.dumps(value)
        with self._lock:
            self._conn.execute(
                'INSERT OR REPLACE INTO kv (key, value, updated_ts) VALUES (?,?,?)',
                (key, payload, int(time.time()))
            )
            self._conn.commit()

    def __contains__(self, key):
        with self._lock:
            row = self._conn.execute('SELECT 1 FROM kv WHERE key = ?', (key,)).fetchone()
        return row is not None

    def __len__(self):
        with self._lock:
            return self._conn.execute('SELECT COUNT(*) FROM kv').fetchone()[0]

    def close(self):
        with self._lock:
            self._conn.close()


class UrlCache:
    """In-memory album -> candidate list cache with a fixed expiry.

    Entries are replaced whole; ``clock`` is injectable so expiry can be
    driven from tests.
    """

    def __init__(self, ttl=DEFAULT_URL_TTL, clock=time.time):
        self.ttl = ttl
        self._clock = clock
        self._entries = {}
        self._lock = threading.RLock()

    def get(self, album_id):
        with self._lock:
            entry = self._entries.get(album_id)
            if entry is None:
                return None
            urls, expires_at = entry
            if self._clock() >= expires_at:
                del self._entries[album_id]
                return None
            return urls

    def set(self, album_id, urls):
        with self._lock:
            self._entries[album_id] = (tuple(urls), self._clock() + self.ttl)

    def expires_at(self, album_id):
        with self._lock:
            entry = self._entries.get(album_id)
            return entry[1] if entry else None

    def size(self, album_id):
        urls = self.get(album_id)
        return len(urls) if urls else 0

    def clear(self):
        with self._lock:
            self._entries.clear()
