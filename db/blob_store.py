import hashlib
import json
import logging
import os
from datetime import datetime
from typing import Any, Optional, Tuple

from config.settings import SNAPSHOTS_DIR

logger = logging.getLogger(__name__)

TIMESTAMP_FORMAT = '%Y%m%dT%H%M%S%fZ'


class BlobNotFound(KeyError):
    pass


def format_timestamp(dt: datetime) -> str:
    return dt.strftime(TIMESTAMP_FORMAT)

def parse_timestamp(value: str) -> datetime:
    return datetime.strptime(value, TIMESTAMP_FORMAT)

def snapshot_key(user_id: str, fetched_at: datetime) -> str:
    return f'user/{user_id}/followers/{format_timestamp(fetched_at)}.json'

def partial_key(user_id: str, started_at: datetime) -> str:
    return f'user/{user_id}/partial/{format_timestamp(started_at)}.json'

def snapshot_timestamp(key: str) -> datetime:
    return parse_timestamp(os.path.basename(key).rsplit('.', 1)[0])


class FileBlobStore:
    """JSON blobs on the local filesystem, addressed by slash-separated keys."""

    def __init__(self, root: Optional[str] = None):
        self.root = root or SNAPSHOTS_DIR
        os.makedirs(self.root, exist_ok=True)

    def _path(self, key: str) -> str:
        parts = [p for p in key.split('/') if p]
        if not parts or any(p in ('.', '..') for p in parts):
            raise ValueError(f'invalid blob key: {key!r}')
        return os.path.join(self.root, *parts)

    def put_json(self, key: str, obj: Any) -> Tuple[int, str]:
        """Writes obj as JSON. Returns (size, sha256 hex digest) of the stored bytes."""
        body = json.dumps(obj, sort_keys=True, separators=(',', ':')).encode('utf-8')
        path = self._path(key)
        os.makedirs(os.path.dirname(path), exist_ok=True)
        tmp_path = path + '.tmp'
        with open(tmp_path, 'wb') as f:
            f.write(body)
        os.replace(tmp_path, path)
        logger.debug(f'Wrote blob {key} ({len(body)} bytes)')
        return len(body), hashlib.sha256(body).hexdigest()

    def get_json(self, key: str) -> Any:
        path = self._path(key)
        try:
            with open(path, 'rb') as f:
                return json.loads(f.read().decode('utf-8'))
        except FileNotFoundError:
            raise BlobNotFound(key) from None

    def exists(self, key: str) -> bool:
        return os.path.exists(self._path(key))

    def delete(self, key: str) -> bool:
        try:
            os.remove(self._path(key))
            return True
        except FileNotFoundError:
            return False
