"""
Cache externo de esquemas de entidades (bytes con vencimiento)
"""
import hashlib
import logging
import time
from pathlib import Path
from typing import Dict, Optional, Tuple, Union

from .config import CrmConfig

logger = logging.getLogger(__name__)

ENTITY_SCHEMA_KEY = "entity_schema:{logical_name}"
ENTITIES_DEFINITIONS_KEY = "entities_definitions"


class MemorySchemaCache:
    """Cache en memoria del proceso."""

    def __init__(self):
        self._items: Dict[str, Tuple[float, bytes]] = {}

    def get(self, key: str) -> Optional[bytes]:
        item = self._items.get(key)
        if item is None:
            return None
        expires_at, value = item
        if expires_at <= time.time():
            del self._items[key]
            return None
        return value

    def set(self, key: str, value: bytes, ttl: int) -> None:
        self._items[key] = (time.time() + ttl, value)


class FileSchemaCache:
    """
    Cache en disco, un archivo por clave.

    Formato: primera línea con el vencimiento (epoch), después los bytes.
    """

    def __init__(self, cache_dir: Union[str, Path]):
        self.cache_dir = Path(cache_dir)

    def _path(self, key: str) -> Path:
        digest = hashlib.sha256(key.encode("utf-8")).hexdigest()
        return self.cache_dir / f"{digest}.cache"

    def get(self, key: str) -> Optional[bytes]:
        path = self._path(key)
        if not path.exists():
            return None

        header, _, value = path.read_bytes().partition(b"\n")
        try:
            expires_at = float(header)
        except ValueError:
            logger.warning(f"Entrada de cache ilegible, se descarta: {path}")
            path.unlink()
            return None

        if expires_at <= time.time():
            path.unlink()
            return None
        return value

    def set(self, key: str, value: bytes, ttl: int) -> None:
        self.cache_dir.mkdir(parents=True, exist_ok=True)
        path = self._path(key)
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(f"{time.time() + ttl}\n".encode("ascii") + value)
        tmp_path.replace(path)


def build_schema_cache(config: CrmConfig):
    """Cache según CRM_CACHE_BACKEND ('memory' o 'file')."""
    if config.cache_backend == "file":
        return FileSchemaCache(config.cache_dir)
    return MemorySchemaCache()
