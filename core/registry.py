"""Application registry: an in-memory map mirrored to a JSON document on disk."""
import json
import os
import tempfile
import threading
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

from core.schemas import ApplicationRecord, utc_now_iso


class JsonDocumentStore:
    """Stores one collection as ``{"<collection>": [...], "last_updated": ...}``.

    Extra top-level keys can be passed to ``save`` and read back with
    ``load_document``.
    """

    def __init__(self, path, collection: str):
        self.path = Path(path)
        self.collection = collection

    def load_document(self) -> dict:
        if not self.path.exists():
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            return json.load(f)

    def load(self) -> List[dict]:
        return list(self.load_document().get(self.collection, []))

    def save(self, records: List[dict], **extra) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        document = {self.collection: records, **extra, "last_updated": utc_now_iso()}
        fd, tmp_path = tempfile.mkstemp(
            dir=str(self.path.parent), prefix=f".{self.path.name}.", suffix=".tmp"
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(document, f, indent=2)
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise


class ApplicationRegistry:
    def __init__(self, store: JsonDocumentStore):
        self.store = store
        self._apps: Dict[str, ApplicationRecord] = {}
        self._lock = threading.RLock()
        self._load()

    def _load(self) -> None:
        try:
            records = self.store.load()
        except Exception as e:
            logger.error(f"Failed to load applications from {self.store.path}: {e}")
            return
        for raw in records:
            try:
                app = ApplicationRecord.model_validate(raw)
            except Exception as e:
                logger.warning(f"Skipping unreadable application record: {e}")
                continue
            self._apps[app.id] = app
        if self._apps:
            logger.info(f"Loaded {len(self._apps)} application(s)")

    def flush(self) -> None:
        """Write the whole map to disk. Failures are logged, never raised."""
        with self._lock:
            records = [a.model_dump(mode="json") for a in self._apps.values()]
        try:
            self.store.save(records)
        except Exception as e:
            logger.error(f"Failed to persist applications: {e}")

    def get(self, app_id: str) -> Optional[ApplicationRecord]:
        return self._apps.get(app_id)

    def get_by_name(self, name: str) -> Optional[ApplicationRecord]:
        wanted = name.lower()
        for app in list(self._apps.values()):
            if app.name.lower() == wanted:
                return app
        return None

    def list(self) -> List[ApplicationRecord]:
        return list(self._apps.values())

    def ids(self) -> List[str]:
        return list(self._apps.keys())

    def put(self, app: ApplicationRecord) -> None:
        with self._lock:
            self._apps[app.id] = app
        self.flush()

    def delete(self, app_id: str) -> None:
        with self._lock:
            self._apps.pop(app_id, None)
        self.flush()

    def __len__(self) -> int:
        return len(self._apps)
