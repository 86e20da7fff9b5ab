"""Short-lived public copies of source images.

URL-based providers fetch their inputs over HTTP, so each source image is
written under ``temp_asset_dir`` and served by the app at ``/temp-assets``.
Every request deletes what it uploaded; ``sweep_expired`` removes anything a
missed cleanup left behind.
"""

from __future__ import annotations

import logging
import os
import re
import secrets
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path
from typing import Callable, Iterable, Sequence

from .datastore import DatastoreHandle
from .errors import DatastoreError, UploadError
from .models import SourceImage, UploadedAsset

logger = logging.getLogger("veilpix-service.assets")

URL_PREFIX = "/temp-assets"
DEFAULT_UPLOAD_WORKERS = 4
MIME_EXTENSIONS = {
    "image/jpeg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
}
_OWNER_UNSAFE = re.compile(r"[^A-Za-z0-9_-]+")


def sanitize_owner(owner: str) -> str:
    cleaned = _OWNER_UNSAFE.sub("_", owner or "").strip("_")
    return cleaned or "anonymous"


class TemporaryAssetStore:
    def __init__(
        self,
        root: Path,
        public_base_url: str,
        datastore: DatastoreHandle | None = None,
        max_workers: int = DEFAULT_UPLOAD_WORKERS,
        clock: Callable[[], float] = time.time,
    ):
        self.root = Path(root)
        self.public_base_url = public_base_url.rstrip("/")
        self.datastore = datastore
        self.max_workers = max_workers
        self._clock = clock
        self.root.mkdir(parents=True, exist_ok=True)

    def make_key(self, owner: str, mime_type: str) -> str:
        extension = MIME_EXTENSIONS.get(mime_type, "png")
        epoch_ms = int(self._clock() * 1000)
        return f"{sanitize_owner(owner)}/{epoch_ms}_{secrets.token_hex(8)}.{extension}"

    def path_for(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise ValueError(f"Asset key escapes the store root: {key}")
        return path

    def url_for(self, key: str) -> str:
        return f"{self.public_base_url}{URL_PREFIX}/{key}"

    def upload(self, data: bytes, mime_type: str, owner: str) -> UploadedAsset:
        key = self.make_key(owner, mime_type)
        try:
            path = self.path_for(key)
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_bytes(data)
            tmp_path.replace(path)
        except (OSError, ValueError) as exc:
            raise UploadError(f"Failed to store temporary asset {key}: {exc}") from exc

        if self.datastore is not None:
            try:
                self.datastore.record_temp_asset(key, sanitize_owner(owner), mime_type, self._clock())
            except DatastoreError as exc:
                logger.warning("Stored %s but could not record its metadata: %s", key, exc)

        logger.info("Uploaded temporary asset %s (%s bytes)", key, len(data))
        return UploadedAsset(key=key, url=self.url_for(key))

    def upload_many(self, images: Sequence[SourceImage], owner: str) -> tuple[UploadedAsset, ...]:
        """Upload every image concurrently; one failure fails the whole batch.

        Assets already stored when the batch fails are deleted before the
        error is raised. The result keeps the order of ``images``.
        """
        if not images:
            return ()
        results: dict[int, UploadedAsset] = {}
        failures: list[Exception] = []
        workers = max(1, min(self.max_workers, len(images)))
        with ThreadPoolExecutor(max_workers=workers) as pool:
            future_to_index = {
                pool.submit(self.upload, image.data, image.mime_type, owner): index
                for index, image in enumerate(images)
            }
            for future in as_completed(future_to_index):
                index = future_to_index[future]
                try:
                    results[index] = future.result()
                except Exception as exc:
                    failures.append(exc)

        if failures:
            self.delete_many(asset.key for asset in results.values())
            first = failures[0]
            if isinstance(first, UploadError):
                raise first
            raise UploadError(f"Batch upload failed: {first}") from first

        return tuple(results[index] for index in range(len(images)))

    def delete(self, key: str) -> bool:
        """Remove one asset. Failures are logged, never raised."""
        try:
            self.path_for(key).unlink(missing_ok=True)
        except (OSError, ValueError) as exc:
            logger.warning("Failed to delete temporary asset %s: %s", key, exc)
            return False

        if self.datastore is not None:
            try:
                self.datastore.forget_temp_asset(key)
            except DatastoreError as exc:
                logger.warning("Deleted %s but could not drop its metadata: %s", key, exc)
        return True

    def delete_many(self, keys: Iterable[str]) -> int:
        deleted = 0
        for key in keys:
            if self.delete(key):
                deleted += 1
        return deleted

    def list_expired(self, horizon_seconds: int) -> list[str]:
        cutoff = self._clock() - horizon_seconds
        expired: set[str] = set()
        for path in self.root.rglob("*"):
            if not path.is_file():
                continue
            try:
                if path.stat().st_mtime < cutoff:
                    expired.add(path.relative_to(self.root).as_posix())
            except OSError as exc:
                logger.warning("Could not stat %s: %s", path, exc)

        if self.datastore is not None:
            try:
                for row in self.datastore.list_temp_assets_older_than(cutoff):
                    expired.add(row["key"])
            except DatastoreError as exc:
                logger.warning("Could not list expired asset metadata: %s", exc)
        return sorted(expired)

    def sweep_expired(self, horizon_seconds: int, dry_run: bool = False) -> list[str]:
        """Delete assets older than ``horizon_seconds``; returns their keys."""
        expired = self.list_expired(horizon_seconds)
        if dry_run:
            return expired
        deleted = [key for key in expired if self.delete(key)]
        self._prune_empty_dirs()
        if deleted:
            logger.info("Swept %s expired temporary asset(s)", len(deleted))
        return deleted

    def _prune_empty_dirs(self) -> None:
        for dirpath, _, _ in sorted(os.walk(self.root), key=lambda item: len(item[0]), reverse=True):
            path = Path(dirpath)
            if path == self.root:
                continue
            try:
                path.rmdir()
            except OSError:
                continue
