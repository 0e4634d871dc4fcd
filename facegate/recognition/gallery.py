"""Gallery storage (parquet) and the per-organization gallery cache."""

from __future__ import annotations

import logging
import threading
import time
from collections import Counter
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Set, Tuple

import numpy as np
import pandas as pd
import pyarrow as pa

from facegate.config import GalleryConfig, MatchConfig
from facegate.errors import GalleryLoadError
from facegate.io_utils import ensure_dir
from facegate.recognition.similarity import SimilarityEngine
from facegate.types import GalleryEntry, MemberStatus

LOGGER = logging.getLogger("facegate.recognition.gallery")

GalleryListener = Callable[[str], None]


class GalleryStore(Protocol):
    def load_gallery(self, organization_id: str) -> List[GalleryEntry]:
        ...


class ParquetGalleryStore:
    """One parquet file per organization: <root>/<organization>/gallery.parquet."""

    COLUMNS = ["member_id", "name", "status", "embedding", "updated_at"]

    def __init__(self, root: Path) -> None:
        self.root = Path(root)
        self._lock = threading.Lock()
        self._listeners: List[GalleryListener] = []

    def path_for(self, organization_id: str) -> Path:
        return self.root / organization_id / "gallery.parquet"

    def subscribe(self, listener: GalleryListener) -> None:
        """Register an on-gallery-changed callback, invoked with the organization id."""
        self._listeners.append(listener)

    def load_gallery(self, organization_id: str) -> List[GalleryEntry]:
        df = self._read(organization_id)
        entries: List[GalleryEntry] = []
        for _, row in df.iterrows():
            entries.append(
                GalleryEntry(
                    member_id=str(row["member_id"]),
                    name=str(row["name"]),
                    status=MemberStatus.parse(row["status"]),
                    embedding=embedding_from_parquet(row["embedding"]),
                )
            )
        LOGGER.debug("Loaded %d gallery entries for %s", len(entries), organization_id)
        return entries

    def upsert_member(self, organization_id: str, entry: GalleryEntry) -> None:
        with self._lock:
            df = self._read(organization_id)
            df = df[df["member_id"] != entry.member_id]
            row = pd.DataFrame(
                [
                    {
                        "member_id": entry.member_id,
                        "name": entry.name,
                        "status": entry.status.value,
                        "embedding": entry.embedding.astype(np.float32).tolist(),
                        "updated_at": pd.Timestamp.now(tz="UTC"),
                    }
                ]
            )
            df = row if df.empty else pd.concat([df, row], ignore_index=True)
            self._write(organization_id, df)
        LOGGER.info("Upserted member %s (%s) into %s", entry.member_id, entry.status.value, organization_id)
        self._notify(organization_id)

    def remove_member(self, organization_id: str, member_id: str) -> bool:
        with self._lock:
            df = self._read(organization_id)
            remaining = df[df["member_id"] != member_id]
            if len(remaining) == len(df):
                return False
            self._write(organization_id, remaining)
        LOGGER.info("Removed member %s from %s", member_id, organization_id)
        self._notify(organization_id)
        return True

    def _read(self, organization_id: str) -> pd.DataFrame:
        path = self.path_for(organization_id)
        if not path.exists():
            return pd.DataFrame(columns=self.COLUMNS)
        try:
            df = pd.read_parquet(path)
        except (OSError, ValueError, pa.ArrowException) as exc:
            raise GalleryLoadError(organization_id, f"unreadable gallery {path}: {exc}") from exc
        missing = [col for col in ("member_id", "name", "status", "embedding") if col not in df.columns]
        if missing:
            raise GalleryLoadError(organization_id, f"gallery {path} missing columns {missing}")
        return df

    def _write(self, organization_id: str, df: pd.DataFrame) -> None:
        path = self.path_for(organization_id)
        ensure_dir(path.parent)
        tmp_path = path.with_suffix(".parquet.tmp")
        df.reset_index(drop=True).to_parquet(tmp_path, index=False)
        tmp_path.replace(path)

    def _notify(self, organization_id: str) -> None:
        for listener in list(self._listeners):
            listener(organization_id)


def embedding_from_parquet(raw) -> np.ndarray:
    """Convert parquet-loaded embedding column into a 1D float32 vector."""
    if isinstance(raw, np.ndarray):
        if raw.dtype == object or raw.ndim > 1:
            parts = [np.asarray(part, dtype=np.float32).ravel() for part in raw]
            arr = np.concatenate(parts) if parts else np.empty((0,), dtype=np.float32)
        else:
            arr = raw.astype(np.float32)
    elif isinstance(raw, list):
        if raw and isinstance(raw[0], (list, tuple, np.ndarray)):
            parts = [np.asarray(part, dtype=np.float32).ravel() for part in raw]
            arr = np.concatenate(parts) if parts else np.empty((0,), dtype=np.float32)
        else:
            arr = np.asarray(raw, dtype=np.float32)
    elif raw is None:
        arr = np.empty((0,), dtype=np.float32)
    else:
        arr = np.asarray(raw, dtype=np.float32)
    return arr.reshape(-1).astype(np.float32)


@dataclass(frozen=True)
class GallerySnapshot:
    """Immutable gallery view handed to matching sessions."""

    organization_id: str
    entries: Tuple[GalleryEntry, ...]
    version: int
    loaded_at: float

    def __len__(self) -> int:
        return len(self.entries)


def filter_entries(organization_id: str, entries: Sequence[GalleryEntry]) -> Tuple[GalleryEntry, ...]:
    """Drop entries with empty embeddings or a length differing from the majority."""
    usable = [entry for entry in entries if entry.embedding.size > 0]
    if len(usable) != len(entries):
        LOGGER.warning("Skipping %d gallery entries without embeddings for %s", len(entries) - len(usable), organization_id)
    if not usable:
        return ()
    lengths = Counter(entry.embedding.size for entry in usable)
    dominant, _ = lengths.most_common(1)[0]
    kept = tuple(entry for entry in usable if entry.embedding.size == dominant)
    if len(kept) != len(usable):
        LOGGER.warning(
            "Skipping %d gallery entries with embedding length != %d for %s",
            len(usable) - len(kept),
            dominant,
            organization_id,
        )
    return kept


class GalleryCache:
    """Organization-scoped gallery cache with TTL, invalidation and single-flight refresh.

    Readers never block on a refresh once a snapshot exists: stale snapshots are
    served while one background load per organization is in flight. A failed
    refresh keeps the last-known-good snapshot; only a failed first load raises.
    """

    def __init__(
        self,
        store: GalleryStore,
        config: Optional[GalleryConfig] = None,
        clock: Callable[[], float] = time.monotonic,
        executor: Optional[ThreadPoolExecutor] = None,
    ) -> None:
        self.store = store
        self.config = config or GalleryConfig()
        self.clock = clock
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=self.config.refresh_workers, thread_name_prefix="gallery-refresh"
        )
        self._lock = threading.Lock()
        self._snapshots: Dict[str, GallerySnapshot] = {}
        self._inflight: Dict[str, Future] = {}
        self._stale: Set[str] = set()
        self._failed_at: Dict[str, float] = {}
        subscribe = getattr(store, "subscribe", None)
        if callable(subscribe):
            subscribe(self.on_gallery_changed)

    def get(self, organization_id: str) -> GallerySnapshot:
        with self._lock:
            snapshot = self._snapshots.get(organization_id)
            if snapshot is not None:
                if self._needs_refresh(organization_id, snapshot):
                    self._schedule(organization_id)
                return snapshot
            future = self._inflight.get(organization_id) or self._schedule(organization_id)
        return future.result()

    def entries(self, organization_id: str) -> Tuple[GalleryEntry, ...]:
        return self.get(organization_id).entries

    def refresh(self, organization_id: str, timeout: Optional[float] = None) -> GallerySnapshot:
        """Force a reload (joining any in-flight one) and wait for its result."""
        with self._lock:
            future = self._inflight.get(organization_id) or self._schedule(organization_id)
        return future.result(timeout=timeout)

    def invalidate(self, organization_id: str) -> None:
        with self._lock:
            self._stale.add(organization_id)
            self._failed_at.pop(organization_id, None)
        LOGGER.info("Gallery cache invalidated for %s", organization_id)

    def on_gallery_changed(self, organization_id: str) -> None:
        self.invalidate(organization_id)

    def wait(self, organization_id: str, timeout: Optional[float] = None) -> None:
        """Block until the in-flight refresh for an organization (if any) finishes."""
        with self._lock:
            future = self._inflight.get(organization_id)
        if future is not None:
            future.exception(timeout=timeout)

    def stats(self, organization_id: str) -> Dict[str, object]:
        with self._lock:
            snapshot = self._snapshots.get(organization_id)
            return {
                "entries": len(snapshot) if snapshot else 0,
                "version": snapshot.version if snapshot else 0,
                "age": (self.clock() - snapshot.loaded_at) if snapshot else None,
                "refreshing": organization_id in self._inflight,
                "stale": organization_id in self._stale,
            }

    def close(self) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=False)

    def _needs_refresh(self, organization_id: str, snapshot: GallerySnapshot) -> bool:
        if organization_id in self._inflight:
            return False
        now = self.clock()
        failed_at = self._failed_at.get(organization_id)
        if failed_at is not None and now - failed_at < self.config.retry_after:
            return False
        return organization_id in self._stale or now - snapshot.loaded_at >= self.config.ttl

    def _schedule(self, organization_id: str) -> Future:
        # Caller holds self._lock; invalidations arriving after this point mark the
        # new snapshot stale again
        self._stale.discard(organization_id)
        future = self._executor.submit(self._load, organization_id)
        self._inflight[organization_id] = future
        return future

    def _load(self, organization_id: str) -> GallerySnapshot:
        try:
            raw = self.store.load_gallery(organization_id)
            entries = filter_entries(organization_id, raw)
        except Exception as exc:
            error = exc if isinstance(exc, GalleryLoadError) else GalleryLoadError(organization_id, str(exc))
            with self._lock:
                self._inflight.pop(organization_id, None)
                self._failed_at[organization_id] = self.clock()
                self._stale.add(organization_id)
                previous = self._snapshots.get(organization_id)
            if previous is None:
                LOGGER.error("Gallery load failed for %s with no cached snapshot: %s", organization_id, exc)
                raise error from exc
            LOGGER.warning(
                "Gallery refresh failed for %s (%s); serving cached version %d",
                organization_id,
                exc,
                previous.version,
            )
            return previous

        with self._lock:
            previous = self._snapshots.get(organization_id)
            snapshot = GallerySnapshot(
                organization_id=organization_id,
                entries=entries,
                version=(previous.version + 1) if previous else 1,
                loaded_at=self.clock(),
            )
            self._snapshots[organization_id] = snapshot
            self._failed_at.pop(organization_id, None)
            self._inflight.pop(organization_id, None)
        LOGGER.info("Gallery for %s loaded: %d entries (version %d)", organization_id, len(entries), snapshot.version)
        return snapshot


def find_conflicting_members(
    embedding: np.ndarray,
    gallery: Sequence[GalleryEntry],
    engine: Optional[SimilarityEngine] = None,
    threshold: float = 0.90,
    exclude_member: Optional[str] = None,
) -> List[Tuple[GalleryEntry, float]]:
    """Members already enrolled whose similarity to `embedding` reaches `threshold`."""
    engine = engine or SimilarityEngine()
    conflicts = []
    for entry in gallery:
        if entry.member_id == exclude_member:
            continue
        score = engine.similarity(embedding, entry.embedding)
        if score >= threshold:
            conflicts.append((entry, score))
    conflicts.sort(key=lambda item: item[1], reverse=True)
    return conflicts


def looks_like_family(
    embedding: np.ndarray,
    gallery: Sequence[GalleryEntry],
    engine: Optional[SimilarityEngine] = None,
    config: Optional[MatchConfig] = None,
) -> bool:
    """Flag embeddings broadly similar to the gallery (look-alikes, relatives)."""
    if not gallery:
        return False
    engine = engine or SimilarityEngine()
    config = config or MatchConfig()
    scores = np.array([engine.similarity(embedding, entry.embedding) for entry in gallery])
    avg_score = float(scores.mean())
    max_score = float(scores.max())
    LOGGER.debug("Family resemblance check: avg=%.3f max=%.3f", avg_score, max_score)
    return avg_score > config.family_avg_score or max_score > config.family_max_score
