import logging
import time
from dataclasses import dataclass, field, replace
from datetime import date
from enum import Enum
from typing import Callable, Dict, Iterable, Iterator, List, Optional

from drum.application.pagination import collecting_failures
from drum.application.registry import ServiceRegistry
from drum.crosscutting.logging import TransferContext, log_transfer_complete, log_transfer_start
from drum.domain.entities import Playlist

logger = logging.getLogger(__name__)

Transform = Callable[[Playlist], Playlist]

UNKNOWN_AUTHOR = 'Unknown'


class TransferState(str, Enum):
    """Lifecycle of one playlist within a transfer."""

    PENDING = 'pending'
    DOWNLOADING = 'downloading'
    TRANSFORMING = 'transforming'
    UPLOADING = 'uploading'
    DONE = 'done'
    FAILED = 'failed'


@dataclass
class TransferResult:
    """Outcome of transferring a single playlist."""

    playlist_id: Optional[str]
    playlist_name: str
    state: TransferState = TransferState.PENDING
    track_count: int = 0
    error: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.state == TransferState.FAILED


@dataclass
class TransferReport:
    """Per-playlist results of one copy, in the order the source produced them."""

    source: str
    destination: str
    dry_run: bool = False
    results: List[TransferResult] = field(default_factory=list)
    updated: Optional[List[Playlist]] = None

    @property
    def done(self) -> List[TransferResult]:
        return [r for r in self.results if r.state == TransferState.DONE]

    @property
    def failed(self) -> List[TransferResult]:
        return [r for r in self.results if r.failed]

    def result_for(self, playlist: Playlist) -> Optional[TransferResult]:
        for result in reversed(self.results):
            if result.playlist_id == playlist.id and result.playlist_name == playlist.name:
                return result
        return None

    def record_failure(self, description: str, item: object, error: Exception) -> None:
        """Mark the playlist a service skipped as failed, or add a failed entry for it."""
        result = self.result_for(item) if isinstance(item, Playlist) else None
        if result is None:
            result = TransferResult(playlist_id=None, playlist_name=description)
            self.results.append(result)
        result.state = TransferState.FAILED
        result.error = f"{type(error).__name__}: {error}"


class ProgressTracker:
    """Logs transfer progress each time a playlist is done."""

    def __init__(self):
        self.start_time = time.time()
        self.playlists = 0
        self.tracks = 0

    def update(self, playlist: Playlist) -> None:
        self.playlists += 1
        self.tracks += len(playlist.tracks)
        elapsed_sec = time.time() - self.start_time
        logger.info(f"Progress: {self.playlists} playlists ({self.tracks} tracks) "
                    f"processed in {elapsed_sec:.1f}s, latest '{playlist.name}'")

    def get_final_summary(self) -> dict:
        total_time = time.time() - self.start_time
        return {
            "playlists": self.playlists,
            "tracks": self.tracks,
            "total_time_seconds": total_time,
        }


def group_by_author(playlist: Playlist) -> Playlist:
    """Prefix the playlist's folder path with its author's display name."""
    author = playlist.author
    folder = (author.display_name if author else None) or UNKNOWN_AUTHOR
    return replace(playlist, path=[folder, *playlist.path])


def append_note(note: Optional[str] = None) -> Transform:
    """Build a transform appending a note (by default 'Pushed with drum on <date>') to descriptions."""
    text = note or f"Pushed with drum on {date.today().isoformat()}"

    def transform(playlist: Playlist) -> Playlist:
        description = f"{playlist.description}\n\n{text}" if playlist.description else text
        return replace(playlist, description=description)

    return transform


def compose(*transforms: Transform) -> Optional[Transform]:
    """Chain transforms left to right. Returns None when there is nothing to apply."""
    if not transforms:
        return None

    def transform(playlist: Playlist) -> Playlist:
        for t in transforms:
            playlist = t(playlist)
        return playlist

    return transform


class TransferPipeline:
    """Copies playlists from one ref to another, possibly across services."""

    def __init__(self, registry: ServiceRegistry):
        self.registry = registry

    def copy(self,
             src: str,
             dest: str,
             transform: Optional[Transform] = None,
             dry_run: bool = False,
             reconcile: bool = False) -> TransferReport:
        """Download from src, optionally transform, and upload to dest.

        Playlists flow through lazily: the first one reaches the destination
        before the source listing is exhausted. A playlist that fails at any
        step is recorded as failed and the rest of the batch continues;
        unresolved refs, unsupported operations and authentication failures
        abort the whole copy.

        Args:
            src: Raw source ref
            dest: Raw destination ref
            transform: Optional per-playlist map applied between download and upload
            dry_run: Download and transform only, never upload
            reconcile: Write the external ids the destination assigned back into
                the source playlists as they were downloaded

        Returns:
            TransferReport with one result per playlist
        """
        src_ref, src_service = self.registry.resolve_with_service(src)
        dest_ref, dest_service = self.registry.resolve_with_service(dest)

        report = TransferReport(source=str(src_ref), destination=str(dest_ref), dry_run=dry_run)
        progress = ProgressTracker()
        log_transfer_start(logger, report.source, report.destination, dry_run=dry_run)

        with collecting_failures(report.record_failure):
            with TransferContext(service=src_service.name, stage=TransferState.DOWNLOADING.value):
                playlists = src_service.download(src_ref)
                originals: Optional[Dict[str, Playlist]] = {} if reconcile else None
                staged = self._stage(playlists, transform, report, progress, dest_service.name, originals)

                if dry_run:
                    for playlist in staged:
                        logger.info(f"DRY-RUN: Would upload '{playlist.name}' "
                                    f"({len(playlist.tracks)} tracks) to {report.destination}")
                else:
                    report.updated = dest_service.upload(dest_ref, staged)

            self._finish(report, progress)

            if reconcile and report.updated:
                logger.info(f"Reconciling {len(report.updated)} playlists back into {report.source}")
                with TransferContext(service=src_service.name, stage='reconciling'):
                    src_service.upload(src_ref, self._reconciled(report.updated, originals))

        log_transfer_complete(logger, len(report.done), len(report.failed), **progress.get_final_summary())
        return report

    def _stage(self,
               playlists: Iterable[Playlist],
               transform: Optional[Transform],
               report: TransferReport,
               progress: ProgressTracker,
               dest_name: str,
               originals: Optional[Dict[str, Playlist]] = None) -> Iterator[Playlist]:
        """Walk playlists through their states while the destination pulls them.

        When originals is given it collects each downloaded playlist, before
        the transform, under the id it is uploaded with.
        """
        previous: Optional[TransferResult] = None
        previous_playlist: Optional[Playlist] = None

        for playlist in playlists:
            self._settle(previous, previous_playlist, progress)

            result = TransferResult(playlist_id=playlist.id,
                                    playlist_name=playlist.name,
                                    state=TransferState.DOWNLOADING,
                                    track_count=len(playlist.tracks))
            report.results.append(result)

            downloaded = playlist
            with TransferContext(playlist=playlist.name):
                if transform is not None:
                    result.state = TransferState.TRANSFORMING
                    try:
                        with TransferContext(stage=TransferState.TRANSFORMING.value):
                            playlist = transform(playlist)
                    except Exception as e:
                        logger.error(f"Failed to transform playlist '{result.playlist_name}': {e}")
                        result.state = TransferState.FAILED
                        result.error = f"{type(e).__name__}: {e}"
                        previous, previous_playlist = None, None
                        continue
                    result.playlist_id = playlist.id
                    result.playlist_name = playlist.name

                result.state = TransferState.UPLOADING
                previous, previous_playlist = result, playlist
                if originals is not None:
                    originals[playlist.id] = downloaded

            with TransferContext(service=dest_name, stage=TransferState.UPLOADING.value):
                yield playlist

        self._settle(previous, previous_playlist, progress)

    @staticmethod
    def _reconciled(updated: Iterable[Playlist], originals: Dict[str, Playlist]) -> List[Playlist]:
        """Copy the external ids from uploaded playlists onto the untransformed source playlists."""
        reconciled = []
        for playlist in updated:
            original = originals.get(playlist.id)
            if original is None:
                logger.warning(f"Not reconciling '{playlist.name}', it was not downloaded from the source")
                continue
            tracks = original.tracks
            if len(playlist.tracks) == len(original.tracks):
                tracks = [
                    replace(track,
                            spotify=uploaded.spotify or track.spotify,
                            applemusic=uploaded.applemusic or track.applemusic)
                    for track, uploaded in zip(original.tracks, playlist.tracks)
                ]
            reconciled.append(replace(original,
                                      spotify=playlist.spotify or original.spotify,
                                      applemusic=playlist.applemusic or original.applemusic,
                                      tracks=tracks))
        return reconciled

    @staticmethod
    def _settle(result: Optional[TransferResult],
                playlist: Optional[Playlist],
                progress: ProgressTracker) -> None:
        # The destination asking for the next playlist means it is done with this one.
        if result is not None and result.state == TransferState.UPLOADING:
            result.state = TransferState.DONE
            progress.update(playlist)

    @staticmethod
    def _finish(report: TransferReport, progress: ProgressTracker) -> None:
        # Destinations that stop pulling early still leave results in flight.
        for result in report.results:
            if result.state not in (TransferState.DONE, TransferState.FAILED):
                result.state = TransferState.FAILED
                result.error = result.error or "Destination did not accept the playlist"
