from itertools import islice
from typing import Iterable, List

from drum.domain.entities import Playlist

MAX_PREVIEW_PLAYLISTS = 10
MAX_PREVIEW_TRACKS = 5


def render_playlist(playlist: Playlist, max_tracks: int = MAX_PREVIEW_TRACKS) -> List[str]:
    author = playlist.author
    header = f"{'/'.join([*playlist.path, playlist.name])} ({len(playlist.tracks)} tracks"
    if author is not None and author.display_name:
        header += f", by {author.display_name}"
    header += ")"

    lines = [header]
    for track in playlist.tracks[:max_tracks]:
        artists = ', '.join(playlist.artist_names(track))
        lines.append(f"  - {track.name}" + (f" by {artists}" if artists else ""))
    if len(playlist.tracks) > max_tracks:
        lines.append(f"  ... and {len(playlist.tracks) - max_tracks} more")
    return lines


def render_preview(playlists: Iterable[Playlist],
                   max_playlists: int = MAX_PREVIEW_PLAYLISTS,
                   max_tracks: int = MAX_PREVIEW_TRACKS) -> str:
    """Summarize the first few playlists of a (lazy) listing without consuming the rest."""
    lines: List[str] = []
    count = 0
    for playlist in islice(playlists, max_playlists):
        lines.extend(render_playlist(playlist, max_tracks))
        count += 1
    if count == 0:
        return "No playlists"
    return '\n'.join(lines)
