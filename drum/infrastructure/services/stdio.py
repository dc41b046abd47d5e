import logging
import sys
from typing import Iterable, Iterator, List, Optional, TextIO

from drum.application.preview import render_preview
from drum.domain.entities import Playlist
from drum.domain.errors import Unsupported
from drum.domain.ports import MusicService
from drum.domain.refs import RawRef, Ref, ResourceType, SpecialLocation
from drum.infrastructure.serialization import deserialize_playlists, serialize_playlists

logger = logging.getLogger(__name__)

BOTH_STREAMS_TOKEN = '-'


class StdioService(MusicService):
    """Reads playlists as YAML from stdin and writes them to stdout.

    The ref location is the set of streams it may use: '@stdin', '@stdout'
    or '-' for both.
    """

    name = 'stdio'

    def __init__(self, stdin: Optional[TextIO] = None, stdout: Optional[TextIO] = None):
        self._stdin = stdin
        self._stdout = stdout

    @property
    def stdin(self) -> TextIO:
        return self._stdin or sys.stdin

    @property
    def stdout(self) -> TextIO:
        return self._stdout or sys.stdout

    def parse_ref(self, raw_ref: RawRef) -> Optional[Ref]:
        if raw_ref.is_token:
            streams = {
                SpecialLocation.STDIN.value: SpecialLocation.STDIN,
                SpecialLocation.STDOUT.value: SpecialLocation.STDOUT,
            }
            stream = streams.get(raw_ref.text)
            return Ref(self.name, ResourceType.ANY, frozenset([stream])) if stream else None
        if raw_ref.text == BOTH_STREAMS_TOKEN:
            return Ref(self.name, ResourceType.ANY,
                       frozenset([SpecialLocation.STDIN, SpecialLocation.STDOUT]))
        return None

    def _read(self) -> Iterator[Playlist]:
        logger.debug("Reading playlists from stdin")
        yield from deserialize_playlists(self.stdin.read(), source='stdin')

    def download(self, ref: Ref) -> Iterator[Playlist]:
        if SpecialLocation.STDIN not in ref.resource_location:
            raise Unsupported("download", self.name, "can only download from stdin")
        return self._read()

    def upload(self, ref: Ref, playlists: Iterable[Playlist]) -> Optional[List[Playlist]]:
        if SpecialLocation.STDOUT not in ref.resource_location:
            raise Unsupported("upload", self.name, "can only upload to stdout")
        for document in serialize_playlists(playlists):
            self.stdout.write(document)
            self.stdout.flush()
        return None

    def preview(self, ref: Ref) -> str:
        return render_preview(self.download(ref))
