import argparse
import logging
import signal
import sys
import time
from typing import List, Optional

from drum.application.pipeline import (
    TransferPipeline, TransferReport, append_note, compose, group_by_author,
)
from drum.application.registry import ServiceRegistry, build_default_registry
from drum.crosscutting.config import ConfigError, SecretManager
from drum.crosscutting.logging import setup_logging
from drum.domain.errors import DrumError
from drum.infrastructure.auth import AppleMusicTokenProvider, SpotifyCredentialProvider
from drum.infrastructure.services.applemusic import AppleMusicService
from drum.infrastructure.services.file import FileService
from drum.infrastructure.services.mock import MockService
from drum.infrastructure.services.spotify import SpotifyService
from drum.infrastructure.services.stdio import StdioService

logger = logging.getLogger(__name__)

LOG_LEVELS = ['DEBUG', 'INFO', 'WARNING', 'ERROR']


class CLI:
    """Command Line Interface for drum."""

    def __init__(self, secret_manager: Optional[SecretManager] = None):
        self.secret_manager = secret_manager or SecretManager()
        self.parser = self._create_parser()
        self._start_time = None

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog='drum',
            description='Copy playlists between music services and local files'
        )
        parser.add_argument(
            '--log-level',
            type=str.upper,
            choices=LOG_LEVELS,
            default=None,
            help='Set logging level (default: $DRUM_LOG_LEVEL or INFO)'
        )
        parser.add_argument(
            '--log-json',
            action='store_true',
            help='Emit one JSON object per log record'
        )
        parser.add_argument(
            '--log-file',
            default=None,
            help='Also write logs to this file'
        )

        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        cp_parser = subparsers.add_parser('cp', help='Copy playlists from one ref to another')
        cp_parser.add_argument('src', help="Source ref, e.g. '@spotify/playlists', a link or a path")
        cp_parser.add_argument('dest', help="Destination ref, e.g. '@applemusic/playlists', '-' or a path")
        cp_parser.add_argument(
            '--group-by-author',
            action='store_true',
            help="Prefix each playlist's folder path with its author's name"
        )
        cp_parser.add_argument(
            '--note',
            nargs='?',
            const='',
            default=None,
            help="Append a note to each description (default: 'Pushed with drum on <date>')"
        )
        cp_parser.add_argument(
            '--dry-run',
            action='store_true',
            help='Download and transform only, upload nothing'
        )
        cp_parser.add_argument(
            '--reconcile',
            action='store_true',
            help='Write ids assigned by the destination back to the source'
        )

        rm_parser = subparsers.add_parser('rm', help='Remove the resource a ref points to')
        rm_parser.add_argument('ref', help='Ref to remove')

        preview_parser = subparsers.add_parser('preview', help='Summarize what a ref points to')
        preview_parser.add_argument('ref', help='Ref to preview')

        subparsers.add_parser('services', help='List services in resolution order')
        subparsers.add_parser('logout', help='Forget stored service tokens')

        return parser

    def _setup_signal_handlers(self) -> None:
        """Turn SIGTERM into the same cooperative cancellation as Ctrl+C."""
        def signal_handler(signum, frame):
            logger.warning(f"Received signal {signum}, shutting down...")
            raise KeyboardInterrupt()

        signal.signal(signal.SIGTERM, signal_handler)

    def _cleanup_resources(self) -> None:
        if self._start_time:
            duration = time.time() - self._start_time
            logger.info(f"CLI execution time: {duration:.2f}s")

    def create_registry(self) -> ServiceRegistry:
        """Build every service with its credentials and return them in resolution order."""
        storefront = self.secret_manager.get('APPLEMUSIC_STOREFRONT', 'us')
        return build_default_registry([
            StdioService(),
            MockService(),
            SpotifyService(SpotifyCredentialProvider(self.secret_manager)),
            AppleMusicService(AppleMusicTokenProvider(self.secret_manager), storefront=storefront),
            FileService(),
        ])

    def _copy(self, args: argparse.Namespace) -> int:
        transforms = []
        if args.group_by_author:
            transforms.append(group_by_author)
        if args.note is not None:
            transforms.append(append_note(args.note or None))

        pipeline = TransferPipeline(self.create_registry())
        report = pipeline.copy(args.src, args.dest,
                               transform=compose(*transforms),
                               dry_run=args.dry_run,
                               reconcile=args.reconcile)
        self._print_report(report)
        return 1 if report.failed else 0

    @staticmethod
    def _print_report(report: TransferReport) -> None:
        # stdout may be carrying playlists, so the summary goes to stderr
        prefix = "DRY-RUN: " if report.dry_run else ""
        print(f"{prefix}{report.source} -> {report.destination}: "
              f"{len(report.done)} done, {len(report.failed)} failed", file=sys.stderr)
        for result in report.failed:
            print(f"  FAILED {result.playlist_name}: {result.error}", file=sys.stderr)

    def _remove(self, args: argparse.Namespace) -> int:
        ref, service = self.create_registry().resolve_with_service(args.ref)
        service.remove(ref)
        print(f"Removed {ref}")
        return 0

    def _preview(self, args: argparse.Namespace) -> int:
        ref, service = self.create_registry().resolve_with_service(args.ref)
        print(service.preview(ref))
        return 0

    def _list_services(self, args: argparse.Namespace) -> int:
        summary = self.secret_manager.get_config_summary()
        validation = summary['validation']
        print("Services in resolution order:")
        print("-" * 40)
        for position, name in enumerate(self.create_registry().names, start=1):
            status = ''
            if name in validation:
                status = ' [configured]' if validation[name] else ' [not configured]'
            print(f"{position}. {name}{status}")
        print(f"\nConfiguration: {summary['env_file']}")
        print(f"Stored tokens: {summary['tokens_file']}")
        return 0

    def _logout(self, args: argparse.Namespace) -> int:
        self.secret_manager.clear_tokens()
        print(f"Removed stored tokens from {self.secret_manager.tokens_file}")
        return 0

    def run(self, argv: Optional[List[str]] = None) -> None:
        """Run the CLI. Exits with 1 on errors or failed playlists and 130 when interrupted."""
        self._start_time = time.time()
        args = self.parser.parse_args(argv)

        if not args.command:
            self.parser.print_help()
            sys.exit(1)

        commands = {
            'cp': self._copy,
            'rm': self._remove,
            'preview': self._preview,
            'services': self._list_services,
            'logout': self._logout,
        }

        try:
            setup_logging(args.log_level or self.secret_manager.get_log_level(),
                          log_file=args.log_file,
                          json_format=args.log_json)
            self._setup_signal_handlers()
            exit_code = commands[args.command](args)
        except KeyboardInterrupt:
            logger.warning("Operation cancelled by user")
            print("Cancelled", file=sys.stderr)
            exit_code = 130
        except (DrumError, ConfigError) as e:
            logger.debug(f"{args.command} failed", exc_info=True)
            print(f"Error: {e}", file=sys.stderr)
            exit_code = 1
        except Exception as e:
            logger.error(f"CLI error: {e}", exc_info=True)
            print(f"Error: {e}", file=sys.stderr)
            exit_code = 1
        finally:
            self._cleanup_resources()

        if exit_code:
            sys.exit(exit_code)


def main():
    """Main entry point."""
    cli = CLI()
    cli.run()


if __name__ == '__main__':
    main()
