import argparse
import logging
import signal
import sys
import time
from datetime import datetime
from logging.handlers import RotatingFileHandler
from typing import List, Optional

from megalist.application.checkpoints import FileCheckpointStore
from megalist.application.executor import BatchExecutor
from megalist.application.service import MegalistService
from megalist.crosscutting.config import ConfigError, Settings, get_secret_manager, load_environment
from megalist.crosscutting.reporting import create_sync_report, save_report
from megalist.domain.errors import MegalistError, PlaylistExists, PopulationFailed
from megalist.infrastructure.auth import SessionTokenProvider
from megalist.infrastructure.persistence import JsonMegalistRepository
from megalist.infrastructure.providers.spotify import SpotifyPlaylistClient


class CLI:
    """Command Line Interface for Megalist."""

    def __init__(self, service: Optional[MegalistService] = None):
        """Initialize CLI.

        Args:
            service: Pre-built service; created from configuration on first use otherwise
        """
        self.parser = self._create_parser()
        self._setup_signal_handlers()
        self._start_time = None
        self._service = service

    @staticmethod
    def _add_log_level(parser: argparse.ArgumentParser) -> None:
        parser.add_argument(
            '--log-level',
            choices=['DEBUG', 'INFO', 'WARNING', 'ERROR'],
            default='INFO',
            help='Set logging level'
        )

    def _create_parser(self) -> argparse.ArgumentParser:
        """Create argument parser."""
        parser = argparse.ArgumentParser(
            prog='megalist',
            description='Merge Spotify playlists and keep them in sync with their sources'
        )
        subparsers = parser.add_subparsers(dest='command', help='Available commands')

        preview_parser = subparsers.add_parser('preview', help='Show what a sync would change')
        preview_parser.add_argument('playlists', nargs='+', help='Megalist IDs')
        self._add_log_level(preview_parser)

        sync_parser = subparsers.add_parser('sync', help='Sync one megalist with its sources')
        sync_parser.add_argument('playlist', help='Megalist ID')
        sync_parser.add_argument('--yes', action='store_true', help='Apply the changes after the preview')
        sync_parser.add_argument('--shuffle', action='store_true', help='Shuffle the playlist if it changed')
        self._add_log_level(sync_parser)

        sync_all_parser = subparsers.add_parser('sync-all', help='Sync several megalists')
        sync_all_parser.add_argument('playlists', nargs='*', help='Megalist IDs (default: all of yours)')
        sync_all_parser.add_argument('--yes', action='store_true', help='Apply the changes after the preview')
        sync_all_parser.add_argument('--shuffle', action='store_true', help='Shuffle playlists that changed')
        sync_all_parser.add_argument(
            '--report-path',
            default='reports/',
            help='Path to save reports (default: reports/)'
        )
        self._add_log_level(sync_all_parser)

        merge_parser = subparsers.add_parser('merge', help='Create a megalist from source playlists')
        merge_parser.add_argument('--name', required=True, help='Name of the new playlist')
        merge_parser.add_argument('--sources', nargs='+', required=True, help='Source playlist IDs')
        merge_parser.add_argument('--shuffle', action='store_true', help='Shuffle tracks before adding')
        merge_parser.add_argument(
            '--on-exists',
            choices=['abort', 'add', 'replace'],
            default='abort',
            help='What to do when a playlist with that name already exists'
        )
        self._add_log_level(merge_parser)

        empty_parser = subparsers.add_parser('create-empty', help='Create an empty frozen megalist')
        empty_parser.add_argument('--name', required=True, help='Name of the new playlist')
        self._add_log_level(empty_parser)

        resume_parser = subparsers.add_parser('resume', help='Resume an interrupted megalist creation')
        resume_parser.add_argument('playlist', nargs='?', help='Megalist ID (default: every pending one)')
        self._add_log_level(resume_parser)

        count_parser = subparsers.add_parser('count', help='Count unique tracks across playlists')
        count_parser.add_argument('playlists', nargs='+', help='Playlist IDs')
        self._add_log_level(count_parser)

        clear_parser = subparsers.add_parser('clear', help='Remove every track from a playlist')
        clear_parser.add_argument('playlist', help='Playlist ID')
        clear_parser.add_argument('--yes', action='store_true', help='Confirm clearing')
        self._add_log_level(clear_parser)

        shuffle_parser = subparsers.add_parser('shuffle', help='Shuffle playlists')
        shuffle_parser.add_argument('playlists', nargs='+', help='Playlist IDs')
        self._add_log_level(shuffle_parser)

        for command, help_text in (('freeze', 'Exclude a megalist from sync'),
                                   ('unfreeze', 'Include a megalist in sync again'),
                                   ('isolate', 'Exclude a playlist from global surprise mixes'),
                                   ('unisolate', 'Include a playlist in global surprise mixes again'),
                                   ('adopt', 'Start managing an existing playlist')):
            flag_parser = subparsers.add_parser(command, help=help_text)
            flag_parser.add_argument('playlist', help='Playlist ID')
            self._add_log_level(flag_parser)

        surprise_parser = subparsers.add_parser('surprise', help='Create a random surprise mix')
        surprise_parser.add_argument('--name', required=True, help='Name of the mix')
        surprise_parser.add_argument('--count', type=int, required=True, help='Number of tracks')
        surprise_parser.add_argument('--sources', nargs='+', help='Source playlist IDs (default: whole library)')
        surprise_parser.add_argument('--overwrite', help='ID of an existing mix to overwrite')
        self._add_log_level(surprise_parser)

        delete_parser = subparsers.add_parser('delete', help='Unfollow playlists and forget them')
        delete_parser.add_argument('playlists', nargs='+', help='Playlist IDs')
        delete_parser.add_argument('--yes', action='store_true', help='Confirm deletion')
        self._add_log_level(delete_parser)

        list_parser = subparsers.add_parser('list', help='List your playlists')
        list_parser.add_argument('--megalists-only', action='store_true', help='Only show managed playlists')
        self._add_log_level(list_parser)

        return parser

    def _setup_signal_handlers(self) -> None:
        """Setup signal handlers for graceful shutdown."""
        def signal_handler(signum, frame):
            logger = logging.getLogger(__name__)
            logger.warning(f"Received signal {signum}, shutting down gracefully...")
            self._cleanup_resources()
            sys.exit(130)

        signal.signal(signal.SIGINT, signal_handler)
        signal.signal(signal.SIGTERM, signal_handler)

    def _cleanup_resources(self) -> None:
        """Clean up resources on exit."""
        logger = logging.getLogger(__name__)
        if self._start_time:
            duration = time.time() - self._start_time
            logger.info(f"CLI execution time: {duration:.2f}s")
            self._start_time = None
        if self._service is not None and self._service.poller is not None:
            self._service.poller.stop()

    def _setup_logging(self, level: str) -> None:
        """Setup logging configuration."""
        handlers = [
            logging.StreamHandler(sys.stdout),
        ]
        # Rotate at ~100MB with up to 14 backups
        try:
            handlers.append(RotatingFileHandler('megalist.log', maxBytes=100 * 1024 * 1024, backupCount=14))
        except OSError:
            pass
        logging.basicConfig(
            level=getattr(logging, level.upper()),
            format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
            handlers=handlers
        )

    def _create_job_id(self) -> str:
        """Create unique job identifier."""
        return f"megalist_{datetime.now().strftime('%Y%m%d_%H%M%S')}"

    def _create_service(self) -> MegalistService:
        """Build the service from environment and stored configuration."""
        secret_manager = get_secret_manager()
        settings = Settings.from_env(secret_manager)
        client = SpotifyPlaylistClient(token_provider=SessionTokenProvider.from_config(secret_manager))
        executor = BatchExecutor(
            client,
            checkpoint_store=FileCheckpointStore(settings.checkpoint_dir),
            max_workers=settings.max_workers,
        )
        return MegalistService(
            client,
            JsonMegalistRepository(settings.registry_path),
            executor=executor,
            max_workers=settings.max_workers,
        )

    @property
    def service(self) -> MegalistService:
        if self._service is None:
            self._service = self._create_service()
        return self._service

    def _owner_id(self) -> str:
        return self.service.playlist_service.current_user_id()

    def _print_progress(self, added: int, total: int) -> None:
        print(f"Adding tracks... {added} / {total}")

    def _preview(self, args: argparse.Namespace) -> None:
        preview = self.service.preview_sync(args.playlists)
        if preview.is_up_to_date:
            print("Everything is up to date")
        else:
            print(f"{preview.added} tracks to add, {preview.removed} tracks to remove")

    def _sync(self, args: argparse.Namespace) -> None:
        logger = logging.getLogger(__name__)
        self.service.require_syncable(args.playlist)
        preview = self.service.preview_sync([args.playlist])
        if preview.is_up_to_date:
            print(f"Megalist {args.playlist} is already up to date")
        else:
            print(f"{preview.added} tracks to add, {preview.removed} tracks to remove")
        if not args.yes:
            print("Re-run with --yes to apply")
            return
        result = self.service.sync_megalist(args.playlist, shuffle_after=args.shuffle)
        logger.info(f"Sync of {args.playlist} completed: +{result.added} / -{result.removed}, "
                    f"{result.final_track_count} tracks")

    def _sync_all(self, args: argparse.Namespace) -> None:
        logger = logging.getLogger(__name__)
        playlist_ids = args.playlists
        if not playlist_ids:
            records = self.service.repository.find_many_by_owner(self._owner_id())
            playlist_ids = [r.id for r in records if r.is_syncable]
        if not playlist_ids:
            logger.warning("No megalists to sync")
            return

        preview = self.service.preview_sync(playlist_ids)
        print(f"{len(playlist_ids)} megalists: {preview.added} tracks to add, {preview.removed} tracks to remove")
        if not args.yes:
            print("Re-run with --yes to apply")
            return

        job_id = self._create_job_id()
        started_at = datetime.now()
        batch = self.service.sync_all(playlist_ids, shuffle_after=args.shuffle)
        report = create_sync_report(job_id, started_at, batch, shuffled=args.shuffle)
        try:
            save_report(report, args.report_path)
        except OSError as e:
            logger.error(f"Failed to save report: {e}")

        for outcome in batch.failed:
            print(f"FAILED {outcome.playlist_id}: {outcome.error}")
        if not batch.all_succeeded:
            sys.exit(1)

    def _merge(self, args: argparse.Namespace) -> None:
        logger = logging.getLogger(__name__)
        try:
            record = self.service.create_megalist(
                self._owner_id(), args.name, args.sources,
                shuffle_tracks=args.shuffle, progress=self._print_progress,
            )
            print(f"Created megalist {record.id} with {record.track_count} tracks")
        except PlaylistExists as e:
            if args.on_exists == 'add':
                record = self.service.add_sources(e.playlist_id, args.sources, shuffle_after=args.shuffle)
                print(f"Updated megalist {record.id}, now {record.track_count} tracks")
            elif args.on_exists == 'replace':
                record = self.service.replace_megalist(e.playlist_id, args.sources)
                print(f"Replaced megalist {record.id} with {record.track_count} tracks")
            else:
                logger.error(f"{e}. Use --on-exists add or --on-exists replace")
                sys.exit(1)
        except PopulationFailed as e:
            logger.error(f"{e}. Run 'megalist resume {e.playlist_id}' to finish")
            sys.exit(1)

    def _create_empty(self, args: argparse.Namespace) -> None:
        record = self.service.create_empty_megalist(self._owner_id(), args.name)
        print(f"Created empty megalist {record.id}")

    def _resume(self, args: argparse.Namespace) -> None:
        logger = logging.getLogger(__name__)
        if args.playlist:
            playlist_ids = [args.playlist]
        else:
            store = self.service.executor.checkpoint_store
            playlist_ids = [c.playlist_id for c in store.list_pending()] if store else []
        if not playlist_ids:
            logger.info("No interrupted megalists to resume")
            return
        for playlist_id in playlist_ids:
            result = self.service.resume_population(playlist_id, progress=self._print_progress)
            print(f"Megalist {playlist_id} complete with {result.total} tracks")

    def _count(self, args: argparse.Namespace) -> None:
        count = self.service.count_unique_tracks(args.playlists)
        print(f"{count} unique tracks across {len(args.playlists)} playlists")

    def _clear(self, args: argparse.Namespace) -> None:
        if not args.yes:
            print(f"This will remove every track from {args.playlist}. Re-run with --yes")
            return
        self.service.clear_playlist(args.playlist)
        print(f"Cleared playlist {args.playlist}")

    def _shuffle(self, args: argparse.Namespace) -> None:
        self.service.shuffle_playlists(args.playlists)
        print(f"Shuffled {len(args.playlists)} playlists")

    def _set_flag(self, args: argparse.Namespace) -> None:
        owner_id = self._owner_id()
        if args.command in ('freeze', 'unfreeze'):
            record = self.service.set_frozen(owner_id, args.playlist, args.command == 'freeze')
            print(f"Megalist {record.id} frozen: {record.is_frozen}")
        elif args.command in ('isolate', 'unisolate'):
            record = self.service.set_isolated(owner_id, args.playlist, args.command == 'isolate')
            print(f"Playlist {record.id} isolated: {record.is_isolated}")
        else:
            record = self.service.adopt_playlist(owner_id, args.playlist)
            print(f"Playlist {record.id} adopted")

    def _surprise(self, args: argparse.Namespace) -> None:
        logger = logging.getLogger(__name__)
        owner_id = self._owner_id()
        try:
            if args.sources:
                record = self.service.create_surprise_mix(
                    owner_id, args.sources, args.count, args.name, overwrite_id=args.overwrite,
                )
            else:
                record = self.service.create_global_surprise(
                    owner_id, args.count, args.name, overwrite_id=args.overwrite,
                )
        except PlaylistExists as e:
            logger.error(f"{e}. Use --overwrite {e.playlist_id} to replace it")
            sys.exit(1)
        print(f"Surprise mix {record.id} has {record.track_count} tracks")

    def _delete(self, args: argparse.Namespace) -> None:
        if not args.yes:
            print(f"This will remove {len(args.playlists)} playlists from your library. Re-run with --yes")
            return
        report = self.service.delete_playlists(args.playlists)
        print(f"Deleted {len(report.succeeded)} playlists")
        for outcome in report.failed:
            print(f"FAILED {outcome.playlist_id}: {outcome.error}")
        if not report.all_succeeded:
            sys.exit(1)

    def _list_playlists(self, args: argparse.Namespace) -> None:
        playlists = self.service.load_library(self._owner_id())
        if args.megalists_only:
            playlists = [p for p in playlists if p.is_megalist]

        print("Your playlists:")
        print("-" * 50)
        for playlist in playlists:
            flags: List[str] = []
            if playlist.kind is not None:
                flags.append(playlist.kind.value)
            if playlist.is_frozen:
                flags.append("FROZEN")
            if playlist.is_isolated:
                flags.append("ISOLATED")
            marker = f" [{', '.join(flags)}]" if flags else ""
            print(f"{playlist.id}: {playlist.name}{marker} (tracks: {playlist.track_count})")

    def run(self, argv: Optional[List[str]] = None) -> None:
        """Run the CLI."""
        self._start_time = time.time()
        commands = {
            'preview': self._preview,
            'sync': self._sync,
            'sync-all': self._sync_all,
            'merge': self._merge,
            'create-empty': self._create_empty,
            'resume': self._resume,
            'count': self._count,
            'clear': self._clear,
            'shuffle': self._shuffle,
            'freeze': self._set_flag,
            'unfreeze': self._set_flag,
            'isolate': self._set_flag,
            'unisolate': self._set_flag,
            'adopt': self._set_flag,
            'surprise': self._surprise,
            'delete': self._delete,
            'list': self._list_playlists,
        }

        try:
            args = self.parser.parse_args(argv)

            if not args.command:
                self.parser.print_help()
                sys.exit(1)

            load_environment()
            self._setup_logging(args.log_level)
            commands[args.command](args)

        except KeyboardInterrupt:
            logger = logging.getLogger(__name__)
            logger.warning("Operation cancelled by user")
            sys.exit(130)
        except (MegalistError, ConfigError, LookupError, ValueError) as e:
            logger = logging.getLogger(__name__)
            logger.error(f"{args.command} failed: {e}")
            sys.exit(1)
        finally:
            self._cleanup_resources()


def main():
    """Main entry point."""
    cli = CLI()
    cli.run()


if __name__ == '__main__':
    main()
