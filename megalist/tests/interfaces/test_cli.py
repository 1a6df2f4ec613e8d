import argparse
import json
from unittest.mock import Mock, patch

import pytest

from megalist.domain.entities import BatchOutcome, BatchReport, SyncResult
from megalist.domain.errors import MegalistNotFound, MegalistNotSyncable, PlaylistExists, PopulationFailed
from megalist.interfaces.cli import CLI


def _preview(added=0, removed=0):
    preview = Mock()
    preview.added = added
    preview.removed = removed
    preview.is_up_to_date = added == 0 and removed == 0
    return preview


class TestCLI:
    """Tests for CLI functionality."""

    def setup_method(self):
        """Set up test fixtures."""
        self.service = Mock()
        self.service.playlist_service.current_user_id.return_value = 'user-1'
        self.cli = CLI(service=self.service)

    def _run(self, argv):
        with patch('megalist.interfaces.cli.load_environment'), \
             patch.object(self.cli, '_setup_logging'):
            self.cli.run(argv)

    def test_create_parser(self):
        """Test argument parser creation."""
        parser = self.cli._create_parser()

        assert isinstance(parser, argparse.ArgumentParser)

        args = parser.parse_args(['sync', 'm1', '--yes', '--shuffle'])
        assert args.command == 'sync'
        assert args.playlist == 'm1'
        assert args.yes is True
        assert args.shuffle is True

        args = parser.parse_args(['merge', '--name', 'Mix', '--sources', 's1', 's2'])
        assert args.sources == ['s1', 's2']
        assert args.on_exists == 'abort'

        args = parser.parse_args(['surprise', '--name', 'Random', '--count', '25'])
        assert args.count == 25
        assert args.sources is None

    def test_create_job_id(self):
        """Test job ID creation."""
        job_id = self.cli._create_job_id()

        assert job_id.startswith('megalist_')
        assert len(job_id) > len('megalist_')

    @patch('megalist.interfaces.cli.RotatingFileHandler')
    @patch('megalist.interfaces.cli.logging')
    def test_setup_logging(self, mock_logging, mock_file_handler):
        """Test logging setup."""
        self.cli._setup_logging('DEBUG')

        mock_logging.basicConfig.assert_called_once()
        call_args = mock_logging.basicConfig.call_args[1]

        assert call_args['level'] == mock_logging.DEBUG
        assert 'format' in call_args
        assert len(call_args['handlers']) == 2

    def test_sync_without_confirmation_only_previews(self, capsys):
        self.service.preview_sync.return_value = _preview(added=3, removed=1)

        self._run(['sync', 'm1'])

        self.service.preview_sync.assert_called_once_with(['m1'])
        self.service.sync_megalist.assert_not_called()
        assert '3 tracks to add, 1 tracks to remove' in capsys.readouterr().out

    def test_sync_with_confirmation(self):
        self.service.preview_sync.return_value = _preview(added=3)
        self.service.sync_megalist.return_value = SyncResult('m1', 3, 0, 10, ['s1'], changed=True)

        self._run(['sync', 'm1', '--yes', '--shuffle'])

        self.service.sync_megalist.assert_called_once_with('m1', shuffle_after=True)

    def test_sync_failure_exits_with_error(self):
        self.service.require_syncable.side_effect = MegalistNotFound('m1')

        with pytest.raises(SystemExit) as exc_info:
            self._run(['sync', 'm1', '--yes'])

        assert exc_info.value.code == 1

    def test_sync_frozen_megalist_is_reported(self, caplog):
        self.service.require_syncable.side_effect = MegalistNotSyncable('m1', 'playlist is frozen')

        with pytest.raises(SystemExit) as exc_info:
            self._run(['sync', 'm1', '--yes'])

        assert exc_info.value.code == 1
        assert 'cannot be synced: playlist is frozen' in caplog.text
        self.service.preview_sync.assert_not_called()
        self.service.sync_megalist.assert_not_called()

    def test_failed_command_cleans_up_once(self):
        self.service.require_syncable.side_effect = MegalistNotFound('m1')

        with patch.object(self.cli, '_cleanup_resources') as mock_cleanup:
            with pytest.raises(SystemExit):
                self._run(['sync', 'm1'])

        mock_cleanup.assert_called_once_with()

    def test_sync_all_defaults_to_syncable_records(self, tmp_path):
        syncable, frozen = Mock(id='m1', is_syncable=True), Mock(id='m2', is_syncable=False)
        self.service.repository.find_many_by_owner.return_value = [syncable, frozen]
        self.service.preview_sync.return_value = _preview(added=1)
        self.service.sync_all.return_value = BatchReport(outcomes=[
            BatchOutcome('m1', True, result=SyncResult('m1', 1, 0, 5, ['s1'], changed=True)),
        ])

        self._run(['sync-all', '--yes', '--report-path', str(tmp_path)])

        self.service.repository.find_many_by_owner.assert_called_once_with('user-1')
        self.service.sync_all.assert_called_once_with(['m1'], shuffle_after=False)
        reports = list(tmp_path.glob('sync_report_megalist_*.json'))
        assert len(reports) == 1
        assert json.loads(reports[0].read_text())['totals']['synced'] == 1

    def test_sync_all_with_failures_exits(self, tmp_path):
        self.service.preview_sync.return_value = _preview(added=1)
        self.service.sync_all.return_value = BatchReport(outcomes=[
            BatchOutcome('m1', False, error='[500] Server error'),
        ])

        with pytest.raises(SystemExit) as exc_info:
            self._run(['sync-all', 'm1', '--yes', '--report-path', str(tmp_path)])

        assert exc_info.value.code == 1

    def test_merge_creates_megalist(self):
        self.service.create_megalist.return_value = Mock(id='new-1', track_count=12)

        self._run(['merge', '--name', 'Mix', '--sources', 's1', 's2'])

        call = self.service.create_megalist.call_args
        assert call[0] == ('user-1', 'Mix', ['s1', 's2'])
        assert call[1]['shuffle_tracks'] is False

    def test_merge_into_existing_adds_sources(self):
        self.service.create_megalist.side_effect = PlaylistExists('existing', 'Mix')
        self.service.add_sources.return_value = Mock(id='existing', track_count=20)

        self._run(['merge', '--name', 'Mix', '--sources', 's3', '--on-exists', 'add'])

        self.service.add_sources.assert_called_once_with('existing', ['s3'], shuffle_after=False)

    def test_merge_into_existing_aborts_by_default(self):
        self.service.create_megalist.side_effect = PlaylistExists('existing', 'Mix')

        with pytest.raises(SystemExit) as exc_info:
            self._run(['merge', '--name', 'Mix', '--sources', 's3'])

        assert exc_info.value.code == 1
        self.service.add_sources.assert_not_called()
        self.service.replace_megalist.assert_not_called()

    def test_interrupted_merge_exits(self):
        self.service.create_megalist.side_effect = PopulationFailed('new-1', added=100, total=250)

        with pytest.raises(SystemExit) as exc_info:
            self._run(['merge', '--name', 'Mix', '--sources', 's1'])

        assert exc_info.value.code == 1

    def test_freeze(self):
        self.service.set_frozen.return_value = Mock(id='m1', is_frozen=True)

        self._run(['freeze', 'm1'])

        self.service.set_frozen.assert_called_once_with('user-1', 'm1', True)

    def test_global_surprise_without_sources(self):
        self.service.create_global_surprise.return_value = Mock(id='mix', track_count=5)

        self._run(['surprise', '--name', 'Random', '--count', '5'])

        self.service.create_global_surprise.assert_called_once_with('user-1', 5, 'Random', overwrite_id=None)
        self.service.create_surprise_mix.assert_not_called()

    def test_delete_requires_confirmation(self):
        self._run(['delete', 'm1'])

        self.service.delete_playlists.assert_not_called()

    def test_delete_confirmed(self):
        self.service.delete_playlists.return_value = BatchReport(outcomes=[BatchOutcome('m1', True)])

        self._run(['delete', 'm1', '--yes'])

        self.service.delete_playlists.assert_called_once_with(['m1'])

    def test_count_unique_tracks(self, capsys):
        self.service.count_unique_tracks.return_value = 42

        self._run(['count', 's1', 's2'])

        self.service.count_unique_tracks.assert_called_once_with(['s1', 's2'])
        assert '42 unique tracks across 2 playlists' in capsys.readouterr().out

    def test_clear_requires_confirmation(self):
        self._run(['clear', 'm1'])

        self.service.clear_playlist.assert_not_called()

    def test_clear_confirmed(self):
        self._run(['clear', 'm1', '--yes'])

        self.service.clear_playlist.assert_called_once_with('m1')

    def test_no_command_prints_help(self):
        with pytest.raises(SystemExit) as exc_info:
            self._run([])

        assert exc_info.value.code == 1
