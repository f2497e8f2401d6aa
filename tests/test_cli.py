"""Tests for the command line interface."""

import csv
import json

import pytest
from sqlalchemy import inspect, update

from gradeexport.config import settings
from gradeexport.storage import schema
from gradeexport.storage.queries import create_gradebook_engine
from gradeexport.ui.cli import EXIT_ERROR, EXIT_OK, EXIT_STALE, build_parser, main


@pytest.fixture
def config_file(tmp_path):
    settings.reset_config()
    path = tmp_path / 'config' / 'config.json'
    path.parent.mkdir()
    path.write_text(json.dumps({
        'gradebook': {'custom_profile_fields': ['studentno']},
        'logging': {'console_output': False},
        'ui': {'show_progress': False},
    }), encoding='utf-8')
    yield path
    settings.reset_config()


def run(config_file, *argv):
    return main(['--config', str(config_file), '--quiet', *argv])


class TestParser:
    """Test argument parsing."""

    def test_export_arguments(self):
        args = build_parser().parse_args(['export', '--course', '12', '--items', '1,2', '--display', 'real,letter',
                                          '--feedback'])

        assert args.course == 12
        assert args.items == [1, 2]
        assert args.display == ['real', 'letter']
        assert args.feedback is True
        assert args.only_active is None

    def test_bad_item_list(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(['export', '--course', '1', '--items', 'a,b'])

    def test_url_and_profile_exclusive(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(['export', '--course', '1', '--profile', 'p', '--database-url', 'sqlite://'])


class TestExportCommand:
    """Test the export command end to end."""

    def test_export(self, engine, database_url, config_file, tmp_path):
        output = tmp_path / 'exports'

        code = run(config_file, 'export', '--course', '1', '--database-url', database_url,
                   '--output', str(output), '--display', 'real,percentage', '--feedback')

        assert code == EXIT_OK
        with open(output / 'MATH101 Grades.csv', encoding='utf-8', newline='') as f:
            rows = list(csv.reader(f))
        assert rows[0][:4] == ['Full name', 'Email address', 'Group', 'Student number']
        assert 'Assign: Essay (Percentage)' in rows[0]
        assert len(rows) == 6

    def test_export_items_and_file_name(self, engine, database_url, config_file, tmp_path):
        output = tmp_path / 'essay.csv'

        code = run(config_file, 'export', '--course', '1', '--items', '101', '--only-active',
                   '--database-url', database_url, '--output', str(output))

        assert code == EXIT_OK
        with open(output, encoding='utf-8', newline='') as f:
            rows = list(csv.reader(f))
        assert rows[0][-2] == 'Assign: Essay'
        assert len(rows) == 4

    def test_unknown_course(self, engine, database_url, config_file, tmp_path):
        code = run(config_file, 'export', '--course', '999', '--database-url', database_url,
                   '--output', str(tmp_path / 'out'))

        assert code == EXIT_ERROR

    def test_unknown_item(self, engine, database_url, config_file, tmp_path):
        code = run(config_file, 'export', '--course', '1', '--items', '101,200', '--database-url', database_url,
                   '--output', str(tmp_path / 'out'))

        assert code == EXIT_ERROR

    def test_stale_course(self, engine, database_url, config_file, tmp_path):
        with engine.begin() as conn:
            conn.execute(update(schema.grade_items).where(schema.grade_items.c.id == 100).values(needsupdate=True))

        code = run(config_file, 'export', '--course', '1', '--database-url', database_url,
                   '--output', str(tmp_path / 'out'))

        assert code == EXIT_STALE
        assert not (tmp_path / 'out' / 'MATH101 Grades.csv').exists()

    def test_invalid_display_type(self, engine, database_url, config_file, tmp_path):
        code = run(config_file, 'export', '--course', '1', '--display', 'stars', '--database-url', database_url,
                   '--output', str(tmp_path / 'out'))

        assert code == EXIT_ERROR

    def test_export_with_profile(self, engine, database_url, config_file, tmp_path):
        assert run(config_file, 'profiles', 'add', 'local', '--database-url', database_url) == EXIT_OK

        code = run(config_file, 'export', '--course', '1', '--profile', 'local', '--output', str(tmp_path / 'out'))

        assert code == EXIT_OK
        assert (tmp_path / 'out' / 'MATH101 Grades.csv').exists()


class TestOtherCommands:
    """Test items, profiles and init-db."""

    def test_items(self, engine, database_url, config_file, capsys):
        assert run(config_file, 'items', '--course', '1', '--database-url', database_url) == EXIT_OK

        out = capsys.readouterr().out
        assert 'Assign: Essay' in out
        assert 'Course total' in out

    def test_profiles(self, config_file, capsys):
        assert run(config_file, 'profiles', 'add', 'local', '--database-url', 'sqlite:///a.db',
                   '--description', 'Laptop copy') == EXIT_OK
        assert run(config_file, 'profiles', 'list') == EXIT_OK
        assert 'Laptop copy' in capsys.readouterr().out

        assert run(config_file, 'profiles', 'add', 'local', '--database-url', 'sqlite:///b.db') == EXIT_ERROR
        assert run(config_file, 'profiles', 'delete', 'local') == EXIT_OK
        assert run(config_file, 'profiles', 'delete', 'local') == EXIT_ERROR
        assert (config_file.parent / 'profiles.enc').exists()

    def test_missing_profile(self, config_file, tmp_path):
        code = run(config_file, 'export', '--course', '1', '--profile', 'nope', '--output', str(tmp_path))

        assert code == EXIT_ERROR

    def test_init_db(self, config_file, tmp_path):
        url = f"sqlite:///{tmp_path / 'new.db'}"

        assert run(config_file, 'init-db', '--database-url', url) == EXIT_OK

        engine = create_gradebook_engine(url)
        try:
            assert set(schema.metadata.tables) <= set(inspect(engine).get_table_names())
        finally:
            engine.dispose()
