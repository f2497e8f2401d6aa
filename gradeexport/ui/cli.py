"""
Command Line Interface Module

This module provides the command-line interface of the grade exporter. It
exports the grades of a course to CSV, lists the grade items of a course,
manages encrypted database connection profiles and creates an empty
gradebook schema for testing.

Features:
- Rich console output with colors and tables
- Progress display while users are written
- Connection selection by URL, stored profile or configuration
- Exit codes: 0 success, 1 error, 2 grades need recalculation

Usage:
    gradeexport export --course 12 --feedback --display real,letter
    gradeexport items --course 12 --profile production
    gradeexport profiles add production
    gradeexport profiles list
    gradeexport init-db --database-url sqlite:///gradebook.db

    # Or directly:
    python main.py export --course 12
"""

import argparse
import sys
from pathlib import Path
from typing import List, Optional

from rich.console import Console
from rich.panel import Panel
from rich.prompt import Prompt
from rich.table import Table
from sqlalchemy.exc import SQLAlchemyError

from ..config.constants import DISPLAY_TYPES, SORT_DIRECTIONS, SORTABLE_USER_FIELDS
from ..config.profiles import ProfileError, ProfileManager
from ..config.settings import ConfigurationError, GradeExportConfig, get_config
from ..core.errors import GradeExportError, StaleAggregateError
from ..export.csv_export import ExportOptions, GradeCsvExporter
from ..export.formatting import format_column_name
from ..storage.queries import SqlGradebookSource, create_gradebook_engine
from ..storage.schema import create_schema
from ..utils.logger import get_logger, setup_logging
from ..utils.progress import ProgressTracker

EXIT_OK = 0
EXIT_ERROR = 1
EXIT_STALE = 2
EXIT_INTERRUPTED = 130


def _id_list(value: str) -> List[int]:
    try:
        return [int(part) for part in value.split(',') if part.strip()]
    except ValueError:
        raise argparse.ArgumentTypeError(f"expected comma separated ids, got '{value}'")


def _name_list(value: str) -> List[str]:
    return [part.strip() for part in value.split(',') if part.strip()]


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='gradeexport',
        description='Export course grades from a gradebook database.',
    )
    parser.add_argument('--config', type=Path, default=None,
                        help='configuration file (default: config/config.json)')
    parser.add_argument('--log-level', choices=['DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'],
                        help='override the configured log level')
    parser.add_argument('--quiet', action='store_true', help='do not show progress')

    subparsers = parser.add_subparsers(dest='command', required=True)

    def add_connection_arguments(sub):
        group = sub.add_mutually_exclusive_group()
        group.add_argument('--database-url', help='SQLAlchemy URL of the gradebook database')
        group.add_argument('--profile', help='name of a stored connection profile')

    export = subparsers.add_parser('export', help='export the grades of a course to CSV')
    export.add_argument('--course', type=int, required=True, help='course id')
    export.add_argument('--group', type=int, default=0, help='only export members of this group')
    export.add_argument('--items', type=_id_list, default=None,
                        help='comma separated grade item ids (default: all items)')
    export.add_argument('--output', type=Path, default=None, help='output file or folder')
    export.add_argument('--only-active', action='store_true', default=None,
                        help='only export users with an active enrolment')
    export.add_argument('--feedback', action='store_true', default=None,
                        help='add a feedback column for every grade item')
    export.add_argument('--markdown-feedback', action='store_true', default=None,
                        help='convert HTML feedback to Markdown instead of plain text')
    export.add_argument('--display', type=_name_list, default=None,
                        help=f"comma separated display types ({', '.join(DISPLAY_TYPES)})")
    export.add_argument('--decimals', type=int, default=None, help='decimal places of grades')
    export.add_argument('--sort', choices=SORTABLE_USER_FIELDS, default=None, help='first sort field')
    export.add_argument('--order', choices=SORT_DIRECTIONS, default=None, help='first sort direction')
    add_connection_arguments(export)

    items = subparsers.add_parser('items', help='list the grade items of a course')
    items.add_argument('--course', type=int, required=True, help='course id')
    add_connection_arguments(items)

    profiles = subparsers.add_parser('profiles', help='manage database connection profiles')
    profile_commands = profiles.add_subparsers(dest='profile_command', required=True)

    add = profile_commands.add_parser('add', help='store a connection profile')
    add.add_argument('name', help='profile name')
    add.add_argument('--database-url', help='connection URL (prompted for when omitted)')
    add.add_argument('--description', default='', help='description shown in listings')
    add.add_argument('--overwrite', action='store_true', help='replace an existing profile')

    profile_commands.add_parser('list', help='list stored profiles')

    delete = profile_commands.add_parser('delete', help='delete a stored profile')
    delete.add_argument('name', help='profile name')

    init_db = subparsers.add_parser('init-db', help='create the gradebook tables')
    add_connection_arguments(init_db)

    return parser


class GradeExportCLI:
    """
    Grade exporter command line interface.

    Each command returns an exit code; errors are reported on the console
    and logged, never raised to the caller.
    """

    def __init__(self, config: GradeExportConfig = None, console: Console = None,
                 profile_manager: ProfileManager = None):
        """
        Initialize the CLI.

        Args:
            config: Configuration, the global configuration by default
            console: Console for output
            profile_manager: Connection profile store, next to the configuration file by default
        """
        self.config = config or get_config()
        self.console = console or Console(no_color=not self.config.safe_get('ui.color_output', True, bool))
        self.profile_manager = profile_manager
        self.logger = get_logger(__name__)

    def _get_profile_manager(self) -> ProfileManager:
        if self.profile_manager is None:
            self.profile_manager = ProfileManager(self.config.config_file.parent / "profiles.enc")
        return self.profile_manager

    def run(self, args: argparse.Namespace) -> int:
        """
        Run one parsed command.

        Returns:
            int: Exit code
        """
        handlers = {
            'export': self.export,
            'items': self.list_items,
            'profiles': self.manage_profiles,
            'init-db': self.init_db,
        }

        try:
            return handlers[args.command](args)
        except StaleAggregateError as e:
            self._print_error(str(e))
            self.logger.warning("Export refused, course grades need recalculation", course_id=e.course_id)
            return EXIT_STALE
        except (GradeExportError, ProfileError, ConfigurationError, SQLAlchemyError, ValueError, OSError) as e:
            self._print_error(str(e))
            self.logger.error(f"Command '{args.command}' failed", exception=e)
            return EXIT_ERROR
        except KeyboardInterrupt:
            self._print_error("Interrupted")
            return EXIT_INTERRUPTED

    # ------------------------------------------------------------------
    # Connection
    # ------------------------------------------------------------------

    def resolve_database_url(self, args: argparse.Namespace) -> str:
        if getattr(args, 'database_url', None):
            return args.database_url
        if getattr(args, 'profile', None):
            return self._get_profile_manager().load_profile(args.profile)
        return self.config.safe_get('database.url', 'sqlite:///gradebook.db', str)

    def _create_source(self, args: argparse.Namespace) -> SqlGradebookSource:
        engine = create_gradebook_engine(self.resolve_database_url(args),
                                         echo=self.config.safe_get('database.echo', False, bool))
        return SqlGradebookSource(engine, self.config.get_query_settings())

    # ------------------------------------------------------------------
    # Commands
    # ------------------------------------------------------------------

    def export(self, args: argparse.Namespace) -> int:
        source = self._create_source(args)
        try:
            course = source.get_course(args.course)
            if course is None:
                self._print_error(f"Course {args.course} not found")
                return EXIT_ERROR

            grade_items = source.get_grade_items(course.id, args.items)
            if args.items:
                missing = [item_id for item_id in args.items if item_id not in grade_items]
                if missing:
                    self._print_error(f"Grade items not found in course {course.id}: "
                                      f"{', '.join(str(i) for i in missing)}")
                    return EXIT_ERROR

            options = ExportOptions.from_config(
                self.config,
                group_id=args.group,
                only_active=args.only_active,
                export_feedback=args.feedback,
                feedback_as_markdown=args.markdown_feedback,
                display_types=args.display,
                decimal_points=args.decimals,
                sortfield1=args.sort,
                sortorder1=args.order,
            )

            tracker = None
            if not args.quiet and self.config.safe_get('ui.show_progress', True, bool):
                tracker = ProgressTracker(
                    use_rich=self.config.safe_get('ui.use_rich_progress', True, bool),
                    update_every=self.config.safe_get('ui.progress_update_every', 50, int),
                )

            exporter = GradeCsvExporter(source, course, grade_items, options, progress_tracker=tracker)
            output_path = self._resolve_output_path(args.output, exporter.get_download_filename())

            self.logger.start_operation("grade_export", course_id=course.id, output=str(output_path))
            stats = exporter.export_to_file(output_path)
            self.logger.end_operation("grade_export", users=stats['users'])

            self._show_export_results(course, stats)
            return EXIT_OK
        finally:
            source.engine.dispose()

    def _resolve_output_path(self, output: Optional[Path], filename: str) -> Path:
        if output is None:
            return Path(self.config.safe_get('export.output_folder', 'exports', str)) / filename
        if output.is_dir() or output.suffix == '':
            return output / filename
        return output

    def list_items(self, args: argparse.Namespace) -> int:
        source = self._create_source(args)
        try:
            course = source.get_course(args.course)
            if course is None:
                self._print_error(f"Course {args.course} not found")
                return EXIT_ERROR

            table = Table(title=f"Grade items of {course.shortname or course.id}")
            table.add_column("ID", style="cyan", justify="right")
            table.add_column("Column")
            table.add_column("Type")
            table.add_column("Range", justify="right")

            for item in source.get_grade_items(course.id).values():
                table.add_row(str(item.id), format_column_name(item), item.itemtype,
                              f"{item.grademin:g} - {item.grademax:g}")

            self.console.print(table)
            if source.course_needs_update(course.id):
                self.console.print("[yellow]Course grades need recalculation, export will be refused.[/yellow]")
            return EXIT_OK
        finally:
            source.engine.dispose()

    def manage_profiles(self, args: argparse.Namespace) -> int:
        manager = self._get_profile_manager()

        if args.profile_command == 'add':
            url = args.database_url or Prompt.ask("Database URL", password=True, console=self.console)
            manager.add_profile(args.name, url, description=args.description, overwrite=args.overwrite)
            self._print_success(f"Profile '{args.name}' saved")
            return EXIT_OK

        if args.profile_command == 'list':
            profiles = manager.list_profiles()
            if not profiles:
                self.console.print("No connection profiles stored.")
                return EXIT_OK

            table = Table(title="Connection profiles")
            table.add_column("Name", style="cyan")
            table.add_column("Backend")
            table.add_column("Description")
            table.add_column("Last used")
            for profile in profiles:
                table.add_row(profile['profile_name'], profile['backend'],
                              profile['description'], profile['last_used'] or "never")
            self.console.print(table)
            return EXIT_OK

        if args.profile_command == 'delete':
            if manager.delete_profile(args.name):
                self._print_success(f"Profile '{args.name}' deleted")
                return EXIT_OK
            self._print_error(f"Profile '{args.name}' not found")
            return EXIT_ERROR

        return EXIT_ERROR

    def init_db(self, args: argparse.Namespace) -> int:
        engine = create_gradebook_engine(self.resolve_database_url(args))
        try:
            create_schema(engine)
        finally:
            engine.dispose()
        self._print_success("Gradebook tables created")
        return EXIT_OK

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def _show_export_results(self, course, stats):
        table = Table(show_header=False, box=None)
        table.add_column("Key", style="bold")
        table.add_column("Value")
        table.add_row("Course", f"{course.fullname or course.shortname} ({course.id})")
        table.add_row("Users", str(stats['users']))
        table.add_row("Grade items", str(stats['grade_items']))
        table.add_row("Duration", f"{stats['duration_seconds']:.1f}s")
        table.add_row("File", str(stats['output_file']))

        self.console.print(Panel(table, title="[green]Export complete[/green]", expand=False))

    def _print_success(self, message: str):
        self.console.print(f"[green]{message}[/green]")

    def _print_error(self, message: str):
        self.console.print(f"[red]{message}[/red]")


def main(argv: Optional[List[str]] = None) -> int:
    """
    Main entry point for the CLI application.

    Returns:
        int: Exit code
    """
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = get_config(args.config)
    except ConfigurationError as e:
        print(f"Failed to load configuration: {e}", file=sys.stderr)
        return EXIT_ERROR

    logging_config = config.get_logging_config()
    if args.log_level:
        logging_config['level'] = args.log_level
    setup_logging(logging_config)

    return GradeExportCLI(config).run(args)


if __name__ == "__main__":
    sys.exit(main())
