"""
Progress Tracking Module

This module reports export progress. An export walks an unknown number of
users one at a time, so progress is reported as users written so far,
with a total only when the caller knows it.

Features:
- Rich progress bar on the console, or plain line output
- Progress callbacks for embedding the exporter in other tools
- Export statistics (users, grade items, duration)

Usage:
    tracker = ProgressTracker()
    tracker.start_export("Math 101", course_id=12, total_users=250)

    for count, bundle in enumerate(iterator, 1):
        write(bundle)
        tracker.update_user_progress(count)

    tracker.complete_export()
"""

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from rich.console import Console
from rich.progress import (
    BarColumn, MofNCompleteColumn, Progress, SpinnerColumn, TaskID, TextColumn, TimeElapsedColumn,
)

from ..utils.logger import get_logger


@dataclass
class ProgressState:
    """State of one export run."""
    current: int = 0
    total: Optional[int] = None
    completed: bool = False

    start_time: datetime = field(default_factory=datetime.now)
    end_time: Optional[datetime] = None

    name: str = ""
    course_id: Optional[int] = None

    @property
    def percentage(self) -> float:
        if not self.total:
            return 0.0
        return (self.current / self.total) * 100

    @property
    def elapsed_time(self) -> timedelta:
        end_time = self.end_time or datetime.now()
        return end_time - self.start_time

    @property
    def speed(self) -> Optional[float]:
        """Users per second."""
        seconds = self.elapsed_time.total_seconds()
        if seconds <= 0:
            return None
        return self.current / seconds


class ProgressTracker:
    """
    Export progress tracker.

    Progress is shown with a Rich progress bar when ``use_rich`` is set and
    console output is enabled, otherwise as a single updating line.
    Registered callbacks receive ``(event, state)`` on every update.
    """

    def __init__(self, use_rich: bool = True, console_output: bool = True,
                 console: Console = None, update_every: int = 50):
        """
        Initialize the progress tracker.

        Args:
            use_rich: Whether to use Rich for the progress display
            console_output: Whether to display progress at all
            console: Console to draw on, a stderr console by default
            update_every: Redraw the plain display every N users
        """
        self.use_rich = use_rich
        self.console_output = console_output
        self.update_every = max(1, update_every)
        self.logger = get_logger(__name__)

        self._lock = threading.RLock()
        self._state = ProgressState()

        self._console = console or Console(stderr=True)
        self._progress_display: Optional[Progress] = None
        self._task_id: Optional[TaskID] = None

        self._progress_callbacks: List[Callable[[str, ProgressState], None]] = []

    def add_progress_callback(self, callback: Callable[[str, ProgressState], None]):
        with self._lock:
            self._progress_callbacks.append(callback)

    def remove_progress_callback(self, callback: Callable):
        with self._lock:
            if callback in self._progress_callbacks:
                self._progress_callbacks.remove(callback)

    def _notify_callbacks(self, event: str):
        for callback in self._progress_callbacks:
            try:
                callback(event, self._state)
            except Exception as e:
                self.logger.error("Progress callback error", exception=e)

    def start_export(self, course_name: str, course_id: int = None, total_users: int = None):
        """
        Start tracking an export.

        Args:
            course_name: Name shown next to the progress bar
            course_id: Course being exported
            total_users: Number of users, if known
        """
        with self._lock:
            self._state = ProgressState(name=course_name, course_id=course_id, total=total_users)
            self._notify_callbacks('start')

            if self.console_output:
                self._initialize_display()

    def update_user_progress(self, users_written: int):
        """
        Record the number of users written so far.

        Args:
            users_written: Users written since the export started
        """
        with self._lock:
            self._state.current = users_written
            self._notify_callbacks('update')
            self._update_display()

    def complete_export(self):
        """Mark the export finished and stop the display."""
        with self._lock:
            self._state.completed = True
            self._state.end_time = datetime.now()
            if self._state.total is None:
                self._state.total = self._state.current
            self._notify_callbacks('complete')
            self._update_display(force=True)
            self.cleanup()

    def _initialize_display(self):
        if self.use_rich:
            self._progress_display = Progress(
                SpinnerColumn(),
                TextColumn("[progress.description]{task.description}"),
                BarColumn(),
                MofNCompleteColumn(),
                TimeElapsedColumn(),
                console=self._console,
                transient=False,
            )
            self._progress_display.start()
            self._task_id = self._progress_display.add_task(
                f"Exporting {self._state.name}", total=self._state.total)
        else:
            self._console.print(f"Exporting {self._state.name}")

    def _update_display(self, force: bool = False):
        if not self.console_output:
            return

        if self._progress_display is not None and self._task_id is not None:
            self._progress_display.update(self._task_id,
                                          completed=self._state.current,
                                          total=self._state.total)
        elif not self.use_rich and (force or self._state.current % self.update_every == 0):
            self._console.print(f"Users written: {self._state.current}")

    def get_statistics(self) -> Dict[str, Any]:
        """Statistics of the current or last export."""
        with self._lock:
            state = self._state
            return {
                'course_name': state.name,
                'course_id': state.course_id,
                'users_written': state.current,
                'completed': state.completed,
                'elapsed_seconds': state.elapsed_time.total_seconds(),
                'users_per_second': state.speed,
            }

    def cleanup(self):
        """Stop the live display."""
        if self._progress_display is not None:
            self._progress_display.stop()
            self._progress_display = None
            self._task_id = None


def create_progress_tracker(**kwargs) -> ProgressTracker:
    """Factory function to create a progress tracker instance."""
    return ProgressTracker(**kwargs)
