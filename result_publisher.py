"""
Publisher of test results into one shared results file.

Any number of worker processes may publish into the same file at once. Each
publish call is a self-contained transaction: open the file, take an
exclusive lock, parse the whole document, apply one upsert, rewrite the whole
file and release the lock. Publishing to different tests still serializes on
the one file lock.
"""

import os
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, IO, Iterator, Optional

from file_lock import locked
from harness_errors import (
    ConfigurationError,
    CorruptDocumentError,
    ReentrancyError,
    StoreError
)
from result_document import ResultDocument, dump_document, parse_document
from status_vocabulary import (
    DEFAULT_VOCABULARY,
    TEST_STATUS_DONE,
    TEST_STATUS_STARTED,
    StatusVocabulary
)


DEFAULT_RESULTS_FILE = "results.json"
DEFAULT_LOCK_TIMEOUT = 30.0


def format_timestamp(value: datetime) -> str:
    """Format a datetime as an ISO-8601 string with second precision."""
    return value.replace(microsecond=0).isoformat()


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ResultPublisher:
    """Publishes test case and test statuses into a shared results file."""

    def __init__(
        self,
        file_dir: Optional[str] = None,
        file_name: str = DEFAULT_RESULTS_FILE,
        lock_timeout: Optional[float] = DEFAULT_LOCK_TIMEOUT,
        vocabulary: StatusVocabulary = DEFAULT_VOCABULARY,
        clock: Optional[Callable[[], datetime]] = None
    ):
        """
        Initialize the publisher.

        If file_dir is not given, set_file_dir() must be called before the
        first publish.

        Args:
            file_dir: Directory where the results file is stored
            file_name: Name of the results file inside file_dir
            lock_timeout: Seconds to wait for the file lock, None waits forever
            vocabulary: Recognized statuses and results
            clock: Callable returning the current time, used for test timestamps
        """
        self.file_dir = file_dir
        self.file_name = file_name
        self.lock_timeout = lock_timeout
        self.vocabulary = vocabulary
        self.clock = clock or _utc_now
        self._file_handle: Optional[IO] = None

    @classmethod
    def from_config(cls, config) -> "ResultPublisher":
        """Create a publisher from a HarnessConfig."""
        return cls(
            file_dir=config.results_dir,
            file_name=config.results_file,
            lock_timeout=config.lock_timeout,
            vocabulary=config.vocabulary
        )

    def set_file_dir(self, file_dir: str) -> None:
        self.file_dir = file_dir

    def set_file_name(self, file_name: str) -> None:
        """Change the file name from the default. Mostly useful for test isolation."""
        self.file_name = file_name

    def get_file_path(self) -> Path:
        """
        Get the full path to the results file.

        Raises:
            ConfigurationError: If no results directory was configured
        """
        if not self.file_dir:
            raise ConfigurationError(
                "Results directory is not set. Pass file_dir to ResultPublisher or call set_file_dir()"
            )
        return Path(self.file_dir) / self.file_name

    def clean(self) -> None:
        """Remove the results file with all previous results, if it exists."""
        self.get_file_path().unlink(missing_ok=True)

    def publish_test_case_status(
        self,
        test_case_name: str,
        status: str,
        result: Optional[str] = None,
        start_time: Optional[datetime] = None,
        end_time: Optional[datetime] = None
    ) -> None:
        """
        Publish the status of a test case.

        Only the values given are written; attributes already recorded for the
        test case are kept when the corresponding argument is None.

        Raises:
            ValidationError: If status or result is not recognized
        """
        self.vocabulary.validate_test_case(status, result)

        with self._locked_document() as document:
            test_case = document.get_test_case(test_case_name)
            test_case.status = status
            if result is not None:
                test_case.result = result
            if start_time is not None:
                test_case.start = format_timestamp(start_time)
            if end_time is not None:
                test_case.end = format_timestamp(end_time)

    def publish_test_status(
        self,
        test_case_name: str,
        test_name: str,
        status: str,
        result: Optional[str] = None,
        message: Optional[str] = None
    ) -> None:
        """
        Publish the status of a single test.

        The test case is created if it does not exist yet. The test gets its
        start time when published as started and its end time when published
        as done.

        Raises:
            ValidationError: If status or result is not recognized
        """
        self.vocabulary.validate_test(status, result)

        with self._locked_document() as document:
            test = document.get_test_case(test_case_name).get_test(test_name)
            test.status = status

            if status == TEST_STATUS_STARTED:
                test.start = format_timestamp(self.clock())
            if status == TEST_STATUS_DONE:
                test.end = format_timestamp(self.clock())

            if result is not None:
                test.result = result
            if message is not None:
                test.message = message

    def read_document(self) -> ResultDocument:
        """Read the current results document without modifying it."""
        if not self.get_file_path().exists():
            return ResultDocument()
        with self._locked_document(write=False) as document:
            return document

    @contextmanager
    def _locked_document(self, write: bool = True) -> Iterator[ResultDocument]:
        """
        Open and lock the results file and yield its parsed document.

        When the block finishes without error and write is set, the document
        replaces the whole file content. The lock is released and the file
        closed on every exit path.
        """
        file_path = self.get_file_path()

        if self._file_handle is not None:
            raise ReentrancyError(
                f'File "{file_path}" is already opened by this publisher and not closed yet'
            )

        if not os.path.isdir(self.file_dir) or not os.access(self.file_dir, os.W_OK):
            raise ConfigurationError(
                f'Directory "{self.file_dir}" does not exist or is not writable.'
                " Did you forget to configure the results directory?"
            )

        # Open or create, never truncate on open
        try:
            fd = os.open(file_path, os.O_RDWR | os.O_CREAT, 0o644)
        except OSError as e:
            raise ConfigurationError(f'Cannot open results file "{file_path}": {str(e)}') from e
        handle = os.fdopen(fd, "r+", encoding="utf-8")
        self._file_handle = handle

        try:
            with locked(handle, timeout=self.lock_timeout, name=str(file_path)):
                document = self._read(handle, file_path)
                yield document
                if write:
                    self._write(handle, file_path, document)
        finally:
            handle.close()
            self._file_handle = None

    def _read(self, handle: IO, file_path: Path) -> ResultDocument:
        try:
            text = handle.read()
        except UnicodeDecodeError as e:
            raise CorruptDocumentError(f'Results file "{file_path}" is not valid UTF-8') from e
        return parse_document(text)

    def _write(self, handle: IO, file_path: Path, document: ResultDocument) -> None:
        # Serialization errors must leave the file intact
        text = dump_document(document)
        try:
            handle.seek(0)
            handle.truncate()
            handle.write(text)
            handle.flush()
            os.fsync(handle.fileno())
        except OSError as e:
            raise StoreError(f'Cannot write results file "{file_path}": {str(e)}') from e
