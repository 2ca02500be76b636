"""
Property-based tests for the result publisher.

These tests verify that publishing into the shared results file merges
updates correctly, validates statuses, never loses data written by other
publishers and always releases the file lock.
"""

import json
import os
import subprocess
import sys
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from hypothesis import given, strategies as st, settings

from file_lock import acquire_lock, release_lock
from harness_config import HarnessConfig
from harness_errors import (
    ConfigurationError,
    CorruptDocumentError,
    LockTimeoutError,
    ReentrancyError,
    ValidationError
)
from result_publisher import ResultPublisher, format_timestamp
from status_vocabulary import StatusVocabulary


ROOT = Path(__file__).resolve().parent.parent

T0 = datetime(2024, 5, 1, 10, 0, 0, tzinfo=timezone.utc)


def fixed_clock(*times):
    """Return a clock yielding the given times in order."""
    return iter(times).__next__


def read_json(publisher):
    return json.loads(publisher.get_file_path().read_text())


# Hypothesis strategies for generating test data

names = st.text(alphabet='abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789_', min_size=1, max_size=12)


@st.composite
def publications(draw):
    """Generate a list of (test case, test, status, result) publications."""
    return draw(st.lists(
        st.tuples(
            names,
            names,
            st.sampled_from(['started', 'done']),
            st.none() | st.sampled_from(['passed', 'failed', 'broken', 'skipped', 'incomplete'])
        ),
        min_size=1,
        max_size=10
    ))


# Property: every published test ends up in the file with its last status
@settings(max_examples=25, deadline=None)
@given(publication_list=publications())
def test_property_published_tests_are_persisted(publication_list):
    """Test that every published test ends up in the file with its last status."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir)

        expected = {}
        for case_name, test_name, status, result in publication_list:
            publisher.publish_test_status(case_name, test_name, status, result)
            previous = expected.get((case_name, test_name), (None, None))
            expected[(case_name, test_name)] = (status, result if result is not None else previous[1])

        document = publisher.read_document()

        for (case_name, test_name), (status, result) in expected.items():
            test = document.find_test_case(case_name).find_test(test_name)
            assert test is not None
            assert test.status == status
            assert test.result == result
        assert sum(len(test_case.tests) for test_case in document.testcases) == len(expected)


# Property: publishing the same test case again never duplicates it
@settings(max_examples=25, deadline=None)
@given(case_name=names, repeats=st.integers(min_value=1, max_value=5))
def test_property_test_case_publish_is_idempotent(case_name, repeats):
    """Test that publishing the same test case again never duplicates it."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir)

        for _ in range(repeats):
            publisher.publish_test_case_status(case_name, 'queued')

        data = read_json(publisher)
        assert [test_case['name'] for test_case in data['testcases']] == [case_name]


def test_started_then_done_stamps_start_and_end():
    """Test that started stamps the start time and done stamps the end time."""
    with tempfile.TemporaryDirectory() as temp_dir:
        t1 = T0 + timedelta(minutes=3)
        publisher = ResultPublisher(file_dir=temp_dir, clock=fixed_clock(T0, t1))

        publisher.publish_test_status('LoginCase', 'testValidLogin', 'started')
        after_start = publisher.read_document().find_test_case('LoginCase').find_test('testValidLogin')

        assert after_start.status == 'started'
        assert after_start.start == '2024-05-01T10:00:00+00:00'
        assert after_start.end is None
        assert after_start.result is None

        publisher.publish_test_status('LoginCase', 'testValidLogin', 'done', 'passed')
        document = publisher.read_document()
        test = document.find_test_case('LoginCase').find_test('testValidLogin')

        assert len(document.testcases) == 1
        assert len(document.testcases[0].tests) == 1
        assert test.status == 'done'
        assert test.result == 'passed'
        assert test.start == '2024-05-01T10:00:00+00:00'
        assert test.end == '2024-05-01T10:03:00+00:00'


def test_status_only_keeps_previous_result():
    """Test that publishing only a status keeps the previous result."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir)

        publisher.publish_test_case_status('LoginCase', 'done', 'failed')
        publisher.publish_test_case_status('LoginCase', 'prepared')

        test_case = publisher.read_document().find_test_case('LoginCase')
        assert test_case.status == 'prepared'
        assert test_case.result == 'failed'

        publisher.publish_test_status('LoginCase', 'testOpen', 'done', 'broken')
        publisher.publish_test_status('LoginCase', 'testOpen', 'started')

        test = publisher.read_document().find_test_case('LoginCase').find_test('testOpen')
        assert test.status == 'started'
        assert test.result == 'broken'


def test_test_case_times_are_written_as_iso8601():
    """Test that test case start and end times are written as ISO-8601."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir)
        end = T0 + timedelta(seconds=90, microseconds=500)

        publisher.publish_test_case_status('LoginCase', 'started', start_time=T0)
        publisher.publish_test_case_status('LoginCase', 'done', 'passed', end_time=end)

        test_case = read_json(publisher)['testcases'][0]
        assert test_case == {
            'name': 'LoginCase',
            'status': 'done',
            'result': 'passed',
            'start': '2024-05-01T10:00:00+00:00',
            'end': '2024-05-01T10:01:30+00:00',
        }
        assert format_timestamp(end) == test_case['end']


def test_test_message_is_persisted():
    """Test that a test message is stored and kept on later updates."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir)

        publisher.publish_test_status('LoginCase', 'testOpen', 'done', 'failed', message='Timeout')
        publisher.publish_test_status('LoginCase', 'testOpen', 'done')

        test = read_json(publisher)['testcases'][0]['tests'][0]
        assert test['message'] == 'Timeout'


def test_test_names_are_scoped_to_their_test_case():
    """Test that equal test names in different test cases do not collide."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir)

        publisher.publish_test_status('LoginCase', 'testOpen', 'done', 'passed')
        publisher.publish_test_status('CheckoutCase', 'testOpen', 'done', 'failed')

        data = read_json(publisher)
        assert [(c['name'], c['tests'][0]['result']) for c in data['testcases']] == [
            ('LoginCase', 'passed'),
            ('CheckoutCase', 'failed'),
        ]


@pytest.mark.parametrize('status,result', [
    ('running', None),
    ('done', 'exploded'),
    ('', None),
])
def test_invalid_test_status_or_result_rejected(status, result):
    """Test that unknown test statuses and results are rejected."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir)

        with pytest.raises(ValidationError):
            publisher.publish_test_status('LoginCase', 'testOpen', status, result)

        assert not publisher.get_file_path().exists()


@pytest.mark.parametrize('status,result', [
    ('running', None),
    ('done', 'broken'),
])
def test_invalid_test_case_status_or_result_rejected(status, result):
    """Test that unknown test case statuses and results are rejected."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir)

        with pytest.raises(ValidationError):
            publisher.publish_test_case_status('LoginCase', status, result)

        assert not publisher.get_file_path().exists()


def test_custom_vocabulary_is_used_for_validation():
    """Test that a custom vocabulary replaces the default one."""
    with tempfile.TemporaryDirectory() as temp_dir:
        vocabulary = StatusVocabulary(test_case_statuses=['waiting', 'done'])
        publisher = ResultPublisher(file_dir=temp_dir, vocabulary=vocabulary)

        publisher.publish_test_case_status('LoginCase', 'waiting')
        with pytest.raises(ValidationError):
            publisher.publish_test_case_status('LoginCase', 'queued')


def test_vocabulary_must_keep_started_and_done():
    """Test that a vocabulary without started and done is rejected."""
    with pytest.raises(ValidationError):
        StatusVocabulary(test_statuses=['started', 'finished'])


def test_missing_directory_is_configuration_error():
    """Test that publishing without a results directory fails."""
    publisher = ResultPublisher()

    with pytest.raises(ConfigurationError):
        publisher.get_file_path()
    with pytest.raises(ConfigurationError):
        publisher.publish_test_status('LoginCase', 'testOpen', 'started')


def test_nonexistent_directory_is_configuration_error():
    """Test that a nonexistent results directory fails."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=str(Path(temp_dir) / 'missing'))

        with pytest.raises(ConfigurationError):
            publisher.publish_test_case_status('LoginCase', 'queued')


def test_set_file_dir_and_name():
    """Test that the results location can be set after construction."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher()
        publisher.set_file_dir(temp_dir)
        publisher.set_file_name('isolated.json')

        publisher.publish_test_case_status('LoginCase', 'queued')

        assert publisher.get_file_path() == Path(temp_dir) / 'isolated.json'
        assert (Path(temp_dir) / 'isolated.json').exists()


def test_from_config():
    """Test that a publisher is built from a harness configuration."""
    config = HarnessConfig(results_dir='/tmp/results', results_file='run.json', lock_timeout=None)

    publisher = ResultPublisher.from_config(config)

    assert publisher.get_file_path() == Path('/tmp/results/run.json')
    assert publisher.lock_timeout is None
    assert publisher.vocabulary == config.vocabulary


def test_clean_is_idempotent():
    """Test that cleaning removes the results file and can be repeated."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir)
        publisher.publish_test_case_status('LoginCase', 'queued')
        assert publisher.get_file_path().exists()

        publisher.clean()
        publisher.clean()

        assert not publisher.get_file_path().exists()
        assert publisher.read_document().testcases == []


def test_empty_existing_file_is_new_document():
    """Test that an existing empty file is treated as a new document."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir)
        publisher.get_file_path().write_text('')

        publisher.publish_test_case_status('LoginCase', 'queued')

        assert read_json(publisher)['testcases'] == [{'name': 'LoginCase', 'status': 'queued'}]


@pytest.mark.parametrize('content', [
    '{"version": "1.0", "testcases": [{"name": "A"',
    '<?xml version="1.0"?><testcases />',
    '{"version": "1.0", "testcases": "nope"}',
])
def test_corrupt_document_is_never_overwritten(content):
    """Test that a corrupt results file is left untouched and unlocked."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir)
        publisher.get_file_path().write_text(content)

        with pytest.raises(CorruptDocumentError):
            publisher.publish_test_status('LoginCase', 'testOpen', 'started')

        assert publisher.get_file_path().read_text() == content
        # The lock was released despite the failure
        with open(publisher.get_file_path(), 'r') as handle:
            acquire_lock(handle, timeout=0)
            release_lock(handle)


def test_invalid_utf8_is_corrupt():
    """Test that a results file which is not UTF-8 is corrupt."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir)
        publisher.get_file_path().write_bytes(b'\xff\xfe\x00garbage')

        with pytest.raises(CorruptDocumentError):
            publisher.read_document()


def test_nested_transaction_is_reentrancy_error():
    """Test that a publisher refuses a second transaction while one is open."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir)

        with publisher._locked_document():
            with pytest.raises(ReentrancyError):
                publisher.publish_test_status('LoginCase', 'testOpen', 'started')

        # The instance is usable again once the transaction closed
        publisher.publish_test_status('LoginCase', 'testOpen', 'started')
        assert publisher.read_document().find_test_case('LoginCase') is not None


def test_failed_upsert_leaves_file_untouched_and_unlocked():
    """Test that a failed upsert writes nothing and releases the lock."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir)
        publisher.publish_test_case_status('LoginCase', 'queued')
        before = publisher.get_file_path().read_text()

        with pytest.raises(RuntimeError):
            with publisher._locked_document() as document:
                document.get_test_case('Other').status = 'done'
                raise RuntimeError('worker crashed')

        assert publisher.get_file_path().read_text() == before
        assert publisher._file_handle is None
        publisher.publish_test_case_status('LoginCase', 'done')


def test_lock_timeout_when_lock_is_held():
    """Test that publishing times out while another holder keeps the lock."""
    with tempfile.TemporaryDirectory() as temp_dir:
        publisher = ResultPublisher(file_dir=temp_dir, lock_timeout=0.2)
        publisher.publish_test_case_status('LoginCase', 'queued')
        before = publisher.get_file_path().read_text()

        # flock locks belong to the open file description, so a second open
        # in the same process competes like another process would
        with open(publisher.get_file_path(), 'r') as holder:
            acquire_lock(holder)
            try:
                with pytest.raises(LockTimeoutError):
                    publisher.publish_test_case_status('LoginCase', 'done')
            finally:
                release_lock(holder)

        assert publisher.get_file_path().read_text() == before
        publisher.publish_test_case_status('LoginCase', 'done')
        assert read_json(publisher)['testcases'][0]['status'] == 'done'


WORKER_SCRIPT = """
import sys
from result_publisher import ResultPublisher

results_dir, worker, count = sys.argv[1], sys.argv[2], int(sys.argv[3])
publisher = ResultPublisher(file_dir=results_dir, lock_timeout=60)
for i in range(count):
    publisher.publish_test_status("SharedCase", "test_%s_%d" % (worker, i), "started")
    publisher.publish_test_case_status("Case" + worker, "started")
    publisher.publish_test_status("Case" + worker, "test_%d" % i, "done", "passed")
"""


def test_concurrent_publishers_lose_no_updates():
    """Test that concurrent publisher processes lose no updates."""
    workers = 4
    per_worker = 15

    with tempfile.TemporaryDirectory() as temp_dir:
        env = os.environ.copy()
        env['PYTHONPATH'] = os.pathsep.join(filter(None, [str(ROOT), env.get('PYTHONPATH')]))

        processes = [
            subprocess.Popen(
                [sys.executable, '-c', WORKER_SCRIPT, temp_dir, str(worker), str(per_worker)],
                env=env,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True
            )
            for worker in range(workers)
        ]
        for process in processes:
            _, stderr = process.communicate(timeout=120)
            assert process.returncode == 0, stderr

        document = ResultPublisher(file_dir=temp_dir).read_document()

        shared = document.find_test_case('SharedCase')
        assert {test.name for test in shared.tests} == {
            f'test_{worker}_{i}' for worker in range(workers) for i in range(per_worker)
        }
        for worker in range(workers):
            test_case = document.find_test_case(f'Case{worker}')
            assert test_case.status == 'started'
            assert [test.name for test in test_case.tests] == [f'test_{i}' for i in range(per_worker)]
            assert all(test.result == 'passed' for test in test_case.tests)
        assert len(document.testcases) == workers + 1
