import io
import sys

import orjson as json
import pytest

from phonepi import log
from phonepi.exception import RelayBaseException


@pytest.fixture
def stream():
    yield io.TextIOWrapper(io.BytesIO())
    log.configure()


def read_events(stream) -> list[dict]:
    return [json.loads(line) for line in stream.buffer.getvalue().splitlines()]


def test_json_events(stream):
    log.configure(fmt='json', level='info', stream=stream)
    logger = log.get_logger().bind(component='relay')
    logger.sync_bl.debug('Frame received')
    logger.sync_bl.info('Session attached', epoch=1)
    events = read_events(stream)
    assert len(events) == 1
    event = events[0]
    assert event['event'] == 'Session attached'
    assert event['level'] == 'info'
    assert event['component'] == 'relay'
    assert event['epoch'] == 1
    assert 'timestamp' in event


def test_exception_context(stream):
    log.configure(fmt='json', level='debug', stream=stream)
    error = RelayBaseException('Phone disconnected', epoch=3, reason='heartbeat-timeout')
    log.get_logger().sync_bl.error('Call failed', exc_info=error, epoch=4)
    (event,) = read_events(stream)
    assert event['reason'] == 'heartbeat-timeout'
    assert event['epoch'] == 4
    assert 'Phone disconnected' in event['exception']


def test_null_logger(stream):
    log.configure(fmt='json', level='debug', stream=stream)
    log.get_null_logger().sync_bl.critical('Dropped')
    assert read_events(stream) == []


def test_default_stream(stream, monkeypatch):
    monkeypatch.setattr(sys, 'stdout', io.TextIOWrapper(io.BytesIO()))
    monkeypatch.setattr(sys, 'stderr', stream)
    log.configure()
    log.get_logger().sync_bl.warn('No pending request found', request_id='req-9')
    (event,) = read_events(stream)
    assert event['request_id'] == 'req-9'
    assert sys.stdout.buffer.getvalue() == b''


def test_pretty_events():
    stream = io.StringIO()
    log.configure(fmt='pretty', level='debug', stream=stream)
    log.get_logger().sync_bl.info('Session attached', epoch=1)
    assert 'Session attached' in stream.getvalue()
    log.configure()
