import importlib
import json


class FakeLogger:
    def __init__(self):
        self.lines = []

    def info(self, msg):
        self.lines.append(str(msg))


def _decision(action='warn', **kw):
    models = importlib.import_module('core.models')
    base = dict(
        item_id=1,
        rule='stalled',
        action=action,
        reason='Stalled (strike 1/3)',
        title='T',
        strike_count=1,
        max_strikes=3,
    )
    base.update(kw)
    return models.Decision(**base)


def _bus(structured=True, debug=False):
    events = importlib.import_module('core.events')
    logger = FakeLogger()
    return events.EventBus(structured_logs=structured, debug_logging=debug, logger=logger), logger


def test_structured_emit_logs_json_line():
    bus, logger = _bus()
    bus.emit('decision', instance_id='sonarr-1', decision=_decision())
    payload = json.loads(logger.lines[0])
    assert payload['event'] == 'decision'
    assert payload['instance'] == 'sonarr-1'
    assert payload['strikes'] == '1/3'
    assert payload['rule'] == 'stalled'


def test_plain_emit_lets_explicit_fields_win():
    bus, logger = _bus(structured=False)
    bus.emit('remove', instance_id='sonarr-1', decision=_decision(action='remove'), reason='override')
    line = logger.lines[0]
    assert line.startswith('remove [sonarr-1] ')
    assert "reason='override'" in line
    assert 'instance=' not in line


def test_skip_decisions_need_debug_logging():
    quiet, quiet_logger = _bus()
    quiet.emit('decision', instance_id='sonarr-1', decision=_decision(action='skip', rule='healthy', strike_count=None))
    assert quiet_logger.lines == []

    loud, loud_logger = _bus(debug=True)
    loud.emit('decision', instance_id='sonarr-1', decision=_decision(action='whitelist', rule='whitelist', strike_count=None))
    assert json.loads(loud_logger.lines[0])['action'] == 'whitelist'


def test_run_summary_without_decision():
    bus, logger = _bus()
    bus.emit('run_summary', instance_id='radarr-1', cleaned=2, status='completed')
    assert json.loads(logger.lines[0]) == {'event': 'run_summary', 'cleaned': 2, 'status': 'completed', 'instance': 'radarr-1'}
