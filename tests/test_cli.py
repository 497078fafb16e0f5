import importlib
import json
import time


def _write(path, data):
    with open(path, 'w') as f:
        f.write(data)


def _seed(path):
    _write(path, json.dumps({
        'strikes': {
            'sonarr-1:A': {'count': 2, 'last_strike_at': 1.0},
            'sonarr-1:B': {'count': 0},
            'radarr-1:C': {'count': 1},
        },
        'imports': {'sonarr-1:A': {'attempts': 1}},
    }))


def test_cli_list_and_clear(monkeypatch, capsys, tmp_path):
    cli = importlib.import_module('cli')
    state_path = tmp_path / 'state.json'
    monkeypatch.setenv('STATE_FILE_PATH', str(state_path))
    _seed(state_path)

    cli.cmd_list(type('N', (), {'instance': None})())
    out = json.loads(capsys.readouterr().out)
    assert 'sonarr-1:A' in out['strikes']

    cli.cmd_list(type('N', (), {'instance': 'radarr-1'})())
    out = json.loads(capsys.readouterr().out)
    assert list(out['strikes']) == ['C']

    # clear one item key
    cli.cmd_clear(type('N', (), {'instance': 'sonarr-1', 'key': 'A'})())
    assert capsys.readouterr().out.strip() == 'Cleared sonarr-1:A'
    saved = json.loads(state_path.read_text())
    assert 'sonarr-1:A' not in saved['strikes']
    assert saved['imports'] == {}

    # clear one instance
    cli.cmd_clear(type('N', (), {'instance': 'sonarr-1', 'key': None})())
    assert 'Cleared 1 record(s) for sonarr-1' in capsys.readouterr().out

    # clear all
    cli.cmd_clear(type('N', (), {'instance': None, 'key': None})())
    saved = json.loads(state_path.read_text())
    assert saved == {'strikes': {}, 'imports': {}}


def test_cli_status(monkeypatch, capsys, tmp_path):
    cli = importlib.import_module('cli')
    state_path = tmp_path / 'state.json'
    monkeypatch.setenv('STATE_FILE_PATH', str(state_path))
    monkeypatch.setenv('SCHEDULER_TICK_SECONDS', '30')
    _seed(state_path)
    cli.cmd_status(type('N', (), {})())
    out = json.loads(capsys.readouterr().out)
    assert out['strike_records'] == 3
    assert out['import_records'] == 1
    assert out['instances']['sonarr-1'] == {'strikes': 2, 'active_strikes': 1, 'import_attempts': 1}
    assert out['scheduler_tick_seconds'] == 30


def test_cli_simulate(monkeypatch, capsys, tmp_path):
    cli = importlib.import_module('cli')
    models = importlib.import_module('core.models')
    monkeypatch.setenv('STATE_FILE_PATH', str(tmp_path / 'state.json'))
    item_path = tmp_path / 'item.json'
    item = {
        'id': 10,
        'downloadId': 'X',
        'title': 'Old',
        'protocol': 'torrent',
        'size': 1000,
        'sizeleft': 1000,
        'added': models.format_timestamp(time.time() - 3 * 3600),
    }
    _write(item_path, json.dumps(item))
    cfg_path = tmp_path / 'config.yaml'
    _write(cfg_path, 'strike_system_enabled: true\nmax_strikes: 2\nstalled_threshold_mins: 60\n')

    ns = type('N', (), {'item_json': str(item_path), 'config': str(cfg_path), 'instance': 'sonarr-1'})()
    cli.cmd_simulate(ns)
    out = json.loads(capsys.readouterr().out)
    assert out['rule'] == 'stalled'
    assert out['action'] == 'warn'
    assert out['strikeCount'] == 1
