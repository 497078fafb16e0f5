import importlib
import json


def test_load_missing_file_returns_empty(tmp_path):
    state = importlib.import_module('storage.state')
    assert state.load_state(str(tmp_path / 'nope.json')) == {'strikes': {}, 'imports': {}}


def test_load_invalid_json_returns_empty(tmp_path):
    state = importlib.import_module('storage.state')
    p = tmp_path / 'state.json'
    p.write_text('{broken')
    assert state.load_state(str(p)) == {'strikes': {}, 'imports': {}}


def test_save_is_atomic_and_creates_dirs(tmp_path):
    state = importlib.import_module('storage.state')
    models = importlib.import_module('core.models')
    path = tmp_path / 'nested' / 'state.json'
    store = state.StateStore(str(path))
    store.put_strike('sonarr-1', 'ABC', models.StrikeRecord(count=2, last_strike_at=1.0))
    store.put_attempt('sonarr-1', 'ABC', models.ImportAttemptRecord(attempts=1, last_attempt_at=2.0))
    store.save()

    assert not (tmp_path / 'nested' / 'state.json.tmp').exists()
    data = json.loads(path.read_text())
    assert data['strikes']['sonarr-1:ABC']['count'] == 2
    assert data['imports']['sonarr-1:ABC']['attempts'] == 1

    reloaded = state.StateStore(str(path))
    assert reloaded.get_strike('sonarr-1', 'ABC').count == 2
    assert reloaded.get_attempt('sonarr-1', 'ABC').last_attempt_at == 2.0


def test_clear_instance_only_touches_that_instance():
    state = importlib.import_module('storage.state')
    models = importlib.import_module('core.models')
    store = state.StateStore(None)
    store.put_strike('sonarr-1', 'A', models.StrikeRecord(count=1))
    store.put_attempt('sonarr-1', 'A', models.ImportAttemptRecord(attempts=1))
    store.put_strike('radarr-1', 'B', models.StrikeRecord(count=1))
    assert store.clear_instance('sonarr-1') == 2
    assert store.strikes_for('sonarr-1') == {}
    assert 'B' in store.strikes_for('radarr-1')


def test_legacy_integer_strike_entries_are_read():
    state = importlib.import_module('storage.state')
    store = state.StateStore(None)
    store.data['strikes']['sonarr-1:OLD'] = 3
    assert store.get_strike('sonarr-1', 'OLD').count == 3


def test_state_key_round_trip():
    state = importlib.import_module('storage.state')
    key = state.make_state_key('radarr-4k', 'DL:1')
    assert key == 'radarr-4k:DL:1'
    assert state.split_state_key(key) == ('radarr-4k', 'DL:1')
