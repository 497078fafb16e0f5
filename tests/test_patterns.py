import importlib


def test_matches_is_case_insensitive_substring():
    patterns = importlib.import_module('core.patterns')
    assert patterns.matches('Download STALLED: no connections', ['stalled'])
    assert patterns.matches('stalled', ['STALLED'])
    assert not patterns.matches('downloading', ['stalled'])


def test_empty_pattern_set_matches_nothing():
    patterns = importlib.import_module('core.patterns')
    assert not patterns.matches('anything at all', [])
    assert not patterns.matches('anything at all', ['', '   '])


def test_patterns_are_literal_not_regex():
    patterns = importlib.import_module('core.patterns')
    assert not patterns.matches('abc', ['a.c'])
    assert patterns.matches('file (a.c) broken', ['a.c'])
    assert not patterns.matches('aaaa', ['(a+)+$'])


def test_first_match_returns_original_pattern_in_order():
    patterns = importlib.import_module('core.patterns')
    hit = patterns.first_match('Sample only, no video files', ['No Video Files', 'sample'])
    assert hit == 'No Video Files'
    assert patterns.first_match_any(['ok', 'Not an upgrade'], ('not an upgrade',)) == 'not an upgrade'
    assert patterns.first_match_any([], ('x',)) is None
