import importlib

import pytest


def _d(item_id, dlid, action='remove', rule='stalled', title=None):
    models = importlib.import_module('core.models')
    return models.Decision(
        item_id=item_id,
        rule=rule,
        action=action,
        reason='r',
        title=title or f'Item {item_id}',
        download_id=dlid,
    )


@pytest.mark.parametrize('titles,expected', [
    (['Show.Name.S01E01', 'Show.Name.S01E02'], 'Show.Name'),
    (['Show Name - S01E01 - Pilot', 'Show Name - S01E02 - Next'], 'Show Name'),
    (['Movie Title [1080p]', 'Movie Title [2160p]'], 'Movie Title'),
    (['Alpha', 'Beta'], 'Alpha'),
    (['Only One'], 'Only One'),
])
def test_common_title_prefix(titles, expected):
    grouping = importlib.import_module('core.grouping')
    assert grouping.common_title_prefix(titles) == expected


def test_worst_action_uses_weights_and_first_wins_ties():
    grouping = importlib.import_module('core.grouping')
    assert grouping.worst_action(['skip', 'warn', 'whitelist']) == 'warn'
    assert grouping.worst_action(['import', 'remove']) == 'import'
    assert grouping.worst_action(['remove', 'import']) == 'remove'
    with pytest.raises(ValueError):
        grouping.worst_action([])


def test_dominant_rule_ties_go_to_first_seen():
    grouping = importlib.import_module('core.grouping')
    assert grouping.dominant_rule(['slow', 'stalled', 'stalled']) == 'stalled'
    assert grouping.dominant_rule(['slow', 'stalled']) == 'slow'


def test_group_decisions_places_group_at_first_member():
    grouping = importlib.import_module('core.grouping')
    models = importlib.import_module('core.models')
    entries = [
        _d(1, 'PACK', action='warn', title='Show.Name.S01E01'),
        _d(2, 'OTHER'),
        _d(3, 'PACK', action='remove', rule='failed', title='Show.Name.S01E02'),
        _d(4, ''),
    ]
    out = grouping.group_decisions(entries)
    assert len(out) == 3
    group = out[0]
    assert isinstance(group, models.ItemGroup)
    assert group.worst_action == 'remove'
    assert group.dominant_rule == 'stalled'
    assert group.label == 'Show.Name'
    assert [d.item_id for d in group.items] == [1, 3]
    assert out[1].item_id == 2
    assert out[2].item_id == 4


def test_group_decisions_is_idempotent():
    grouping = importlib.import_module('core.grouping')
    entries = [_d(1, 'A'), _d(2, 'A'), _d(3, 'B')]
    once = grouping.group_decisions(entries)
    assert grouping.group_decisions(once) == once
