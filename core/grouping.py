from __future__ import annotations

from typing import Dict, Iterable, List, Mapping, Sequence, Union

from core.constants import ACTION_SEVERITY, TITLE_SEPARATORS
from core.models import Decision, ItemGroup

PreviewEntry = Union[Decision, ItemGroup]


def worst_action(actions: Iterable[str], weights: Mapping[str, int] = ACTION_SEVERITY) -> str:
    """Highest-weighted action; the earliest one wins a tie."""
    best = None
    best_w = None
    for action in actions:
        w = weights.get(action, 0)
        if best_w is None or w > best_w:
            best, best_w = action, w
    if best is None:
        raise ValueError('worst_action needs at least one action')
    return best


def dominant_rule(rules: Iterable[str]) -> str:
    """Most frequent rule tag; ties go to the tag seen first."""
    counts: Dict[str, int] = {}
    for rule in rules:
        counts[rule] = counts.get(rule, 0) + 1
    if not counts:
        raise ValueError('dominant_rule needs at least one rule')
    # dicts keep insertion order, and max() keeps the first maximal key
    return max(counts, key=lambda r: counts[r])


def common_title_prefix(titles: Sequence[str], separators: Sequence[str] = TITLE_SEPARATORS) -> str:
    if not titles:
        return ''
    if len(titles) == 1:
        return titles[0]
    prefix = titles[0]
    for title in titles[1:]:
        i = 0
        limit = min(len(prefix), len(title))
        while i < limit and prefix[i] == title[i]:
            i += 1
        prefix = prefix[:i]
        if not prefix:
            return titles[0]
    for sep in separators:
        idx = prefix.rfind(sep)
        if idx > 0:
            prefix = prefix[:idx]
            break
    return prefix.strip() or titles[0]


def group_decisions(
    entries: Sequence[PreviewEntry],
    weights: Mapping[str, int] = ACTION_SEVERITY,
) -> List[PreviewEntry]:
    """Merge decisions sharing a non-empty download id into ItemGroups.

    Groups are placed where their first member appeared. Existing groups and
    ungrouped decisions pass through untouched, so regrouping is a no-op.
    """
    buckets: Dict[str, List[Decision]] = {}
    for entry in entries:
        if isinstance(entry, Decision) and entry.download_id:
            buckets.setdefault(entry.download_id, []).append(entry)

    out: List[PreviewEntry] = []
    emitted = set()
    for entry in entries:
        if not isinstance(entry, Decision) or not entry.download_id:
            out.append(entry)
            continue
        members = buckets[entry.download_id]
        if len(members) == 1:
            out.append(entry)
            continue
        if entry.download_id in emitted:
            continue
        emitted.add(entry.download_id)
        out.append(ItemGroup(
            download_id=entry.download_id,
            items=tuple(members),
            worst_action=worst_action((d.action for d in members), weights),
            dominant_rule=dominant_rule(d.rule for d in members),
            label=common_title_prefix([d.title for d in members]),
        ))
    return out
