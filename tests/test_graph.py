"""Tests for the interaction graph, snapshots and user records."""

from datetime import timedelta

import numpy as np
import pandas as pd
import pytest

from recsys.data import InteractionEdge, InteractionGraph, Item, User

from conftest import NOW, ITEM_TAGS, INTERACTIONS


def test_node_arena_layout(snapshot):
    assert snapshot.num_users == 6
    assert snapshot.num_items == len(ITEM_TAGS)
    assert snapshot.user_node('u1') == 0
    assert snapshot.item_node('A') == snapshot.num_users
    assert snapshot.is_item_node(snapshot.item_node('H'))
    assert snapshot.node_label(snapshot.item_node('C')) == 'C'
    assert snapshot.node_label(snapshot.user_node('u4')) == 'u4'
    assert snapshot.user_node('ghost') is None
    assert snapshot.interactions.nnz == len(INTERACTIONS)


def test_adjacency_is_symmetric(snapshot):
    diff = snapshot.adjacency - snapshot.adjacency.T
    assert abs(diff).max() == 0


def test_weights_decay_with_age(snapshot):
    u, a = snapshot.user_pos['u1'], snapshot.item_pos['A']
    assert snapshot.interactions[u, a] == pytest.approx(1.0)
    # u5 rated H 3/5 six days before the snapshot, half-life 30 days
    u5, h = snapshot.user_pos['u5'], snapshot.item_pos['H']
    assert snapshot.interactions[u5, h] == pytest.approx(0.6 * 0.5 ** (6 / 30))


def test_edge_weight_from_signals():
    assert InteractionEdge.from_signal('u', 'i', NOW, rating=4).weight == pytest.approx(0.8)
    assert InteractionEdge.from_signal('u', 'i', NOW, engagement=0.3).weight == pytest.approx(0.3)
    assert InteractionEdge.from_signal('u', 'i', NOW, rating=5, engagement=0.0).weight == pytest.approx(0.5)
    with pytest.raises(ValueError):
        InteractionEdge.from_signal('u', 'i', NOW)


def test_user_items_and_popularity(snapshot):
    seen = {snapshot.item_ids[p] for p in snapshot.user_items('u2')}
    assert seen == {'A', 'B', 'C'}
    assert len(snapshot.user_items('ghost')) == 0

    top = snapshot.popular_items(3)
    assert len(top) == 3
    scores = [score for _, score in top]
    assert scores == sorted(scores, reverse=True)
    excluded = snapshot.popular_items(10, exclude={snapshot.item_pos['A']})
    assert snapshot.item_pos['A'] not in {pos for pos, _ in excluded}


def test_find_path(snapshot):
    u1, b = snapshot.user_node('u1'), snapshot.item_node('B')
    path = snapshot.find_path(u1, b)
    assert path[0] == u1 and path[-1] == b
    assert len(path) == 4
    assert snapshot.find_path(u1, snapshot.item_node('H'), max_hops=3) is None
    assert snapshot.find_path(u1, u1) == [u1]


def test_unknown_item_is_rejected(graph):
    with pytest.raises(KeyError):
        graph.record_interaction('u1', 'missing', timestamp=NOW, rating=3)


def test_snapshot_cache_and_invalidation(graph):
    first = graph.snapshot()
    assert graph.snapshot() is first
    graph.record_interaction('u1', 'H', timestamp=NOW, rating=2)
    second = graph.snapshot()
    assert second is not first
    assert second.version > first.version
    # the old snapshot is untouched
    assert 'H' not in {first.item_ids[p] for p in first.user_items('u1')}
    assert 'H' in {second.item_ids[p] for p in second.user_items('u1')}


def test_history_window_is_bounded():
    graph = InteractionGraph(history_window=3)
    for i in range(5):
        graph.add_item(Item(f'i{i}'))
        graph.record_interaction('u', f'i{i}', timestamp=NOW + timedelta(minutes=i), rating=4)
    assert graph.get_user('u').recent_items() == ['i2', 'i3', 'i4']
    # edges themselves are never dropped
    assert len(graph.edges()) == 5


def test_user_history_is_resized_to_window():
    user = User('u', window=2, history=[])
    for i in range(4):
        user.record(f'i{i}', 3.0, NOW)
    assert len(user.history) == 2


def test_from_frames():
    items = pd.DataFrame({
        'item_id': ['x', 'y'],
        'tags': ['rock|indie', None],
        'source_reliability': [0.5, 0.9],
        'title': ['X', 'Y'],
    })
    interactions = pd.DataFrame({
        'user_id': ['a', 'a', 'b'],
        'item_id': ['x', 'y', 'x'],
        'timestamp': pd.to_datetime(['2026-09-30', '2026-09-29', '2026-09-28']),
        'rating': [5.0, np.nan, 3.0],
        'engagement': [np.nan, 0.4, np.nan],
    })
    graph = InteractionGraph.from_frames(items, interactions)

    assert graph.get_item('x').tags == frozenset({'rock', 'indie'})
    assert graph.get_item('y').tags == frozenset()
    assert graph.get_item('x').trust.source_reliability == pytest.approx(0.5)
    assert graph.get_item('x').title == 'X'

    snap = graph.snapshot(as_of=NOW)
    assert snap.user_ids == ['a', 'b']
    assert snap.interactions.nnz == 3
    # history is ordered by timestamp
    assert graph.get_user('a').recent_items() == ['y', 'x']


def test_user_history_is_a_copy():
    graph = InteractionGraph(history_window=5)
    for item_id in ('x', 'y'):
        graph.add_item(Item(item_id))
    graph.record_interaction('u', 'x', timestamp=NOW, rating=4)

    window = graph.user_history('u')
    graph.record_interaction('u', 'y', timestamp=NOW + timedelta(minutes=1), rating=5)

    assert isinstance(window, tuple)
    assert [entry.item_id for entry in window] == ['x']
    assert [entry.item_id for entry in graph.user_history('u')] == ['x', 'y']
    assert graph.user_history('nobody') == ()
