from unittest import mock

from chatapp.utils import cache_manager
from chatapp.utils.cache_manager import FlaskCacheBackend, NullCacheBackend


def test_read_through_populates_and_serves_from_cache(app):
    loader = mock.Mock(return_value={'projects': ['p1']})
    with app.app_context():
        first = cache_manager.read_through('project:list', 60, loader)
        second = cache_manager.read_through('project:list', 60, loader)
    assert first == second == {'projects': ['p1']}
    assert loader.call_count == 1


def test_invalidate_keys_forces_reload(app):
    loader = mock.Mock(side_effect=[['old'], ['new']])
    with app.app_context():
        assert cache_manager.read_through('shared:list', 60, loader) == ['old']
        cache_manager.invalidate_keys(['shared:list', None])
        assert cache_manager.read_through('shared:list', 60, loader) == ['new']


def test_null_backend_fails_open(uncached_app):
    loader = mock.Mock(return_value=['fresh'])
    with uncached_app.app_context():
        assert isinstance(cache_manager.get_backend(), NullCacheBackend)
        assert cache_manager.read_through('conv:titles', 60, loader) == ['fresh']
        assert cache_manager.read_through('conv:titles', 60, loader) == ['fresh']
        assert cache_manager.increment_cache_version() == 0
    assert loader.call_count == 2


def test_no_app_context_means_no_cache():
    assert isinstance(cache_manager.get_backend(), NullCacheBackend)
    assert cache_manager.get_cache_version() == 0


def test_broken_backend_behaves_like_a_miss():
    broken = mock.Mock()
    broken.get.side_effect = ConnectionError('redis down')
    broken.set.side_effect = ConnectionError('redis down')
    broken.delete_many.side_effect = ConnectionError('redis down')
    broken.cache.inc.side_effect = ConnectionError('redis down')

    backend = FlaskCacheBackend(broken)
    assert backend.get('conv:titles') is None
    assert backend.set('conv:titles', [], 60) is False
    assert backend.delete('conv:titles') == 0
    assert backend.incr('cache:version') == 0


def test_cache_version_increments_atomically_per_call(app):
    with app.app_context():
        assert cache_manager.get_cache_version() == 0
        assert cache_manager.increment_cache_version() == 1
        assert cache_manager.increment_cache_version() == 2
        assert cache_manager.get_cache_version() == 2


def test_cache_stats_track_hits_and_misses(app):
    cache_manager.CacheStats.reset()
    with app.app_context():
        cache_manager.read_through('project:metadata', 60, lambda: {'projects': []})
        cache_manager.read_through('project:metadata', 60, lambda: {'projects': []})
        stats = cache_manager.CacheStats.get_stats()
    assert stats['hits'] == 1
    assert stats['misses'] == 1
    assert stats['hit_ratio'] == 0.5
    assert stats['enabled'] is True
