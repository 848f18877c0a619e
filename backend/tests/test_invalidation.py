import pytest

from chatapp.services import invalidation
from chatapp.utils import cache_manager


def test_policy_table():
    assert invalidation.keys_for(invalidation.CONVERSATION_CREATE) == ['conv:titles']
    assert invalidation.keys_for(invalidation.NEW_MESSAGE, 'c1') == ['conv:titles', 'conv:c1:preview']
    assert invalidation.keys_for(invalidation.TITLE_GENERATED) == ['conv:titles', 'shared:list']
    assert invalidation.keys_for(invalidation.PROJECT_CHANGE) == ['project:list', 'project:metadata']
    assert invalidation.keys_for(invalidation.SHARED_ITEM_CHANGE) == ['shared:list']
    assert set(invalidation.keys_for(invalidation.CONVERSATION_UPDATE, 'c1')) == {
        'conv:titles', 'conv:c1:preview', 'shared:list',
    }
    assert set(invalidation.keys_for(invalidation.CONVERSATION_DELETE, 'c1')) == {
        'conv:titles', 'conv:c1:preview', 'project:list', 'project:metadata', 'shared:list',
    }


def test_unknown_mutation_and_missing_conversation_id():
    with pytest.raises(ValueError):
        invalidation.keys_for('rename_everything')
    with pytest.raises(ValueError):
        invalidation.keys_for(invalidation.NEW_MESSAGE)


def test_record_mutation_deletes_keys_then_bumps_version(app):
    with app.app_context():
        cache_manager.set_cached('conv:titles', {'conversations': []}, 60)
        cache_manager.set_cached('conv:c1:preview', {'userMessage': None}, 60)
        cache_manager.set_cached('project:list', [], 60)

        before = cache_manager.get_cache_version()
        version = invalidation.record_mutation(invalidation.NEW_MESSAGE, 'c1')

        assert version == before + 1
        assert cache_manager.get_cache_version() == version
        assert cache_manager.get_cached('conv:titles') is None
        assert cache_manager.get_cached('conv:c1:preview') is None
        assert cache_manager.get_cached('project:list') == []


def test_version_is_strictly_increasing(app):
    with app.app_context():
        versions = [invalidation.record_mutation(invalidation.PROJECT_CHANGE) for _ in range(5)]
    assert versions == sorted(set(versions))


def test_without_cache_mutations_are_noops(uncached_app):
    with uncached_app.app_context():
        assert invalidation.record_mutation(invalidation.CONVERSATION_CREATE) == 0
        assert cache_manager.get_cache_version() == 0
