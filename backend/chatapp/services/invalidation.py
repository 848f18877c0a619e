"""
缓存失效策略 (write-through-invalidate)。

每种变更类型对应一组固定的缓存键；变更落库后先删除这些键，再将全局缓存版本号加一。
顺序不可颠倒：先自增版本号会让轮询客户端在失效完成前回源，并把旧数据重新写回缓存。

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
import logging

from chatapp.utils.cache_manager import (
    conversation_titles_key,
    increment_cache_version,
    invalidate_keys,
    message_preview_key,
    project_list_key,
    project_metadata_key,
    shared_items_key,
)

logger = logging.getLogger(__name__)

CONVERSATION_CREATE = 'conversation_create'
CONVERSATION_UPDATE = 'conversation_update'
CONVERSATION_DELETE = 'conversation_delete'
NEW_MESSAGE = 'new_message'
TITLE_GENERATED = 'title_generated'
PROJECT_CHANGE = 'project_change'
SHARED_ITEM_CHANGE = 'shared_item_change'


def _titles(conversation_id=None):
    return [conversation_titles_key()]


def _on_conversation_update(conversation_id):
    return [
        conversation_titles_key(),
        message_preview_key(conversation_id),
        shared_items_key(),
    ]


def _on_conversation_delete(conversation_id):
    return [
        conversation_titles_key(),
        message_preview_key(conversation_id),
        project_list_key(),
        project_metadata_key(),
        shared_items_key(),
    ]


def _on_new_message(conversation_id):
    return [conversation_titles_key(), message_preview_key(conversation_id)]


def _on_title_generated(conversation_id=None):
    return [conversation_titles_key(), shared_items_key()]


def _on_project_change(conversation_id=None):
    return [project_list_key(), project_metadata_key()]


def _on_shared_item_change(conversation_id=None):
    return [shared_items_key()]


INVALIDATION_POLICY = {
    CONVERSATION_CREATE: _titles,
    CONVERSATION_UPDATE: _on_conversation_update,
    CONVERSATION_DELETE: _on_conversation_delete,
    NEW_MESSAGE: _on_new_message,
    TITLE_GENERATED: _on_title_generated,
    PROJECT_CHANGE: _on_project_change,
    SHARED_ITEM_CHANGE: _on_shared_item_change,
}

# 需要会话ID才能计算键的变更类型
_CONVERSATION_SCOPED = {CONVERSATION_UPDATE, CONVERSATION_DELETE, NEW_MESSAGE}


def keys_for(mutation, conversation_id=None):
    """返回某种变更需要失效的缓存键列表"""
    try:
        builder = INVALIDATION_POLICY[mutation]
    except KeyError:
        raise ValueError(f"Unknown mutation type: {mutation}") from None
    if mutation in _CONVERSATION_SCOPED and not conversation_id:
        raise ValueError(f"{mutation} requires a conversation id")
    return builder(conversation_id)


def invalidate(*mutations, conversation_id=None):
    """只失效缓存键，不自增版本号 (多种变更合并为一次版本自增时使用)"""
    keys = []
    for mutation in mutations:
        for key in keys_for(mutation, conversation_id):
            if key not in keys:
                keys.append(key)
    return invalidate_keys(keys)


def record_mutation(mutation, conversation_id=None):
    """失效该变更对应的缓存键，然后将缓存版本号加一，返回新版本号"""
    invalidate(mutation, conversation_id=conversation_id)
    version = increment_cache_version()
    logger.debug(f"变更 {mutation} (conversation={conversation_id}) 后缓存版本: {version}")
    return version
