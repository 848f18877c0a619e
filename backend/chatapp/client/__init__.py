"""
客户端：本地存储 + 同步引擎 + 服务端 API 客户端 + 缓存版本轮询。
"""
from chatapp.client.api_client import ChatApiClient
from chatapp.client.local_store import LocalStore
from chatapp.client.poller import ChangeFeed, VersionPoller
from chatapp.client.records import DEFAULT_TITLE, Conversation, Message, Project
from chatapp.client.sync_engine import SyncEngine

__all__ = [
    'ChatApiClient',
    'ChangeFeed',
    'Conversation',
    'DEFAULT_TITLE',
    'LocalStore',
    'Message',
    'Project',
    'SyncEngine',
    'VersionPoller',
]
