"""
服务端 HTTP API 客户端 (requests)。

同步引擎通过它与记录存储交互，同时它实现了 ChangeFeed 接口：current_version() 读取
/api/cache-version。网络错误与 5xx 统一转换为 UpstreamUnavailable，4xx 按服务端错误码转换为
NotFound / InvalidState / BadRequest / Unauthorized。

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
import logging

import requests

from chatapp import config
from chatapp.client.poller import ChangeFeed
from chatapp.client.records import Conversation, Message, wire_updates
from chatapp.exceptions import (
    BadRequest,
    ChatAppError,
    InvalidState,
    NotFound,
    Unauthorized,
    UpstreamUnavailable,
)

logger = logging.getLogger(__name__)

_ERRORS_BY_CODE = {
    'not_found': NotFound,
    'invalid_state': InvalidState,
    'bad_request': BadRequest,
    'unauthorized': Unauthorized,
}

_ERRORS_BY_STATUS = {
    400: BadRequest,
    401: Unauthorized,
    404: NotFound,
}


class ChatApiClient(ChangeFeed):
    """Thin client for the chat HTTP API."""

    def __init__(self, base_url=None, token=None, session=None, timeout=None):
        self.base_url = (base_url or config.CHAT_API_BASE_URL).rstrip('/')
        self.token = token if token is not None else config.CHAT_API_TOKEN
        self.session = session or requests.Session()
        self.timeout = timeout or config.CLIENT_REQUEST_TIMEOUT

    def _headers(self):
        headers = {'Accept': 'application/json'}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        return headers

    def _request(self, method, path, params=None, json=None):
        url = f'{self.base_url}{path}'
        try:
            response = self.session.request(
                method, url, params=params, json=json,
                headers=self._headers(), timeout=self.timeout,
            )
        except requests.RequestException as e:
            raise UpstreamUnavailable(f'{method} {path} failed: {e}') from e

        if response.status_code >= 400:
            self._raise_for_response(method, path, response)
        if response.status_code == 204 or not response.content:
            return None
        return response.json()

    @staticmethod
    def _raise_for_response(method, path, response):
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        message = body.get('message') or response.text or f'HTTP {response.status_code}'
        if response.status_code >= 500:
            raise UpstreamUnavailable(f'{method} {path} failed: {message}')
        error_cls = (
            _ERRORS_BY_CODE.get(body.get('error'))
            or _ERRORS_BY_STATUS.get(response.status_code)
            or ChatAppError
        )
        raise error_cls(message)

    # -- change feed ------------------------------------------------------

    def current_version(self):
        data = self._request('GET', '/api/cache-version')
        return int(data.get('version', 0))

    # -- conversations ----------------------------------------------------

    def list_conversations(self, cursor=None, limit=None, archived=False, starred=None,
                           full=True, since_revision=None):
        params = {'archived': 'true' if archived else 'false', 'full': 'true' if full else 'false'}
        if cursor:
            params['cursor'] = cursor
        if limit:
            params['limit'] = limit
        if starred is not None:
            params['starred'] = 'true' if starred else 'false'
        if since_revision is not None:
            params['sinceRevision'] = since_revision
        return self._request('GET', '/api/conversations', params=params)

    def fetch_all_conversations(self, archived=False, page_size=100):
        """翻页读取某一归档状态下的全部会话 (完整字段)"""
        conversations = []
        cursor = None
        while True:
            page = self.list_conversations(cursor=cursor, limit=page_size, archived=archived, full=True)
            conversations.extend(Conversation.from_wire(item) for item in page['conversations'])
            if not page.get('hasMore') or not page.get('nextCursor'):
                return conversations
            cursor = page['nextCursor']

    def create_conversation(self, conversation):
        return Conversation.from_wire(self._request('POST', '/api/conversations', json=conversation.to_wire()))

    def update_conversation(self, conversation_id, updates):
        data = self._request('PATCH', f'/api/conversations/{conversation_id}', json=wire_updates(updates))
        return Conversation.from_wire(data)

    def delete_conversation(self, conversation_id):
        self._request('DELETE', f'/api/conversations/{conversation_id}')

    def branch_conversation(self, conversation_id, assistant_message_id,
                            new_conversation_id=None, message_id_map=None):
        payload = {'assistantMessageId': assistant_message_id}
        if new_conversation_id:
            payload['newConversationId'] = new_conversation_id
        if message_id_map:
            payload['messageIdMap'] = message_id_map
        return self._request('POST', f'/api/conversations/{conversation_id}/branch', json=payload)

    # -- messages ---------------------------------------------------------

    def create_message(self, message):
        data = self._request('POST', f'/api/conversations/{message.conversation_id}/messages',
                             json=message.to_wire())
        return Message.from_wire(data)

    def fetch_messages(self, conversation_id):
        messages = []
        cursor = None
        while True:
            params = {'cursor': cursor} if cursor else None
            page = self._request('GET', f'/api/conversations/{conversation_id}/messages', params=params)
            messages.extend(Message.from_wire(item) for item in page['messages'])
            if not page.get('hasMore') or not page.get('nextCursor'):
                return messages
            cursor = page['nextCursor']

    # -- projects ---------------------------------------------------------

    def create_project(self, project):
        return self._request('POST', '/api/projects', json=project.to_wire())

    def update_project(self, project_id, updates):
        return self._request('PATCH', f'/api/projects/{project_id}', json=wire_updates(updates))

    def delete_project(self, project_id):
        self._request('DELETE', f'/api/projects/{project_id}')

    def add_conversation_to_project(self, conversation_id, project_id):
        return self._request('POST', f'/api/projects/{project_id}/conversations',
                             json={'conversationId': conversation_id})

    def remove_conversation_from_project(self, conversation_id, project_id):
        self._request('DELETE', f'/api/projects/{project_id}/conversations/{conversation_id}')

    def get_project_metadata(self):
        return self._request('GET', '/api/projects/metadata')

    # -- AI ---------------------------------------------------------------

    def generate_title(self, user_message, conversation_id):
        data = self._request('POST', '/api/generate-title',
                             json={'userMessage': user_message, 'conversationId': conversation_id})
        return data.get('title')

    def generate_suggestions(self, user_message, assistant_message):
        data = self._request('POST', '/api/suggestions',
                             json={'userMessage': user_message, 'assistantMessage': assistant_message})
        return data.get('suggestions', [])
