from urllib.parse import urlsplit

import pytest
from flask_jwt_extended import create_access_token

from chatapp import create_app, db
from chatapp.client import ChatApiClient, LocalStore
from chatapp.client.poller import ChangeFeed
from chatapp.client.records import Conversation
from chatapp.exceptions import LocalStoreError, NotFound, UpstreamUnavailable


@pytest.fixture
def app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'CACHE_TYPE': 'SimpleCache',
        'AUTO_CREATE_TABLES': True,
        'JWT_SECRET_KEY': 'test-secret-key-with-enough-length-for-hs256',
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def uncached_app():
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite://',
        'CACHE_TYPE': 'NullCache',
        'AUTO_CREATE_TABLES': True,
        'JWT_SECRET_KEY': 'test-secret-key-with-enough-length-for-hs256',
    })
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def token(app):
    with app.app_context():
        return create_access_token(identity='user-1')


@pytest.fixture
def auth_headers(token):
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture
def local_store(tmp_path):
    store = LocalStore(str(tmp_path / 'local-store.sqlite3'))
    yield store
    store.close()


def inline(fn, *args, **kwargs):
    """后台执行器：在调用线程内立即执行"""
    fn(*args, **kwargs)


@pytest.fixture
def inline_runner():
    return inline


class QueuedRunner:
    """后台执行器：先排队，测试里调用 run_all() 时才执行"""

    def __init__(self):
        self.tasks = []

    def __call__(self, fn, *args, **kwargs):
        self.tasks.append((fn, args, kwargs))

    def run_all(self):
        while self.tasks:
            fn, args, kwargs = self.tasks.pop(0)
            fn(*args, **kwargs)


@pytest.fixture
def queued_runner():
    return QueuedRunner()


class FlakyStore(LocalStore):
    """写操作可以按需失败的本地存储"""

    fail_writes = False

    def _check(self, operation):
        if self.fail_writes:
            raise LocalStoreError(f'{operation} failed')

    def create_conversation(self, conversation):
        self._check('create_conversation')
        return super().create_conversation(conversation)

    def update_conversation(self, conversation_id, updates):
        self._check('update_conversation')
        return super().update_conversation(conversation_id, updates)

    def delete_conversation(self, conversation_id):
        self._check('delete_conversation')
        return super().delete_conversation(conversation_id)

    def create_message(self, message):
        self._check('create_message')
        return super().create_message(message)

    def update_message(self, message_id, updates):
        self._check('update_message')
        return super().update_message(message_id, updates)

    def create_project(self, project):
        self._check('create_project')
        return super().create_project(project)

    def delete_project(self, project_id):
        self._check('delete_project')
        return super().delete_project(project_id)

    def add_conversation_to_project(self, conversation_id, project_id):
        self._check('add_conversation_to_project')
        return super().add_conversation_to_project(conversation_id, project_id)


@pytest.fixture
def flaky_store(tmp_path):
    store = FlakyStore(str(tmp_path / 'flaky-store.sqlite3'))
    yield store
    store.close()


class FakeServer(ChangeFeed):
    """内存版服务端 API，只实现同步引擎用到的方法"""

    def __init__(self):
        self.conversations = {}
        self.messages = {}
        self.projects = {}
        self.links = set()
        self.version = 1
        self.revision = 0
        self.offline = False
        self.calls = []
        self.titles = {}

    def _call(self, name, *args):
        self.calls.append((name,) + args)
        if self.offline:
            raise UpstreamUnavailable(f'{name}: server unreachable')

    def _bump(self, conversation):
        self.revision += 1
        self.version += 1
        stored = conversation.copy(revision=self.revision)
        self.conversations[conversation.id] = stored
        return stored

    def seed(self, conversation):
        return self._bump(conversation)

    def current_version(self):
        self._call('current_version')
        return self.version

    def fetch_all_conversations(self, archived=False, page_size=100):
        self._call('fetch_all_conversations', archived)
        return [c.copy() for c in self.conversations.values() if c.archived == archived]

    def create_conversation(self, conversation):
        self._call('create_conversation', conversation.id)
        existing = self.conversations.get(conversation.id)
        if existing is not None:
            return existing.copy()
        return self._bump(conversation).copy()

    def update_conversation(self, conversation_id, updates):
        self._call('update_conversation', conversation_id, dict(updates))
        existing = self.conversations.get(conversation_id)
        if existing is None:
            raise NotFound('Conversation not found')
        return self._bump(existing.copy(**updates)).copy()

    def delete_conversation(self, conversation_id):
        self._call('delete_conversation', conversation_id)
        if self.conversations.pop(conversation_id, None) is not None:
            self.version += 1

    def create_message(self, message):
        self._call('create_message', message.id)
        self.messages[message.id] = message
        conversation = self.conversations.get(message.conversation_id) or Conversation(id=message.conversation_id)
        self._bump(conversation.copy(last_message_at=message.created_at))
        return message

    def fetch_messages(self, conversation_id):
        self._call('fetch_messages', conversation_id)
        return sorted(
            (m for m in self.messages.values() if m.conversation_id == conversation_id),
            key=lambda m: m.created_at,
        )

    def generate_title(self, user_message, conversation_id):
        self._call('generate_title', conversation_id)
        return self.titles.get(conversation_id, 'New conversation')

    def create_project(self, project):
        self._call('create_project', project.id)
        self.projects[project.id] = project

    def update_project(self, project_id, updates):
        self._call('update_project', project_id, dict(updates))

    def delete_project(self, project_id):
        self._call('delete_project', project_id)
        self.projects.pop(project_id, None)

    def add_conversation_to_project(self, conversation_id, project_id):
        self._call('add_conversation_to_project', conversation_id, project_id)
        self.links.add((conversation_id, project_id))

    def remove_conversation_from_project(self, conversation_id, project_id):
        self._call('remove_conversation_from_project', conversation_id, project_id)
        self.links.discard((conversation_id, project_id))

    def called(self, name):
        return [call for call in self.calls if call[0] == name]


@pytest.fixture
def fake_server():
    return FakeServer()


class _TestResponse:

    def __init__(self, response):
        self._response = response
        self.status_code = response.status_code
        self.content = response.data
        self.text = response.get_data(as_text=True)

    def json(self):
        data = self._response.get_json(silent=True)
        if data is None:
            raise ValueError('Response body is not JSON')
        return data


class FlaskTestSession:
    """把 ChatApiClient 的 requests 调用转发到 Flask 测试客户端"""

    def __init__(self, test_client):
        self.test_client = test_client

    def request(self, method, url, params=None, json=None, headers=None, timeout=None):
        path = urlsplit(url).path
        response = self.test_client.open(
            path, method=method, query_string=params, json=json, headers=headers,
        )
        return _TestResponse(response)


@pytest.fixture
def api_client(client, token):
    return ChatApiClient(base_url='http://localhost', token=token, session=FlaskTestSession(client))
