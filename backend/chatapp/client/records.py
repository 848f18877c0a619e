"""
客户端记录类型 (Conversation / Message / Project) 以及与服务端 JSON 之间的转换。

字段名与本地存储的列名一致 (snake_case)，线上格式使用 camelCase + ISO 8601 时间戳。
"""
from dataclasses import asdict, dataclass, field, fields, replace

from chatapp.utils.timestamps import parse_iso, to_iso, utcnow

DEFAULT_TITLE = 'New conversation'

_CONVERSATION_WIRE = {
    'id': 'id',
    'title': 'title',
    'model_id': 'modelId',
    'starred': 'starred',
    'archived': 'archived',
    'is_public': 'isPublic',
    'revision': 'revision',
    'forked_from_conversation_id': 'forkedFromConversationId',
    'forked_from_message_id': 'forkedFromMessageId',
    'forked_at': 'forkedAt',
    'created_at': 'createdAt',
    'updated_at': 'updatedAt',
    'last_message_at': 'lastMessageAt',
}

_MESSAGE_WIRE = {
    'id': 'id',
    'conversation_id': 'conversationId',
    'role': 'role',
    'content': 'content',
    'client_id': 'clientId',
    'meta_json': 'metaJson',
    'created_at': 'createdAt',
}

_PROJECT_WIRE = {
    'id': 'id',
    'name': 'name',
    'created_at': 'createdAt',
    'updated_at': 'updatedAt',
}

_TIMESTAMP_FIELDS = {'created_at', 'updated_at', 'last_message_at', 'forked_at'}

# 服务端对这些字段拥有权威；同步时覆盖本地值，其余本地字段保留
SERVER_OWNED_FIELDS = ('title', 'last_message_at', 'starred', 'archived', 'is_public', 'revision')


def _to_wire(record, mapping):
    data = {}
    for name, wire_name in mapping.items():
        value = getattr(record, name)
        data[wire_name] = to_iso(value) if name in _TIMESTAMP_FIELDS else value
    return data


def _from_wire(cls, data, mapping):
    kwargs = {}
    for name, wire_name in mapping.items():
        if wire_name in data:
            value = data[wire_name]
            kwargs[name] = parse_iso(value) if name in _TIMESTAMP_FIELDS else value
    return cls(**kwargs)


def wire_updates(updates, mapping=None):
    """把 snake_case 的部分更新转换为 camelCase JSON"""
    mapping = mapping or _CONVERSATION_WIRE
    data = {}
    for name, value in updates.items():
        wire_name = mapping.get(name, name)
        data[wire_name] = to_iso(value) if name in _TIMESTAMP_FIELDS else value
    return data


@dataclass
class Conversation:
    id: str
    title: str = DEFAULT_TITLE
    model_id: str = None
    starred: bool = False
    archived: bool = False
    is_public: bool = False
    # None 表示服务端尚未确认过该会话
    revision: int = None
    forked_from_conversation_id: str = None
    forked_from_message_id: str = None
    forked_at: object = None
    created_at: object = field(default_factory=utcnow)
    updated_at: object = field(default_factory=utcnow)
    last_message_at: object = None

    def to_wire(self):
        return _to_wire(self, _CONVERSATION_WIRE)

    @classmethod
    def from_wire(cls, data):
        return _from_wire(cls, data, _CONVERSATION_WIRE)

    def merged_with_server(self, server):
        """服务端共享字段覆盖本地值，本地独有字段保留"""
        return replace(self, **{name: getattr(server, name) for name in SERVER_OWNED_FIELDS})

    def copy(self, **changes):
        return replace(self, **changes)


@dataclass
class Message:
    id: str
    conversation_id: str
    role: str
    content: str
    client_id: str = None
    meta_json: str = None
    created_at: object = field(default_factory=utcnow)

    def to_wire(self):
        return _to_wire(self, _MESSAGE_WIRE)

    @classmethod
    def from_wire(cls, data):
        return _from_wire(cls, data, _MESSAGE_WIRE)

    def copy(self, **changes):
        return replace(self, **changes)


@dataclass
class Project:
    id: str
    name: str
    created_at: object = field(default_factory=utcnow)
    updated_at: object = field(default_factory=utcnow)

    def to_wire(self):
        return _to_wire(self, _PROJECT_WIRE)

    @classmethod
    def from_wire(cls, data):
        return _from_wire(cls, data, _PROJECT_WIRE)

    def copy(self, **changes):
        return replace(self, **changes)


def field_names(cls):
    return [f.name for f in fields(cls)]


def as_row(record):
    return asdict(record)
