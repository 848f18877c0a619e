"""
服务端记录存储 (Record Store)。

基于 Flask-SQLAlchemy 的权威存储，路由层只做参数解析，所有读写都经过这里。
主要功能:
- 会话列表：按 (coalesce(last_message_at, created_at), id) 倒序的复合游标分页，多取一行计算 hasMore；
  默认查询 (未归档、无收藏过滤、无 sinceRevision、标题投影) 的第一页走标题缓存
- 会话增删改：创建为幂等 (按 id insert-or-ignore)，每次写入 revision 取全局 max+1，删除级联消息与项目关联
- 消息：按 (created_at, seq) 升序的复合游标分页 (每页 5 条)，首屏预览缓存，幂等创建并隐式创建父会话
- 分支 (branch)：从某条 assistant 消息处复制前缀消息到新会话，时间戳按 1 秒递增重新生成
- 公开分享会话、分享单条回答 (SharedMessage) 及分享列表 (缓存)
- 项目：列表 (含会话计数，缓存)、增删改、元数据 (缓存)、会话与项目的关联

每个写操作在提交后调用 invalidation.record_mutation：先失效缓存键，再将缓存版本号加一。

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
import json
import logging
import uuid
from collections import defaultdict
from datetime import timedelta

from sqlalchemy import and_, func, or_
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from chatapp import db
from chatapp.exceptions import BadRequest, InvalidState, NotFound
from chatapp.models import (
    Conversation,
    ConversationProject,
    DEFAULT_TITLE,
    Message,
    MESSAGE_ROLES,
    Project,
    SharedMessage,
)
from chatapp.services import invalidation
from chatapp.utils import cache_manager
from chatapp.utils.timestamps import parse_iso, to_iso, utcnow

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 30
MAX_PAGE_SIZE = 100
MESSAGE_PAGE_SIZE = 5

# 客户端可修改的会话字段 (camelCase -> 列名)
CONVERSATION_FIELDS = {
    'title': 'title',
    'modelId': 'model_id',
    'starred': 'starred',
    'archived': 'archived',
    'isPublic': 'is_public',
}


def _commit():
    try:
        db.session.commit()
    except SQLAlchemyError as e:
        db.session.rollback()
        logger.error(f"数据库提交失败: {e}")
        raise


def _parse_timestamp(value, field):
    try:
        return parse_iso(value)
    except (TypeError, ValueError):
        raise BadRequest(f"Invalid timestamp for {field}: {value!r}")


def next_revision():
    """全局 revision 序列：当前最大值 + 1，保证同一会话的 revision 严格递增"""
    current = db.session.query(func.max(Conversation.revision)).scalar()
    return (current or 0) + 1


def latest_revision():
    return db.session.query(func.max(Conversation.revision)).scalar() or 0


def next_message_seq():
    """消息写入序号：当前最大值 + 1，created_at 相同的消息按它排序"""
    current = db.session.query(func.max(Message.seq)).scalar()
    return (current or 0) + 1


# 游标格式: "<ISO 时间戳>|<排序键>..."；只有时间戳的旧格式按严格比较处理
CURSOR_SEPARATOR = '|'


def encode_cursor(timestamp, *tiebreakers):
    return CURSOR_SEPARATOR.join([to_iso(timestamp)] + [str(t) for t in tiebreakers])


def decode_cursor(cursor, parts=1):
    """解析游标，返回 (timestamp, [tiebreaker, ...])；缺失的 tiebreaker 为 None"""
    pieces = cursor.split(CURSOR_SEPARATOR)
    timestamp = _parse_timestamp(pieces[0], 'cursor')
    if timestamp is None:
        raise BadRequest(f"Invalid cursor: {cursor!r}")
    tiebreakers = [piece or None for piece in pieces[1:1 + parts]]
    tiebreakers += [None] * (parts - len(tiebreakers))
    return timestamp, tiebreakers


# ---------------------------------------------------------------------------
# 会话
# ---------------------------------------------------------------------------

def _listing_sort_key():
    return func.coalesce(Conversation.last_message_at, Conversation.created_at)


def list_conversations(cursor=None, limit=None, starred=None, archived=False,
                       full=False, since_revision=None):
    """会话列表，返回 {conversations, nextCursor, hasMore, latestRevision}"""
    if limit is None:
        limit = DEFAULT_PAGE_SIZE
    limit = max(1, min(int(limit), MAX_PAGE_SIZE))

    is_default_query = (
        cursor is None and starred is None and archived is False
        and since_revision is None and not full and limit == DEFAULT_PAGE_SIZE
    )
    if is_default_query:
        return cache_manager.read_through(
            cache_manager.conversation_titles_key(),
            cache_manager.TTL['CONVERSATION_TITLES'],
            lambda: _query_conversations(None, limit, None, False, False, None),
        )
    return _query_conversations(cursor, limit, starred, archived, full, since_revision)


def _query_conversations(cursor, limit, starred, archived, full, since_revision):
    sort_key = _listing_sort_key()
    query = Conversation.query
    if archived is not None:
        query = query.filter(Conversation.archived == bool(archived))
    if starred is not None:
        query = query.filter(Conversation.starred == bool(starred))
    if since_revision is not None:
        query = query.filter(Conversation.revision > since_revision)
    if cursor is not None:
        timestamp, (cursor_id,) = decode_cursor(cursor)
        if cursor_id is None:
            query = query.filter(sort_key < timestamp)
        else:
            # 与 order_by 一致的 (sort_key, id) 倒序比较，同一时间戳的行不会跨页丢失
            query = query.filter(or_(
                sort_key < timestamp,
                and_(sort_key == timestamp, Conversation.id < cursor_id),
            ))

    rows = query.order_by(sort_key.desc(), Conversation.id.desc()).limit(limit + 1).all()
    has_more = len(rows) > limit
    rows = rows[:limit]

    next_cursor = None
    if has_more and rows:
        last = rows[-1]
        next_cursor = encode_cursor(last.last_message_at or last.created_at, last.id)

    return {
        'conversations': [c.to_dict(full=full) for c in rows],
        'nextCursor': next_cursor,
        'hasMore': has_more,
        'latestRevision': latest_revision(),
    }


def get_conversation(conversation_id):
    conversation = db.session.get(Conversation, conversation_id)
    if conversation is None:
        raise NotFound('Conversation not found')
    return conversation


def _new_conversation(data, conversation_id, now):
    return Conversation(
        id=conversation_id,
        title=data.get('title') or DEFAULT_TITLE,
        model_id=data.get('modelId'),
        starred=bool(data.get('starred', False)),
        archived=bool(data.get('archived', False)),
        is_public=bool(data.get('isPublic', False)),
        revision=next_revision(),
        created_at=_parse_timestamp(data.get('createdAt'), 'createdAt') or now,
        updated_at=now,
        last_message_at=_parse_timestamp(data.get('lastMessageAt'), 'lastMessageAt'),
    )


def create_conversation(data):
    """
    幂等创建会话：id 已存在时不做修改，直接返回已有记录。

    返回 (conversation, created)。
    """
    conversation_id = data.get('id') or str(uuid.uuid4())
    existing = db.session.get(Conversation, conversation_id)
    if existing is not None:
        return existing, False

    conversation = _new_conversation(data, conversation_id, utcnow())
    db.session.add(conversation)
    try:
        db.session.commit()
    except IntegrityError:
        # 并发的消息创建请求已隐式创建了该会话
        db.session.rollback()
        return get_conversation(conversation_id), False

    invalidation.record_mutation(invalidation.CONVERSATION_CREATE)
    logger.info(f"会话已创建: {conversation_id}")
    return conversation, True


def update_conversation(conversation_id, updates):
    conversation = get_conversation(conversation_id)
    changed = False
    for field, column in CONVERSATION_FIELDS.items():
        if field in updates:
            value = updates[field]
            if column in ('starred', 'archived', 'is_public'):
                value = bool(value)
            elif column == 'title' and not value:
                raise BadRequest('title must not be empty')
            setattr(conversation, column, value)
            changed = True
    if 'lastMessageAt' in updates:
        conversation.last_message_at = _parse_timestamp(updates['lastMessageAt'], 'lastMessageAt')
        changed = True
    if not changed:
        return conversation

    conversation.updated_at = utcnow()
    conversation.revision = next_revision()
    _commit()
    invalidation.record_mutation(invalidation.CONVERSATION_UPDATE, conversation_id)
    return conversation


def delete_conversation(conversation_id):
    """删除会话及其消息和项目关联；会话不存在时返回 False (删除是幂等的)"""
    conversation = db.session.get(Conversation, conversation_id)
    if conversation is None:
        return False
    Message.query.filter_by(conversation_id=conversation_id).delete(synchronize_session=False)
    ConversationProject.query.filter_by(conversation_id=conversation_id).delete(synchronize_session=False)
    db.session.delete(conversation)
    _commit()
    invalidation.record_mutation(invalidation.CONVERSATION_DELETE, conversation_id)
    logger.info(f"会话已删除: {conversation_id}")
    return True


def set_generated_title(conversation_id, title):
    conversation = get_conversation(conversation_id)
    conversation.title = title
    conversation.updated_at = utcnow()
    conversation.revision = next_revision()
    _commit()
    invalidation.record_mutation(invalidation.TITLE_GENERATED, conversation_id)
    return conversation


# ---------------------------------------------------------------------------
# 消息
# ---------------------------------------------------------------------------

def _message_order():
    return Message.created_at.asc(), Message.seq.asc(), Message.id.asc()


def _message_cursor(created_at, seq, message_id):
    return encode_cursor(created_at, seq, message_id)


def _after_message_cursor(cursor):
    """(created_at, seq, id) 升序下位于游标之后的消息"""
    timestamp, (seq, message_id) = decode_cursor(cursor, parts=2)
    if seq is None:
        return Message.created_at > timestamp
    try:
        seq = int(seq)
    except ValueError:
        raise BadRequest(f"Invalid cursor: {cursor!r}")
    later_in_tie = Message.seq > seq
    if message_id:
        later_in_tie = or_(later_in_tie, and_(Message.seq == seq, Message.id > message_id))
    return or_(
        Message.created_at > timestamp,
        and_(Message.created_at == timestamp, later_in_tie),
    )


def _preview_from(messages):
    def pick(role):
        message = next((m for m in messages if m.role == role), None)
        if message is None:
            return None
        return {
            'id': message.id,
            'content': message.content,
            'createdAt': to_iso(message.created_at),
            'seq': message.seq,
        }

    return {'userMessage': pick('user'), 'assistantMessage': pick('assistant')}


def _messages_from_preview(conversation_id, preview):
    messages = []
    for role, key in (('user', 'userMessage'), ('assistant', 'assistantMessage')):
        entry = preview.get(key)
        if entry:
            messages.append({
                'id': entry['id'],
                'conversationId': conversation_id,
                'role': role,
                'content': entry['content'],
                'clientId': None,
                'metaJson': None,
                'createdAt': entry['createdAt'],
            })
    return messages


def _preview_cursor(preview):
    entries = [preview.get(key) for key in ('userMessage', 'assistantMessage') if preview.get(key)]
    if not entries:
        return None
    last = max(entries, key=lambda e: (e['createdAt'], e.get('seq', 0), e['id']))
    return _message_cursor(parse_iso(last['createdAt']), last.get('seq', 0), last['id'])


def list_messages(conversation_id, cursor=None, preview=False):
    """消息分页 (按 created_at、写入顺序升序)，返回 {messages, nextCursor, hasMore}；preview 首屏可能来自缓存"""
    preview_key = cache_manager.message_preview_key(conversation_id)
    if cursor is None and preview:
        cached = cache_manager.get_cached(preview_key)
        if cached:
            return {
                'messages': _messages_from_preview(conversation_id, cached),
                'nextCursor': _preview_cursor(cached),
                'hasMore': True,
                'fromCache': True,
            }

    query = Message.query.filter(Message.conversation_id == conversation_id)
    if cursor is not None:
        query = query.filter(_after_message_cursor(cursor))
    rows = query.order_by(*_message_order()).limit(MESSAGE_PAGE_SIZE + 1).all()
    has_more = len(rows) > MESSAGE_PAGE_SIZE
    rows = rows[:MESSAGE_PAGE_SIZE]

    if cursor is None and rows:
        cache_manager.set_cached(preview_key, _preview_from(rows), cache_manager.TTL['MESSAGE_PREVIEW'])

    next_cursor = None
    if has_more and rows:
        last = rows[-1]
        next_cursor = _message_cursor(last.created_at, last.seq, last.id)
    return {
        'messages': [m.to_dict() for m in rows],
        'nextCursor': next_cursor,
        'hasMore': has_more,
    }


def list_all_messages(conversation_id):
    return (
        Message.query.filter_by(conversation_id=conversation_id)
        .order_by(*_message_order())
        .all()
    )


def _serialize_meta(meta):
    if meta is None or isinstance(meta, str):
        return meta
    return json.dumps(meta)


def create_message(conversation_id, data):
    """
    幂等创建消息 (按 id)，父会话不存在时隐式创建。

    返回 (message, created)。
    """
    role = data.get('role')
    if role not in MESSAGE_ROLES:
        raise BadRequest(f"Invalid message role: {role!r}")
    if data.get('content') is None:
        raise BadRequest('content is required')

    message_id = data.get('id') or str(uuid.uuid4())
    existing = db.session.get(Message, message_id)
    if existing is not None:
        return existing, False

    now = utcnow()
    created_at = _parse_timestamp(data.get('createdAt'), 'createdAt') or now

    conversation = db.session.get(Conversation, conversation_id)
    if conversation is None:
        conversation = _new_conversation({}, conversation_id, now)
        db.session.add(conversation)
        logger.info(f"消息 {message_id} 隐式创建了会话 {conversation_id}")

    message = Message(
        id=message_id,
        conversation_id=conversation_id,
        role=role,
        content=data['content'],
        client_id=data.get('clientId'),
        meta_json=_serialize_meta(data.get('metaJson')),
        created_at=created_at,
        seq=next_message_seq(),
    )
    db.session.add(message)

    if conversation.last_message_at is None or created_at > conversation.last_message_at:
        conversation.last_message_at = created_at
    conversation.updated_at = now
    conversation.revision = next_revision()

    try:
        db.session.commit()
    except IntegrityError:
        db.session.rollback()
        existing = db.session.get(Message, message_id)
        if existing is None:
            raise
        return existing, False

    invalidation.record_mutation(invalidation.NEW_MESSAGE, conversation_id)
    return message, True


# ---------------------------------------------------------------------------
# 分支
# ---------------------------------------------------------------------------

def branch_conversation(source_id, assistant_message_id, new_conversation_id=None, message_id_map=None):
    """
    从 assistant_message_id (含) 处分叉出新会话。

    返回 {'conversationId': ..., 'messageIdMap': [{sourceMessageId, newMessageId}, ...]}
    """
    if not assistant_message_id:
        raise BadRequest('assistantMessageId is required')
    source = get_conversation(source_id)
    source_messages = list_all_messages(source_id)

    pivot_index = next(
        (i for i, m in enumerate(source_messages) if m.id == assistant_message_id), None
    )
    if pivot_index is None:
        raise NotFound('Assistant message not found')
    if source_messages[pivot_index].role != 'assistant':
        raise InvalidState('Branching is only allowed from assistant messages')

    to_copy = source_messages[:pivot_index + 1]
    if not to_copy:
        raise InvalidState('No messages to branch from')

    id_map = {}
    for entry in message_id_map or []:
        if entry and entry.get('sourceMessageId') and entry.get('newMessageId'):
            id_map[entry['sourceMessageId']] = entry['newMessageId']

    now = utcnow()
    base_time = now - timedelta(seconds=len(to_copy) - 1)
    new_id = new_conversation_id or str(uuid.uuid4())

    copies = []
    first_seq = next_message_seq()
    for index, message in enumerate(to_copy):
        copies.append(Message(
            id=id_map.get(message.id) or str(uuid.uuid4()),
            conversation_id=new_id,
            role=message.role,
            content=message.content,
            client_id=None,
            meta_json=message.meta_json,
            created_at=base_time + timedelta(seconds=index),
            seq=first_seq + index,
        ))

    branch = Conversation(
        id=new_id,
        title=source.title or DEFAULT_TITLE,
        model_id=source.model_id,
        starred=False,
        archived=False,
        is_public=False,
        revision=next_revision(),
        forked_from_conversation_id=source_id,
        forked_from_message_id=copies[-1].id,
        forked_at=now,
        created_at=now,
        updated_at=now,
        last_message_at=copies[-1].created_at,
    )
    db.session.add(branch)
    db.session.add_all(copies)
    _commit()

    invalidation.invalidate(invalidation.CONVERSATION_CREATE, invalidation.NEW_MESSAGE, conversation_id=new_id)
    cache_manager.increment_cache_version()
    logger.info(f"会话 {source_id} 已从消息 {assistant_message_id} 分叉为 {new_id} ({len(copies)} 条消息)")

    return {
        'conversationId': new_id,
        'messageIdMap': [
            {'sourceMessageId': original.id, 'newMessageId': copy.id}
            for original, copy in zip(to_copy, copies)
        ],
    }


# ---------------------------------------------------------------------------
# 分享
# ---------------------------------------------------------------------------

def get_public_conversation(conversation_id):
    conversation = Conversation.query.filter_by(id=conversation_id, is_public=True).first()
    if conversation is None:
        raise NotFound('Conversation not found or not shared')
    messages = [
        {'id': m.id, 'role': m.role, 'content': m.content, 'createdAt': to_iso(m.created_at)}
        for m in list_all_messages(conversation_id)
        if m.role in ('user', 'assistant')
    ]
    return {
        'conversation': {
            'id': conversation.id,
            'title': conversation.title,
            'createdAt': to_iso(conversation.created_at),
        },
        'messages': messages,
    }


def create_shared_message(data):
    if not data.get('userInput') or not data.get('response'):
        raise BadRequest('userInput and response are required')
    shared = SharedMessage(
        id=uuid.uuid4().hex[:8],
        original_message_id=data.get('messageId'),
        conversation_id=data.get('conversationId'),
        user_input=data['userInput'],
        response=data['response'],
        model_id=data.get('modelId'),
    )
    db.session.add(shared)
    _commit()
    invalidation.record_mutation(invalidation.SHARED_ITEM_CHANGE)
    return shared


def delete_shared_message(shared_id):
    if not shared_id:
        raise BadRequest('id is required')
    deleted = SharedMessage.query.filter_by(id=shared_id).delete(synchronize_session=False)
    _commit()
    if deleted:
        invalidation.record_mutation(invalidation.SHARED_ITEM_CHANGE)
    return bool(deleted)


def get_shared_message(shared_id):
    if not shared_id:
        raise BadRequest('id is required')
    shared = db.session.get(SharedMessage, shared_id)
    if shared is None:
        raise NotFound('Shared message not found')
    return shared


def list_shared_items():
    return cache_manager.read_through(
        cache_manager.shared_items_key(),
        cache_manager.TTL['SHARED_ITEMS'],
        _load_shared_items,
    )


def _load_shared_items():
    responses = []
    for item in SharedMessage.query.order_by(SharedMessage.created_at.desc()).all():
        data = item.to_dict()
        data['type'] = 'response'
        data['title'] = (item.user_input or '')[:100] or 'Shared response'
        responses.append(data)

    conversations = [
        {
            'id': c.id,
            'type': 'conversation',
            'title': c.title,
            'conversationId': c.id,
            'originalMessageId': None,
            'createdAt': to_iso(c.created_at),
            'updatedAt': to_iso(c.updated_at),
        }
        for c in Conversation.query.filter_by(is_public=True).order_by(Conversation.updated_at.desc()).all()
    ]
    return {
        'conversations': conversations,
        'responses': responses,
        'counts': {
            'responses': len(responses),
            'conversations': len(conversations),
            'total': len(responses) + len(conversations),
        },
    }


# ---------------------------------------------------------------------------
# 项目
# ---------------------------------------------------------------------------

def _projects_with_counts():
    counts = dict(
        db.session.query(ConversationProject.project_id, func.count(ConversationProject.conversation_id))
        .group_by(ConversationProject.project_id)
        .all()
    )
    projects = Project.query.order_by(Project.updated_at.desc(), Project.id.asc()).all()
    return [p.to_dict(conversation_count=counts.get(p.id, 0)) for p in projects]


def list_projects():
    return cache_manager.read_through(
        cache_manager.project_list_key(),
        cache_manager.TTL['PROJECT_LIST'],
        _projects_with_counts,
    )


def get_project_metadata():
    """所有项目 (含计数) + conversationId -> [projectId] 映射"""
    def load():
        mapping = defaultdict(list)
        for link in ConversationProject.query.all():
            mapping[link.conversation_id].append(link.project_id)
        return {'projects': _projects_with_counts(), 'conversationProjects': dict(mapping)}

    return cache_manager.read_through(
        cache_manager.project_metadata_key(),
        cache_manager.TTL['PROJECT_METADATA'],
        load,
    )


def get_project(project_id):
    project = db.session.get(Project, project_id)
    if project is None:
        raise NotFound('Project not found')
    return project


def create_project(data):
    name = (data.get('name') or '').strip()
    if not name:
        raise BadRequest('name is required')
    project_id = data.get('id') or str(uuid.uuid4())
    existing = db.session.get(Project, project_id)
    if existing is not None:
        return existing, False
    now = utcnow()
    project = Project(
        id=project_id,
        name=name,
        created_at=_parse_timestamp(data.get('createdAt'), 'createdAt') or now,
        updated_at=now,
    )
    db.session.add(project)
    _commit()
    invalidation.record_mutation(invalidation.PROJECT_CHANGE)
    return project, True


def update_project(project_id, updates):
    project = get_project(project_id)
    if 'name' in updates:
        name = (updates.get('name') or '').strip()
        if not name:
            raise BadRequest('name must not be empty')
        project.name = name
        project.updated_at = utcnow()
        _commit()
        invalidation.record_mutation(invalidation.PROJECT_CHANGE)
    return project


def delete_project(project_id):
    project = db.session.get(Project, project_id)
    if project is None:
        return False
    ConversationProject.query.filter_by(project_id=project_id).delete(synchronize_session=False)
    db.session.delete(project)
    _commit()
    invalidation.record_mutation(invalidation.PROJECT_CHANGE)
    return True


def list_project_conversations(project_id):
    get_project(project_id)
    sort_key = _listing_sort_key()
    rows = (
        Conversation.query.join(ConversationProject, ConversationProject.conversation_id == Conversation.id)
        .filter(ConversationProject.project_id == project_id)
        .order_by(sort_key.desc(), Conversation.id.desc())
        .all()
    )
    return [c.to_dict() for c in rows]


def list_conversation_projects(conversation_id):
    get_conversation(conversation_id)
    rows = (
        Project.query.join(ConversationProject, ConversationProject.project_id == Project.id)
        .filter(ConversationProject.conversation_id == conversation_id)
        .order_by(Project.name.asc())
        .all()
    )
    return [p.to_dict() for p in rows]


def add_conversation_to_project(project_id, conversation_id):
    if not conversation_id:
        raise BadRequest('conversationId is required')
    project = get_project(project_id)
    get_conversation(conversation_id)
    if db.session.get(ConversationProject, (conversation_id, project_id)) is not None:
        return False
    db.session.add(ConversationProject(conversation_id=conversation_id, project_id=project_id))
    project.updated_at = utcnow()
    _commit()
    invalidation.record_mutation(invalidation.PROJECT_CHANGE)
    return True


def remove_conversation_from_project(project_id, conversation_id):
    if not conversation_id:
        raise BadRequest('conversationId is required')
    deleted = ConversationProject.query.filter_by(
        project_id=project_id, conversation_id=conversation_id
    ).delete(synchronize_session=False)
    _commit()
    if deleted:
        invalidation.record_mutation(invalidation.PROJECT_CHANGE)
    return bool(deleted)
