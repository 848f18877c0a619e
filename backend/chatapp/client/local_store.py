"""
本地存储 (客户端缓存)。

每台设备一份的 SQLite 持久化存储，保存会话、消息、项目以及会话-项目关联，独立于网络可用性。
主要功能:
- 四张表与固定索引集合：conversations (last_message_at、starred)、messages (conversation_id、
  (conversation_id, created_at))、projects (name)、conversation_projects (复合主键 + 两侧索引)
- 通过 PRAGMA user_version 进行显式的 schema 迁移
- 会话 CRUD；删除会话在同一事务内级联删除消息与项目关联
- 消息写入前经过压缩过滤器 (大于 500 字符才压缩)，读出时透明解压；写入消息同时更新父会话的
  last_message_at / updated_at
- 项目 CRUD 与会话-项目关联
- hydrate(): 冷启动读取会话与项目，任何失败都返回空集合

没有可用的持久化存储时 (未配置路径、目录不可写、数据库无法打开) 抛出 StorageUnavailable，
其余数据库错误抛出 LocalStoreError。

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
import logging
import os
import threading
from contextlib import contextmanager

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    delete,
    literal_column,
    select,
    text,
    update,
)
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import OperationalError, SQLAlchemyError
from sqlalchemy.pool import StaticPool

from chatapp.client.records import Conversation, Message, Project, as_row
from chatapp.exceptions import LocalStoreError, StorageUnavailable
from chatapp.utils.compression import compress, decompress
from chatapp.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

SCHEMA_VERSION = 1

metadata = MetaData()

conversations_table = Table(
    'conversations', metadata,
    Column('id', String(36), primary_key=True),
    Column('title', String(255), nullable=False),
    Column('model_id', String(100)),
    Column('starred', Boolean, nullable=False, default=False),
    Column('archived', Boolean, nullable=False, default=False),
    Column('is_public', Boolean, nullable=False, default=False),
    Column('revision', Integer),
    Column('forked_from_conversation_id', String(36)),
    Column('forked_from_message_id', String(36)),
    Column('forked_at', DateTime),
    Column('created_at', DateTime, nullable=False),
    Column('updated_at', DateTime, nullable=False),
    Column('last_message_at', DateTime),
    Index('by_last_message_at', 'last_message_at'),
    Index('by_starred', 'starred'),
)

messages_table = Table(
    'messages', metadata,
    Column('id', String(36), primary_key=True),
    Column('conversation_id', String(36), nullable=False),
    Column('role', String(20), nullable=False),
    Column('content', Text, nullable=False),
    Column('client_id', String(64)),
    Column('meta_json', Text),
    Column('created_at', DateTime, nullable=False),
    Index('by_conversation_id', 'conversation_id'),
    Index('by_conversation_id_created_at', 'conversation_id', 'created_at'),
)

projects_table = Table(
    'projects', metadata,
    Column('id', String(36), primary_key=True),
    Column('name', String(200), nullable=False),
    Column('created_at', DateTime, nullable=False),
    Column('updated_at', DateTime, nullable=False),
    Index('by_name', 'name'),
)

conversation_projects_table = Table(
    'conversation_projects', metadata,
    Column('conversation_id', String(36), primary_key=True),
    Column('project_id', String(36), primary_key=True),
    Index('by_link_conversation_id', 'conversation_id'),
    Index('by_link_project_id', 'project_id'),
)


def _migrate_to_v1(conn):
    metadata.create_all(conn)


# user_version -> 升级到下一版本的函数
MIGRATIONS = {
    0: _migrate_to_v1,
}


class LocalStore:
    """Per-device persistent replica of conversations, messages and projects."""

    def __init__(self, path=None, engine=None):
        self.path = path
        self._engine = engine
        self._migrated = False
        self._lock = threading.Lock()

    # -- engine / schema --------------------------------------------------

    def _create_engine(self):
        if not self.path:
            raise StorageUnavailable('No persistent storage location configured')
        if self.path == ':memory:':
            return create_engine(
                'sqlite://',
                poolclass=StaticPool,
                connect_args={'check_same_thread': False},
            )
        directory = os.path.dirname(os.path.abspath(self.path))
        try:
            os.makedirs(directory, exist_ok=True)
        except OSError as e:
            raise StorageUnavailable(f'Cannot create storage directory {directory}: {e}') from e
        return create_engine(f'sqlite:///{self.path}', connect_args={'check_same_thread': False})

    def _get_engine(self):
        with self._lock:
            if self._engine is None:
                self._engine = self._create_engine()
            if not self._migrated:
                try:
                    with self._engine.begin() as conn:
                        self._migrate(conn)
                except OperationalError as e:
                    raise StorageUnavailable(f'Local store unavailable: {e}') from e
                except SQLAlchemyError as e:
                    raise LocalStoreError(f'Local store migration failed: {e}') from e
                self._migrated = True
            return self._engine

    def _migrate(self, conn):
        version = conn.execute(text('PRAGMA user_version')).scalar() or 0
        while version < SCHEMA_VERSION:
            MIGRATIONS[version](conn)
            version += 1
            conn.execute(text(f'PRAGMA user_version = {version}'))
            logger.info(f"本地存储 schema 已升级到版本 {version}")

    def schema_version(self):
        with self._connect() as conn:
            return conn.execute(text('PRAGMA user_version')).scalar()

    @contextmanager
    def _connect(self):
        """一个事务；数据库错误转换为 LocalStoreError / StorageUnavailable"""
        engine = self._get_engine()
        try:
            with engine.begin() as conn:
                yield conn
        except OperationalError as e:
            raise StorageUnavailable(f'Local store unavailable: {e}') from e
        except SQLAlchemyError as e:
            raise LocalStoreError(f'Local store operation failed: {e}') from e

    def close(self):
        if self._engine is not None:
            self._engine.dispose()

    @staticmethod
    def _put(conn, table, row, key_columns):
        # upsert 保留已有行的 rowid，消息的插入顺序因此不受覆盖写影响
        stmt = sqlite_insert(table).values(**row)
        stmt = stmt.on_conflict_do_update(
            index_elements=key_columns,
            set_={name: stmt.excluded[name] for name in row if name not in key_columns},
        )
        conn.execute(stmt)

    # -- conversations ----------------------------------------------------

    def get_all_conversations(self):
        """按 last_message_at 倒序 (NULL 视为最旧，排在最后)，同值按 created_at 倒序"""
        table = conversations_table
        stmt = select(table).order_by(
            table.c.last_message_at.is_(None),
            table.c.last_message_at.desc(),
            table.c.created_at.desc(),
        )
        with self._connect() as conn:
            return [Conversation(**row._mapping) for row in conn.execute(stmt)]

    def get_conversation(self, conversation_id):
        stmt = select(conversations_table).where(conversations_table.c.id == conversation_id)
        with self._connect() as conn:
            row = conn.execute(stmt).first()
        return Conversation(**row._mapping) if row else None

    def create_conversation(self, conversation):
        with self._connect() as conn:
            self._put(conn, conversations_table, as_row(conversation), ['id'])
        return conversation

    def update_conversation(self, conversation_id, updates):
        """合并字段并写回；调用方未提供 updated_at 时自动盖章。会话不存在时返回 None"""
        with self._connect() as conn:
            row = conn.execute(
                select(conversations_table).where(conversations_table.c.id == conversation_id)
            ).first()
            if row is None:
                return None
            changes = dict(updates)
            if changes.get('updated_at') is None:
                changes['updated_at'] = utcnow()
            updated = Conversation(**row._mapping).copy(**changes)
            conn.execute(
                update(conversations_table)
                .where(conversations_table.c.id == conversation_id)
                .values(**as_row(updated))
            )
        return updated

    def delete_conversation(self, conversation_id):
        """在一个事务内删除会话、其全部消息以及项目关联"""
        with self._connect() as conn:
            conn.execute(delete(conversations_table).where(conversations_table.c.id == conversation_id))
            conn.execute(delete(messages_table).where(messages_table.c.conversation_id == conversation_id))
            conn.execute(
                delete(conversation_projects_table)
                .where(conversation_projects_table.c.conversation_id == conversation_id)
            )

    # -- messages ---------------------------------------------------------

    @staticmethod
    def _message_from_row(row):
        message = Message(**row._mapping)
        message.content = decompress(message.content)
        return message

    def get_messages_by_conversation(self, conversation_id):
        """会话内全部消息，内容已解压，按 created_at 升序，同一时间按插入顺序"""
        stmt = (
            select(messages_table)
            .where(messages_table.c.conversation_id == conversation_id)
            .order_by(messages_table.c.created_at.asc(), literal_column('messages.rowid').asc())
        )
        with self._connect() as conn:
            return [self._message_from_row(row) for row in conn.execute(stmt)]

    def get_message(self, message_id):
        stmt = select(messages_table).where(messages_table.c.id == message_id)
        with self._connect() as conn:
            row = conn.execute(stmt).first()
        return self._message_from_row(row) if row else None

    def create_message(self, message):
        """写入消息 (内容按阈值压缩) 并把父会话的 last_message_at / updated_at 设为消息时间"""
        row = as_row(message)
        row['content'] = compress(message.content)
        with self._connect() as conn:
            self._put(conn, messages_table, row, ['id'])
            conn.execute(
                update(conversations_table)
                .where(conversations_table.c.id == message.conversation_id)
                .values(last_message_at=message.created_at, updated_at=message.created_at)
            )
        return message

    def update_message(self, message_id, updates):
        with self._connect() as conn:
            row = conn.execute(select(messages_table).where(messages_table.c.id == message_id)).first()
            if row is None:
                return None
            updated = self._message_from_row(row).copy(**updates)
            stored = as_row(updated)
            stored['content'] = compress(updated.content)
            conn.execute(update(messages_table).where(messages_table.c.id == message_id).values(**stored))
        return updated

    def delete_message(self, message_id):
        with self._connect() as conn:
            conn.execute(delete(messages_table).where(messages_table.c.id == message_id))

    # -- projects ---------------------------------------------------------

    def get_all_projects(self):
        stmt = select(projects_table).order_by(projects_table.c.updated_at.desc())
        with self._connect() as conn:
            return [Project(**row._mapping) for row in conn.execute(stmt)]

    def get_project(self, project_id):
        with self._connect() as conn:
            row = conn.execute(select(projects_table).where(projects_table.c.id == project_id)).first()
        return Project(**row._mapping) if row else None

    def create_project(self, project):
        with self._connect() as conn:
            self._put(conn, projects_table, as_row(project), ['id'])
        return project

    def update_project(self, project_id, updates):
        with self._connect() as conn:
            row = conn.execute(select(projects_table).where(projects_table.c.id == project_id)).first()
            if row is None:
                return None
            changes = dict(updates)
            if changes.get('updated_at') is None:
                changes['updated_at'] = utcnow()
            updated = Project(**row._mapping).copy(**changes)
            conn.execute(update(projects_table).where(projects_table.c.id == project_id).values(**as_row(updated)))
        return updated

    def delete_project(self, project_id):
        with self._connect() as conn:
            conn.execute(delete(projects_table).where(projects_table.c.id == project_id))
            conn.execute(
                delete(conversation_projects_table)
                .where(conversation_projects_table.c.project_id == project_id)
            )

    # -- conversation <-> project links ------------------------------------

    def add_conversation_to_project(self, conversation_id, project_id):
        stmt = sqlite_insert(conversation_projects_table).values(
            conversation_id=conversation_id, project_id=project_id
        ).on_conflict_do_nothing()
        with self._connect() as conn:
            conn.execute(stmt)

    def remove_conversation_from_project(self, conversation_id, project_id):
        table = conversation_projects_table
        with self._connect() as conn:
            conn.execute(
                delete(table)
                .where(table.c.conversation_id == conversation_id)
                .where(table.c.project_id == project_id)
            )

    def get_projects_for_conversation(self, conversation_id):
        table = conversation_projects_table
        stmt = select(table.c.project_id).where(table.c.conversation_id == conversation_id)
        with self._connect() as conn:
            return list(conn.execute(stmt).scalars())

    def get_conversations_for_project(self, project_id):
        table = conversation_projects_table
        stmt = select(table.c.conversation_id).where(table.c.project_id == project_id)
        with self._connect() as conn:
            return list(conn.execute(stmt).scalars())

    # -- bulk -------------------------------------------------------------

    def hydrate(self):
        """冷启动读取 (conversations, projects)；存储不可用或出错时返回两个空列表"""
        try:
            return self.get_all_conversations(), self.get_all_projects()
        except LocalStoreError as e:
            logger.warning(f"本地存储读取失败，以空状态启动: {e}")
            return [], []
