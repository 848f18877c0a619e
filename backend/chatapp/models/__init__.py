"""
模型包初始化文件。

导入所有模型类，使其可以通过 chatapp.models.ModelName 的方式被访问，
并为 SQLite 连接开启外键约束 (ON DELETE CASCADE 依赖它)。

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
import sqlite3

from sqlalchemy import event
from sqlalchemy.engine import Engine

from .conversation import Conversation, DEFAULT_TITLE
from .message import Message, MESSAGE_ROLES
from .project import Project, ConversationProject
from .shared_message import SharedMessage


@event.listens_for(Engine, "connect")
def _enable_sqlite_foreign_keys(dbapi_connection, connection_record):
    if isinstance(dbapi_connection, sqlite3.Connection):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()


__all__ = [
    'Conversation',
    'DEFAULT_TITLE',
    'Message',
    'MESSAGE_ROLES',
    'Project',
    'ConversationProject',
    'SharedMessage',
]
