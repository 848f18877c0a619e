# backend/chatapp/models/conversation.py
"""
定义对话模型 (Conversation)。
服务端的权威记录：标题、收藏/归档/公开状态、分叉来源以及 revision (每次服务端写入单调递增)。
last_message_at 为冗余字段，用于在不关联消息表的情况下对会话列表排序。
删除会话时级联删除其消息与项目关联。

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
from chatapp import db
from datetime import datetime

from chatapp.utils.timestamps import to_iso

DEFAULT_TITLE = 'New conversation'


class Conversation(db.Model):
    __tablename__ = 'conversations'

    id = db.Column(db.String(36), primary_key=True)  # 客户端生成的 UUID
    title = db.Column(db.String(255), nullable=False, default=DEFAULT_TITLE)
    model_id = db.Column(db.String(100), nullable=True)
    starred = db.Column(db.Boolean, nullable=False, default=False, index=True)
    archived = db.Column(db.Boolean, nullable=False, default=False, index=True)
    is_public = db.Column(db.Boolean, nullable=False, default=False)
    revision = db.Column(db.Integer, nullable=False, default=1, index=True)
    forked_from_conversation_id = db.Column(db.String(36), nullable=True)
    forked_from_message_id = db.Column(db.String(36), nullable=True)
    forked_at = db.Column(db.DateTime, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    last_message_at = db.Column(db.DateTime, nullable=True, index=True)

    messages = db.relationship(
        'Message', backref='conversation', lazy='dynamic',
        cascade='all, delete-orphan', passive_deletes=True,
        order_by='Message.created_at',
    )
    project_links = db.relationship(
        'ConversationProject', backref='conversation',
        cascade='all, delete-orphan', passive_deletes=True,
    )

    def to_dict(self, full=True):
        if not full:
            # 侧边栏标题投影
            return {
                'id': self.id,
                'title': self.title,
                'lastMessageAt': to_iso(self.last_message_at),
            }
        return {
            'id': self.id,
            'title': self.title,
            'modelId': self.model_id,
            'starred': bool(self.starred),
            'archived': bool(self.archived),
            'isPublic': bool(self.is_public),
            'revision': self.revision,
            'forkedFromConversationId': self.forked_from_conversation_id,
            'forkedFromMessageId': self.forked_from_message_id,
            'forkedAt': to_iso(self.forked_at),
            'createdAt': to_iso(self.created_at),
            'updatedAt': to_iso(self.updated_at),
            'lastMessageAt': to_iso(self.last_message_at),
        }

    def __repr__(self):
        return f'<Conversation {self.id} - Title: {self.title}>'
