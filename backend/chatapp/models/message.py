# backend/chatapp/models/message.py
"""
定义消息模型 (Message)。
存储对话中的单条消息：角色 (user/assistant/system/tool)、内容、客户端ID以及 meta_json
(序列化的附带信息，如 token 用量、费用、模型ID)。同一对话内按 created_at 升序排列，
created_at 相同时按写入顺序 (seq，服务端写入时分配的全局递增序号) 排列。

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
from chatapp import db
from datetime import datetime

from chatapp.utils.timestamps import to_iso

MESSAGE_ROLES = ('user', 'assistant', 'system', 'tool')


class Message(db.Model):
    __tablename__ = 'messages'
    __table_args__ = (
        db.Index('ix_messages_conversation_created', 'conversation_id', 'created_at', 'seq'),
    )

    id = db.Column(db.String(36), primary_key=True)
    conversation_id = db.Column(
        db.String(36), db.ForeignKey('conversations.id', ondelete='CASCADE'),
        nullable=False, index=True,
    )
    role = db.Column(db.String(20), nullable=False)  # 'user', 'assistant', 'system', 'tool'
    content = db.Column(db.Text, nullable=False)
    client_id = db.Column(db.String(64), nullable=True)
    meta_json = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    seq = db.Column(db.Integer, nullable=False, default=0)  # 写入顺序

    def to_dict(self):
        return {
            'id': self.id,
            'conversationId': self.conversation_id,
            'role': self.role,
            'content': self.content,
            'clientId': self.client_id,
            'metaJson': self.meta_json,
            'createdAt': to_iso(self.created_at),
        }

    def __repr__(self):
        return f'<Message {self.id} in Conversation {self.conversation_id} - Role: {self.role}>'
