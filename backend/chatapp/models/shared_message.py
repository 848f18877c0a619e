# backend/chatapp/models/shared_message.py
"""
定义分享的单条回答 (SharedMessage)。
保存分享时的用户输入与模型回答快照，使用 8 位短ID作为公开链接。

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
from chatapp import db
from datetime import datetime

from chatapp.utils.timestamps import to_iso


class SharedMessage(db.Model):
    __tablename__ = 'shared_messages'

    id = db.Column(db.String(8), primary_key=True)
    original_message_id = db.Column(db.String(36), nullable=True)
    conversation_id = db.Column(db.String(36), nullable=True)
    user_input = db.Column(db.Text, nullable=False)
    response = db.Column(db.Text, nullable=False)
    model_id = db.Column(db.String(100), nullable=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow, index=True)

    def to_dict(self):
        return {
            'id': self.id,
            'originalMessageId': self.original_message_id,
            'conversationId': self.conversation_id,
            'userInput': self.user_input,
            'response': self.response,
            'modelId': self.model_id,
            'createdAt': to_iso(self.created_at),
        }

    def __repr__(self):
        return f'<SharedMessage {self.id}>'
