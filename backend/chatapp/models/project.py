# backend/chatapp/models/project.py
"""
定义项目模型 (Project) 以及会话-项目多对多关联表 (ConversationProject)。
关联表以 (conversation_id, project_id) 为复合主键，两侧各自建立索引；删除任一端时级联删除关联。

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
from chatapp import db
from datetime import datetime

from chatapp.utils.timestamps import to_iso


class Project(db.Model):
    __tablename__ = 'projects'

    id = db.Column(db.String(36), primary_key=True)
    name = db.Column(db.String(200), nullable=False, index=True)
    created_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)
    updated_at = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    conversation_links = db.relationship(
        'ConversationProject', backref='project',
        cascade='all, delete-orphan', passive_deletes=True,
    )

    def to_dict(self, conversation_count=None):
        data = {
            'id': self.id,
            'name': self.name,
            'createdAt': to_iso(self.created_at),
            'updatedAt': to_iso(self.updated_at),
        }
        if conversation_count is not None:
            data['conversationCount'] = conversation_count
        return data

    def __repr__(self):
        return f'<Project {self.id} - {self.name}>'


class ConversationProject(db.Model):
    __tablename__ = 'conversation_projects'

    conversation_id = db.Column(
        db.String(36), db.ForeignKey('conversations.id', ondelete='CASCADE'),
        primary_key=True, index=True,
    )
    project_id = db.Column(
        db.String(36), db.ForeignKey('projects.id', ondelete='CASCADE'),
        primary_key=True, index=True,
    )

    def to_dict(self):
        return {'conversationId': self.conversation_id, 'projectId': self.project_id}
