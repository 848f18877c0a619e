"""
此模块定义了与项目 (Project) 相关的 API 端点。

主要功能:
- 项目列表 (含会话计数，缓存) 与项目元数据 (项目 + 会话到项目的映射，缓存)。
- 项目的创建、读取、重命名、删除 (级联删除会话关联)。
- 项目下的会话列表，以及向项目添加/移除会话。

依赖: chatapp.services.record_store
使用 Flask 蓝图: projects_bp (前缀 /api/projects)

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
from flask import Blueprint, jsonify, request

from chatapp.exceptions import BadRequest
from chatapp.routes import get_json_body
from chatapp.services import record_store
from chatapp.utils.auth_utils import session_required

projects_bp = Blueprint('projects_bp', __name__)


@projects_bp.route('', methods=['GET'])
@session_required
def list_projects():
    return jsonify(record_store.list_projects())


@projects_bp.route('', methods=['POST'])
@session_required
def create_project():
    project, created = record_store.create_project(get_json_body())
    return jsonify(project.to_dict()), 201 if created else 200


@projects_bp.route('', methods=['DELETE'])
@session_required
def delete_project_by_query():
    project_id = request.args.get('id')
    if not project_id:
        raise BadRequest('Project ID required')
    record_store.delete_project(project_id)
    return '', 204


@projects_bp.route('/metadata', methods=['GET'])
@session_required
def project_metadata():
    return jsonify(record_store.get_project_metadata())


@projects_bp.route('/<project_id>', methods=['GET'])
@session_required
def get_project(project_id):
    return jsonify(record_store.get_project(project_id).to_dict())


@projects_bp.route('/<project_id>', methods=['PATCH'])
@session_required
def update_project(project_id):
    project = record_store.update_project(project_id, get_json_body())
    return jsonify(project.to_dict())


@projects_bp.route('/<project_id>', methods=['DELETE'])
@session_required
def delete_project(project_id):
    record_store.delete_project(project_id)
    return '', 204


@projects_bp.route('/<project_id>/conversations', methods=['GET'])
@session_required
def list_project_conversations(project_id):
    return jsonify(record_store.list_project_conversations(project_id))


@projects_bp.route('/<project_id>/conversations', methods=['POST'])
@session_required
def add_conversation(project_id):
    conversation_id = get_json_body().get('conversationId')
    added = record_store.add_conversation_to_project(project_id, conversation_id)
    return jsonify({'success': True, 'added': added})


@projects_bp.route('/<project_id>/conversations/<conversation_id>', methods=['DELETE'])
@session_required
def remove_conversation(project_id, conversation_id):
    record_store.remove_conversation_from_project(project_id, conversation_id)
    return '', 204
