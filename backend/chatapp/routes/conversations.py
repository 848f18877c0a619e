"""
此模块定义了与会话 (Conversation) 及其消息 (Message) 相关的 API 端点。

主要功能:
- 会话列表 (游标分页、收藏/归档过滤、完整数据或标题投影、sinceRevision 增量同步)。
- 会话的幂等创建、读取、部分更新 (标题/收藏/归档/公开/模型)、删除 (级联消息与项目关联)。
- 消息分页读取 (首屏预览缓存) 与幂等创建。
- 从 assistant 消息处分叉出新会话 (branch)。
- 公开会话的只读分享视图 (无需登录)。
- 查询会话所属项目。

依赖: chatapp.services.record_store
使用 Flask 蓝图: conversations_bp (前缀 /api/conversations)

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
from flask import Blueprint, jsonify, request

from chatapp.routes import get_json_body, parse_bool_arg, parse_int_arg
from chatapp.services import record_store
from chatapp.utils.auth_utils import session_required

conversations_bp = Blueprint('conversations_bp', __name__)


@conversations_bp.route('', methods=['GET'])
@session_required
def list_conversations():
    result = record_store.list_conversations(
        cursor=request.args.get('cursor') or None,
        limit=parse_int_arg('limit'),
        starred=parse_bool_arg('starred'),
        archived=parse_bool_arg('archived', default=False),
        full=parse_bool_arg('full', default=False),
        since_revision=parse_int_arg('sinceRevision'),
    )
    return jsonify(result)


@conversations_bp.route('', methods=['POST'])
@session_required
def create_conversation():
    conversation, created = record_store.create_conversation(get_json_body())
    return jsonify(conversation.to_dict()), 201 if created else 200


@conversations_bp.route('/<conversation_id>', methods=['GET'])
@session_required
def get_conversation(conversation_id):
    return jsonify(record_store.get_conversation(conversation_id).to_dict())


@conversations_bp.route('/<conversation_id>', methods=['PATCH'])
@session_required
def update_conversation(conversation_id):
    conversation = record_store.update_conversation(conversation_id, get_json_body())
    return jsonify(conversation.to_dict())


@conversations_bp.route('/<conversation_id>', methods=['DELETE'])
@session_required
def delete_conversation(conversation_id):
    record_store.delete_conversation(conversation_id)
    return '', 204


@conversations_bp.route('/<conversation_id>/messages', methods=['GET'])
@session_required
def list_messages(conversation_id):
    result = record_store.list_messages(
        conversation_id,
        cursor=request.args.get('cursor') or None,
        preview=parse_bool_arg('preview', default=False),
    )
    return jsonify(result)


@conversations_bp.route('/<conversation_id>/messages', methods=['POST'])
@session_required
def create_message(conversation_id):
    message, created = record_store.create_message(conversation_id, get_json_body())
    return jsonify(message.to_dict()), 201 if created else 200


@conversations_bp.route('/<conversation_id>/branch', methods=['POST'])
@session_required
def branch_conversation(conversation_id):
    data = get_json_body()
    result = record_store.branch_conversation(
        conversation_id,
        data.get('assistantMessageId'),
        new_conversation_id=data.get('newConversationId'),
        message_id_map=data.get('messageIdMap'),
    )
    return jsonify(result), 201


@conversations_bp.route('/<conversation_id>/share', methods=['GET'])
def get_shared_conversation(conversation_id):
    """公开分享的会话 (无需登录)"""
    return jsonify(record_store.get_public_conversation(conversation_id))


@conversations_bp.route('/<conversation_id>/projects', methods=['GET'])
@session_required
def list_conversation_projects(conversation_id):
    return jsonify(record_store.list_conversation_projects(conversation_id))
