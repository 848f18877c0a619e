"""
此模块定义了分享单条回答 (SharedMessage) 的 API 端点。

主要功能:
- POST   /api/share          创建分享 (需登录)，返回短ID与公开链接
- DELETE /api/share?id=      删除分享 (需登录)
- GET    /api/share?id=      获取单条分享 (公开)
- GET    /api/share?list=true 分享列表：公开会话 + 分享的回答 + 计数 (需登录，缓存)

使用 Flask 蓝图: share_bp (前缀 /api/share)

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
from flask import Blueprint, jsonify, request

from chatapp.exceptions import Unauthorized
from chatapp.routes import get_json_body, parse_bool_arg
from chatapp.services import record_store
from chatapp.utils.auth_utils import get_session, session_required

share_bp = Blueprint('share_bp', __name__)


@share_bp.route('', methods=['POST'])
@session_required
def create_share():
    shared = record_store.create_shared_message(get_json_body())
    share_url = f"{request.host_url.rstrip('/')}/s/{shared.id}"
    return jsonify({'id': shared.id, 'url': share_url}), 201


@share_bp.route('', methods=['DELETE'])
@session_required
def delete_share():
    record_store.delete_shared_message(request.args.get('id'))
    return jsonify({'success': True})


@share_bp.route('', methods=['GET'])
def get_share():
    if parse_bool_arg('list', default=False):
        if get_session() is None:
            raise Unauthorized('Unauthorized')
        return jsonify(record_store.list_shared_items())
    return jsonify(record_store.get_shared_message(request.args.get('id')).to_dict())
