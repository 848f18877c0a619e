"""
跨设备同步使用的缓存版本号端点。

GET /api/cache-version 返回 {"version": <int>}，客户端轮询该值，发生任何变化即触发全量重新同步。
缓存未启用时恒为 0。

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
from flask import Blueprint, jsonify

from chatapp.utils.auth_utils import session_required
from chatapp.utils.cache_manager import get_cache_version

cache_version_bp = Blueprint('cache_version_bp', __name__)


@cache_version_bp.route('', methods=['GET'])
@session_required
def cache_version():
    response = jsonify({'version': get_cache_version()})
    response.headers['Cache-Control'] = 'no-cache, no-store, must-revalidate'
    return response
