"""
AI 辅助端点：会话标题生成与追问建议。

主要功能:
- POST /api/generate-title {userMessage, conversationId}: 生成标题并持久化 (revision 递增、失效标题/分享缓存、版本号加一)；
  生成失败时返回默认标题且不写库
- POST /api/suggestions {userMessage, assistantMessage}: 返回最多 5 条去重后的追问建议，失败时返回 []

依赖: chatapp.services.ai_text, chatapp.services.record_store
使用 Flask 蓝图: ai_bp (前缀 /api)

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
import logging

from flask import Blueprint, jsonify

from chatapp.exceptions import BadRequest, NotFound
from chatapp.routes import get_json_body
from chatapp.services import ai_text, record_store
from chatapp.utils.auth_utils import session_required

ai_bp = Blueprint('ai_bp', __name__)

logger = logging.getLogger(__name__)


@ai_bp.route('/generate-title', methods=['POST'])
@session_required
def generate_title():
    data = get_json_body()
    user_message = data.get('userMessage')
    conversation_id = data.get('conversationId')
    if not user_message or not conversation_id:
        raise BadRequest('Missing userMessage or conversationId')

    title = ai_text.generate_title(user_message)
    if title != ai_text.FALLBACK_TITLE:
        try:
            record_store.set_generated_title(conversation_id, title)
        except NotFound:
            # 会话还未同步到服务端，本地副本仍会保存标题
            logger.warning(f"生成标题时会话 {conversation_id} 不存在，跳过持久化")

    return jsonify({'title': title, 'conversationId': conversation_id})


@ai_bp.route('/suggestions', methods=['POST'])
@session_required
def suggestions():
    data = get_json_body()
    user_message = data.get('userMessage')
    assistant_message = data.get('assistantMessage')
    if not user_message or not assistant_message:
        raise BadRequest('Missing userMessage or assistantMessage')

    response = jsonify({'suggestions': ai_text.generate_followups(user_message, assistant_message)})
    response.headers['Cache-Control'] = 'no-store'
    return response
