"""
错误处理模块

提供全站统一的 JSON 错误响应，包括：
- ChatAppError 及其子类 (NotFound / InvalidState / BadRequest / Unauthorized / UpstreamUnavailable) 转换为对应状态码
- 数据库异常回滚会话并返回 500
- 400/401/403/404/405/429/500 的通用错误响应
- 错误计数统计

所有错误响应格式: {"error": <code>, "message": <text>, "status": <int>}

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""

import threading
import traceback
from collections import defaultdict
from datetime import datetime

from flask import current_app, jsonify, request
from sqlalchemy.exc import SQLAlchemyError

from chatapp.exceptions import ChatAppError

_error_lock = threading.Lock()
_error_stats = {
    'total_count': 0,
    'by_code': defaultdict(int),
    'recent_errors': [],
}

MAX_RECENT_ERRORS = 100

ERROR_MESSAGES = {
    400: "请求无效",
    401: "未授权访问",
    403: "禁止访问",
    404: "请求的资源不存在",
    405: "不支持的请求方法",
    429: "请求过于频繁",
}


class ErrorHandler:
    """错误处理器"""

    @staticmethod
    def register_handlers(app):
        """注册所有错误处理器"""

        @app.errorhandler(ChatAppError)
        def handle_chat_error(e):
            ErrorHandler._record_error(e.status_code, e.message)
            if e.status_code >= 500:
                current_app.logger.error(f"{request.method} {request.path} 失败: {e.message}")
            return jsonify(e.to_dict()), e.status_code

        @app.errorhandler(SQLAlchemyError)
        def handle_database_error(e):
            from chatapp import db
            db.session.rollback()
            current_app.logger.error(f"数据库错误: {request.path} - {e}\n{traceback.format_exc()}")
            ErrorHandler._record_error(500, str(e))
            return jsonify({
                'error': 'server_error',
                'message': '服务器内部错误，请稍后再试',
                'status': 500
            }), 500

        @app.errorhandler(500)
        def handle_server_error(e):
            current_app.logger.error(f"服务器错误: {request.path} - {e}\n{traceback.format_exc()}")
            ErrorHandler._record_error(500, str(e))
            return jsonify({
                'error': 'server_error',
                'message': '服务器内部错误，请稍后再试',
                'status': 500
            }), 500

        for code in ERROR_MESSAGES:
            app.register_error_handler(code, ErrorHandler._create_error_handler(code))

    @staticmethod
    def _create_error_handler(status_code):
        """创建特定状态码的错误处理器"""
        def handler(e):
            error_msg = ERROR_MESSAGES.get(status_code, "请求出错")
            ErrorHandler._record_error(status_code, error_msg)
            error_code = 'not_found' if status_code == 404 else f'error_{status_code}'
            return jsonify({
                'error': error_code,
                'message': error_msg,
                'status': status_code
            }), status_code

        return handler

    @staticmethod
    def _record_error(status_code, error_msg):
        with _error_lock:
            _error_stats['total_count'] += 1
            _error_stats['by_code'][status_code] += 1
            _error_stats['recent_errors'].append({
                'timestamp': datetime.now().isoformat(),
                'status_code': status_code,
                'path': request.path,
                'method': request.method,
                'message': error_msg
            })
            if len(_error_stats['recent_errors']) > MAX_RECENT_ERRORS:
                _error_stats['recent_errors'] = _error_stats['recent_errors'][-MAX_RECENT_ERRORS:]

    @staticmethod
    def get_error_stats():
        """获取错误统计信息"""
        with _error_lock:
            return {
                'total_count': _error_stats['total_count'],
                'by_code': dict(_error_stats['by_code']),
                'recent_errors': _error_stats['recent_errors'][-20:],
            }
