"""
错误分类 (error taxonomy)。

服务端异常都继承自 ChatAppError，并携带 HTTP 状态码与错误码，由
chatapp.utils.error_handler 统一转换为 JSON 错误响应。
客户端本地存储异常 (LocalStoreError / StorageUnavailable) 不会出现在 HTTP 层。

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""


class ChatAppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    status_code = 500
    error_code = 'server_error'

    def __init__(self, message=None):
        self.message = message or self.__class__.__doc__ or self.error_code
        super().__init__(self.message)

    def to_dict(self):
        return {
            'error': self.error_code,
            'message': self.message,
            'status': self.status_code,
        }


class NotFound(ChatAppError):
    """Entity not found"""

    status_code = 404
    error_code = 'not_found'


class InvalidState(ChatAppError):
    """Operation is not valid for the entity's current state"""

    status_code = 400
    error_code = 'invalid_state'


class BadRequest(ChatAppError):
    """Request is missing required fields"""

    status_code = 400
    error_code = 'bad_request'


class Unauthorized(ChatAppError):
    """Missing or invalid session"""

    status_code = 401
    error_code = 'unauthorized'


class UpstreamUnavailable(ChatAppError):
    """Upstream collaborator is unreachable"""

    status_code = 503
    error_code = 'upstream_unavailable'


class LocalStoreError(Exception):
    """Client-side persistent store failed."""


class StorageUnavailable(LocalStoreError):
    """No persistent client storage is available.

    Callers treat this as an empty result, never as fatal.
    """
