from functools import wraps

from flask_jwt_extended import get_jwt, get_jwt_identity, verify_jwt_in_request

from chatapp.exceptions import Unauthorized


def get_session():
    """
    返回当前请求的会话信息，未登录或令牌无效时返回 None。

    会话为 {'user_id': <identity>, 'claims': <jwt claims>}。
    """
    try:
        verify_jwt_in_request(optional=True)
    except Exception:
        # 令牌格式错误或已过期，按未登录处理
        return None
    identity = get_jwt_identity()
    if identity is None:
        return None
    return {'user_id': identity, 'claims': get_jwt()}


def session_required(fn):
    """
    装饰器：要求请求携带有效会话，否则抛出 Unauthorized (401)。
    """
    @wraps(fn)
    def wrapper(*args, **kwargs):
        if get_session() is None:
            raise Unauthorized('Unauthorized')
        return fn(*args, **kwargs)

    return wrapper
