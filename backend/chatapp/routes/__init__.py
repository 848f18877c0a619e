"""蓝图共用的请求参数解析辅助函数"""
from flask import request

from chatapp.exceptions import BadRequest


def parse_bool_arg(name, default=None):
    value = request.args.get(name)
    if value is None or value == '':
        return default
    lowered = value.lower()
    if lowered in ('true', '1', 'yes'):
        return True
    if lowered in ('false', '0', 'no'):
        return False
    raise BadRequest(f"Invalid boolean for {name}: {value!r}")


def parse_int_arg(name, default=None):
    value = request.args.get(name)
    if value is None or value == '':
        return default
    try:
        return int(value)
    except ValueError:
        raise BadRequest(f"Invalid integer for {name}: {value!r}")


def get_json_body():
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise BadRequest('Request body must be a JSON object')
    return data
