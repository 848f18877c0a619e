"""时间戳序列化：服务端与客户端统一使用 naive UTC datetime，线上格式为带 'Z' 的 ISO 8601 (微秒精度)。"""
from datetime import datetime, timezone


def utcnow():
    return datetime.utcnow()


def to_iso(value):
    if value is None:
        return None
    return value.isoformat(timespec='microseconds') + 'Z'


def parse_iso(value):
    """解析 ISO 8601 字符串为 naive UTC datetime；None/空串返回 None，格式错误抛 ValueError"""
    if value is None or value == '':
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        text = str(value).strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        parsed = datetime.fromisoformat(text)
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed
