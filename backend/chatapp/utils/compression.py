"""
消息内容压缩

大于阈值 (500 字符) 的消息内容以 zlib 压缩后 base64 编码存储，并加上控制字符前缀
COMPRESSION_MARKER 作为标记；没有前缀的内容即为明文，同一列中可以混合存放两种格式。
解压永远不会抛异常：解码失败时原样返回输入。

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
import base64
import binascii
import logging
import zlib

logger = logging.getLogger(__name__)

COMPRESSION_MARKER = '\x00LZ\x00'
COMPRESSION_THRESHOLD = 500


def compress(content):
    """Compress ``content`` if it is at least COMPRESSION_THRESHOLD characters long."""
    if not content or len(content) < COMPRESSION_THRESHOLD:
        return content
    packed = zlib.compress(content.encode('utf-8'), 9)
    return COMPRESSION_MARKER + base64.b64encode(packed).decode('ascii')


def decompress(content):
    """Inverse of :func:`compress`. Untagged or undecodable input is returned unchanged."""
    if not is_compressed(content):
        return content
    try:
        packed = base64.b64decode(content[len(COMPRESSION_MARKER):], validate=True)
        return zlib.decompress(packed).decode('utf-8')
    except (binascii.Error, zlib.error, UnicodeDecodeError, ValueError) as e:
        logger.warning(f"消息内容解压失败，按明文处理: {e}")
        return content


def is_compressed(content):
    return isinstance(content, str) and content.startswith(COMPRESSION_MARKER)


def compression_ratio(content):
    """stored length / original length; 1.0 for content below the threshold."""
    if not content:
        return 1.0
    return len(compress(content)) / len(content)
