"""
缓存管理模块

提供基于Redis的服务端缓存层 (Flask-Caching)，位于关系型存储之前，包括：
- 语义化缓存键：会话标题列表、会话首条消息预览、项目列表、项目元数据、分享列表
- 每类缓存独立的 TTL
- 读穿透 (read-through)：先读缓存，未命中则回源并回填
- 全局缓存版本号 (cache version)：唯一需要原子自增的跨请求共享值

缓存是可选依赖：未配置或 Redis 不可达时，所有操作降级为直连数据库 (fail-open)。
通过 CacheBackend 策略类实现，NullCacheBackend 代表"缓存已禁用"，调用方无需分支判断。

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""

import logging

from flask import current_app, has_app_context
from flask_caching import Cache

logger = logging.getLogger(__name__)

# 创建Cache实例，延迟初始化
cache = Cache()

EXTENSION_KEY = 'chat_cache_backend'

# 缓存过期时间(秒)
TTL = {
    'CONVERSATION_TITLES': 120,  # 侧边栏标题列表 2分钟
    'MESSAGE_PREVIEW': 300,      # 首条消息对 5分钟
    'PROJECT_LIST': 300,         # 项目列表 5分钟
    'PROJECT_METADATA': 300,     # 项目-会话映射 5分钟
    'SHARED_ITEMS': 120,         # 分享列表 2分钟
}

CACHE_VERSION_KEY = 'cache:version'


def conversation_titles_key():
    return 'conv:titles'


def message_preview_key(conversation_id):
    return f'conv:{conversation_id}:preview'


def project_list_key():
    return 'project:list'


def project_metadata_key():
    return 'project:metadata'


def shared_items_key():
    return 'shared:list'


class CacheBackend:
    """Minimal cache capability used by the rest of the server.

    Implementations must never raise: a broken backend behaves like a miss.
    """

    enabled = True

    def get(self, key):
        raise NotImplementedError

    def set(self, key, value, ttl=None):
        raise NotImplementedError

    def delete(self, *keys):
        raise NotImplementedError

    def incr(self, key):
        raise NotImplementedError


class NullCacheBackend(CacheBackend):
    """Caching disabled: every read misses, writes are dropped, incr is a no-op."""

    enabled = False

    def get(self, key):
        return None

    def set(self, key, value, ttl=None):
        return False

    def delete(self, *keys):
        return 0

    def incr(self, key):
        return 0


class FlaskCacheBackend(CacheBackend):
    """CacheBackend over a Flask-Caching ``Cache`` (RedisCache in production)."""

    def __init__(self, flask_cache):
        self._cache = flask_cache

    def get(self, key):
        try:
            return self._cache.get(key)
        except Exception as e:
            logger.warning(f"Redis get error ({key}): {e}")
            return None

    def set(self, key, value, ttl=None):
        try:
            return bool(self._cache.set(key, value, timeout=ttl))
        except Exception as e:
            logger.warning(f"Redis set error ({key}): {e}")
            return False

    def delete(self, *keys):
        if not keys:
            return 0
        try:
            self._cache.delete_many(*keys)
            return len(keys)
        except Exception as e:
            logger.warning(f"Redis delete error ({', '.join(keys)}): {e}")
            return 0

    def incr(self, key):
        # cachelib 的 RedisCache.inc 直接使用 INCR，是原子操作
        try:
            value = self._cache.cache.inc(key, delta=1)
            return int(value) if value is not None else 0
        except Exception as e:
            logger.warning(f"Redis incr error ({key}): {e}")
            return 0


class CacheStats:
    """缓存命中统计"""

    stats = {
        'hits': 0,
        'misses': 0,
        'invalidations': 0,
        'version_bumps': 0,
    }

    @staticmethod
    def record(name, count=1):
        CacheStats.stats[name] = CacheStats.stats.get(name, 0) + count

    @staticmethod
    def get_stats():
        total = CacheStats.stats['hits'] + CacheStats.stats['misses']
        return {
            **CacheStats.stats,
            'hit_ratio': CacheStats.stats['hits'] / total if total > 0 else 0,
            'enabled': get_backend().enabled,
        }

    @staticmethod
    def reset():
        for name in CacheStats.stats:
            CacheStats.stats[name] = 0


def init_app(app):
    """初始化缓存系统"""
    cache_type = app.config.get('CACHE_TYPE') or 'NullCache'

    if cache_type == 'NullCache':
        app.extensions[EXTENSION_KEY] = NullCacheBackend()
        app.logger.warning("Redis 未配置，缓存已禁用，所有读取直连数据库")
        return

    cache_config = {
        'CACHE_TYPE': cache_type,
        'CACHE_DEFAULT_TIMEOUT': 300,
        'CACHE_KEY_PREFIX': app.config.get('CACHE_KEY_PREFIX', 'mrgbchat:'),
    }
    if cache_type == 'RedisCache':
        cache_config['CACHE_REDIS_URL'] = app.config.get('REDIS_URL')
        cache_config['CACHE_OPTIONS'] = {
            'socket_timeout': 5,
            'socket_connect_timeout': 5,
            'retry_on_timeout': True,
            'health_check_interval': 30,
        }

    cache.init_app(app, config=cache_config)
    app.extensions[EXTENSION_KEY] = FlaskCacheBackend(cache)
    app.logger.info(f"缓存系统已初始化，类型: {cache_type}")

    # 尝试连接Redis验证配置；失败不影响启动，后续调用会逐个降级
    with app.app_context():
        try:
            cache.set('cache_test', 'ok')
            if cache.get('cache_test') != 'ok':
                app.logger.warning("缓存连接测试失败，将以降级模式运行")
        except Exception as e:
            app.logger.error(f"缓存连接测试出现异常: {e}")


def get_backend():
    """返回当前应用的缓存后端；没有应用上下文时视为缓存禁用"""
    if not has_app_context():
        return NullCacheBackend()
    return current_app.extensions.get(EXTENSION_KEY) or NullCacheBackend()


def get_cached(key):
    value = get_backend().get(key)
    CacheStats.record('hits' if value is not None else 'misses')
    return value


def set_cached(key, value, ttl):
    return get_backend().set(key, value, ttl)


def read_through(key, ttl, loader):
    """先读缓存；未命中时调用 loader 回源并回填缓存"""
    cached = get_cached(key)
    if cached is not None:
        return cached
    value = loader()
    if value is not None:
        set_cached(key, value, ttl)
    return value


def invalidate_keys(keys):
    keys = [key for key in keys if key]
    if not keys:
        return 0
    count = get_backend().delete(*keys)
    CacheStats.record('invalidations', count)
    return count


def get_cache_version():
    """当前全局缓存版本号；缓存禁用或不可达时返回 0"""
    value = get_backend().get(CACHE_VERSION_KEY)
    try:
        return int(value) if value is not None else 0
    except (TypeError, ValueError):
        logger.warning(f"缓存版本号格式异常: {value!r}")
        return 0


def increment_cache_version():
    """原子自增全局缓存版本号并返回新值"""
    version = get_backend().incr(CACHE_VERSION_KEY)
    CacheStats.record('version_bumps')
    return version
