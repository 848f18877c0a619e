import os
from dotenv import load_dotenv

# 加载.env文件
load_dotenv()

# API相关配置
API_HOST = os.getenv('API_HOST', '0.0.0.0')
API_PORT = int(os.getenv('API_PORT', 5001))
API_DEBUG = os.getenv('API_DEBUG', 'False').lower() == 'true'

# 安全相关配置
SECRET_KEY = os.getenv('SECRET_KEY', 'dev_secret_key_12345')
JWT_SECRET_KEY = os.getenv('JWT_SECRET_KEY', 'jwt_secret_key_67890')
JWT_ACCESS_TOKEN_EXPIRES = 60 * 60 * 24 * 30  # 30天
JWT_TOKEN_LOCATION = ['headers']
JWT_HEADER_NAME = 'Authorization'
JWT_HEADER_TYPE = 'Bearer'

# 数据库配置
DB_TYPE = os.getenv('DB_TYPE', 'sqlite')
DB_USER = os.getenv('DB_USER')
DB_PASSWORD = os.getenv('DB_PASSWORD')
DB_HOST = os.getenv('DB_HOST', 'localhost')
DB_PORT = os.getenv('DB_PORT', '5432')
DB_NAME = os.getenv('DB_NAME')
DATABASE_URL = os.getenv('DATABASE_URL')
SQLALCHEMY_TRACK_MODIFICATIONS = False
SQLALCHEMY_ECHO = False

# Redis配置: 未设置时缓存层降级为 NullCache (fail-open)
REDIS_URL = os.getenv('REDIS_URL')
CACHE_KEY_PREFIX = os.getenv('CACHE_KEY_PREFIX', 'mrgbchat:')

# LLM Provider配置
LLM_PROVIDER = os.getenv('LLM_PROVIDER', 'groq').lower()

OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
OPENAI_BASE_URL = os.getenv('OPENAI_BASE_URL')

GROQ_API_KEY = os.getenv('GROQ_API_KEY')
GROQ_BASE_URL = os.getenv('GROQ_BASE_URL', 'https://api.groq.com/openai/v1')

GROK_API_KEY = os.getenv('GROK_API_KEY')
GROK_BASE_URL = os.getenv('GROK_BASE_URL', 'https://api.x.ai/v1')

AI_TITLE_MODEL = os.getenv('AI_TITLE_MODEL', 'openai/gpt-oss-20b')
AI_SUGGESTIONS_MODEL = os.getenv('AI_SUGGESTIONS_MODEL', AI_TITLE_MODEL)
AI_REQUEST_TIMEOUT = float(os.getenv('AI_REQUEST_TIMEOUT', 20))

# CORS配置
CORS_ORIGINS = [
    origin.strip()
    for origin in os.getenv('CORS_ORIGINS', 'http://localhost:3000,http://localhost:5173').split(',')
    if origin.strip()
]

# 日志目录
LOG_DIR = os.getenv('LOG_DIR', os.path.join(os.path.abspath(os.path.dirname(__file__)), '..', 'logs'))

# --- 客户端 (本地缓存 + 同步引擎) 配置 ---
CHAT_API_BASE_URL = os.getenv('CHAT_API_BASE_URL', f'http://localhost:{API_PORT}')
CHAT_API_TOKEN = os.getenv('CHAT_API_TOKEN')
LOCAL_STORE_PATH = os.getenv(
    'LOCAL_STORE_PATH',
    os.path.join(os.path.expanduser('~'), '.mrgb-chat', 'local-store.sqlite3'),
)
CACHE_VERSION_POLL_INTERVAL = float(os.getenv('CACHE_VERSION_POLL_INTERVAL', 5 * 60))
CLIENT_REQUEST_TIMEOUT = float(os.getenv('CLIENT_REQUEST_TIMEOUT', 15))


# 获取数据库URI
def get_database_uri():
    """构建数据库URI"""
    if DATABASE_URL:
        return DATABASE_URL
    if DB_TYPE == 'postgresql':
        return f'postgresql://{DB_USER}:{DB_PASSWORD}@{DB_HOST}:{DB_PORT}/{DB_NAME}'
    # 默认使用SQLite
    return 'sqlite:///' + os.path.join(os.path.abspath(os.path.dirname(__file__)), 'chat.db')


def get_cache_type():
    """根据是否配置 Redis 选择缓存后端类型"""
    return 'RedisCache' if REDIS_URL else 'NullCache'
