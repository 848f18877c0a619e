from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_cors import CORS
from flask_jwt_extended import JWTManager
import logging
import os

from .utils import cache_manager
from .utils.error_handler import ErrorHandler

from chatapp.config import (
    SECRET_KEY, SQLALCHEMY_TRACK_MODIFICATIONS, SQLALCHEMY_ECHO, JWT_SECRET_KEY,
    JWT_TOKEN_LOCATION, JWT_HEADER_NAME, JWT_HEADER_TYPE, JWT_ACCESS_TOKEN_EXPIRES,
    get_database_uri, get_cache_type,
    CORS_ORIGINS,
    REDIS_URL, CACHE_KEY_PREFIX,
    LOG_DIR,
)

# 初始化扩展
db = SQLAlchemy()
migrate = Migrate()
jwt = JWTManager()

LOG_FORMAT = '%(asctime)s [%(levelname)s] %(name)s: %(message)s'


class CacheLogFilter(logging.Filter):
    """过滤掉频繁的缓存操作日志"""

    cache_keywords = ["缓存命中", "缓存未命中", "缓存已设置", "缓存版本"]

    def filter(self, record):
        if record.levelno <= logging.INFO:
            message = record.getMessage()
            for keyword in self.cache_keywords:
                if keyword in message:
                    return False
        return True


def _configure_logging(app):
    app.logger.setLevel(logging.INFO)
    # app.logger 对应 'chatapp' logger，多次 create_app (测试) 时不重复添加处理器
    if getattr(app.logger, '_chatapp_configured', False):
        return
    formatter = logging.Formatter(LOG_FORMAT)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.addFilter(CacheLogFilter())
    app.logger.addHandler(console_handler)

    if not app.config.get('TESTING'):
        log_dir = app.config.get('LOG_DIR') or LOG_DIR
        os.makedirs(log_dir, exist_ok=True)
        file_handler = logging.FileHandler(os.path.join(log_dir, 'chatapp.log'))
        file_handler.setFormatter(formatter)
        file_handler.addFilter(CacheLogFilter())
        app.logger.addHandler(file_handler)

    logging.getLogger('chatapp.utils.cache_manager').addFilter(CacheLogFilter())
    app.logger._chatapp_configured = True


def create_app(config_overrides=None):
    app = Flask(__name__, instance_relative_config=False)

    app.config.from_mapping(
        SECRET_KEY=SECRET_KEY,
        SQLALCHEMY_TRACK_MODIFICATIONS=SQLALCHEMY_TRACK_MODIFICATIONS,
        SQLALCHEMY_DATABASE_URI=get_database_uri(),
        SQLALCHEMY_ECHO=SQLALCHEMY_ECHO,
        JWT_SECRET_KEY=JWT_SECRET_KEY,
        JWT_TOKEN_LOCATION=JWT_TOKEN_LOCATION,
        JWT_HEADER_NAME=JWT_HEADER_NAME,
        JWT_HEADER_TYPE=JWT_HEADER_TYPE,
        JWT_ACCESS_TOKEN_EXPIRES=JWT_ACCESS_TOKEN_EXPIRES,
        REDIS_URL=REDIS_URL,
        CACHE_TYPE=get_cache_type(),
        CACHE_KEY_PREFIX=CACHE_KEY_PREFIX,
        LOG_DIR=LOG_DIR,
        AUTO_CREATE_TABLES=False,
    )
    if config_overrides:
        app.config.from_mapping(config_overrides)

    _configure_logging(app)

    # 初始化扩展
    db.init_app(app)
    migrate.init_app(app, db)
    jwt.init_app(app)
    CORS(app,
         origins=CORS_ORIGINS,
         methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
         allow_headers=["Content-Type", "Authorization", "Cache-Control", "Pragma", "Expires"],
         supports_credentials=True,
    )

    cache_manager.init_app(app)

    ErrorHandler.register_handlers(app)

    # JWT 错误处理：缺少或无效的令牌一律返回 401
    @jwt.invalid_token_loader
    def invalid_token_callback(error_string):
        return jsonify({
            'error': 'unauthorized',
            'message': str(error_string),
            'status': 401
        }), 401

    @jwt.unauthorized_loader
    def unauthorized_callback(error_string):
        return jsonify({
            'error': 'unauthorized',
            'message': str(error_string),
            'status': 401
        }), 401

    @jwt.expired_token_loader
    def expired_token_callback(jwt_header, jwt_payload):
        return jsonify({
            'error': 'unauthorized',
            'message': 'Token has expired',
            'status': 401
        }), 401

    with app.app_context():
        from chatapp import models  # noqa: F401  注册模型元数据
        from chatapp.routes.conversations import conversations_bp
        from chatapp.routes.projects import projects_bp
        from chatapp.routes.share import share_bp
        from chatapp.routes.cache_version import cache_version_bp
        from chatapp.routes.ai import ai_bp

        app.register_blueprint(conversations_bp, url_prefix='/api/conversations')
        app.register_blueprint(projects_bp, url_prefix='/api/projects')
        app.register_blueprint(share_bp, url_prefix='/api/share')
        app.register_blueprint(cache_version_bp, url_prefix='/api/cache-version')
        app.register_blueprint(ai_bp, url_prefix='/api')

        if app.config.get('AUTO_CREATE_TABLES'):
            db.create_all()
            app.logger.info("数据库表已创建")

    app.logger.info(f"应用已创建，缓存类型: {app.config['CACHE_TYPE']}")
    return app
