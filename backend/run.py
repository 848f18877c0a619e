#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
mrgb-chat 后端服务启动脚本

使用方法：
1. 启动开发服务器：python run.py
2. 使用gunicorn部署：gunicorn -w 2 -b 0.0.0.0:5001 "run:app"

注意：
- 开发模式下使用Flask内置服务器
- 数据库结构由 flask db upgrade 管理；未配置 REDIS_URL 时缓存层降级为 NullCache
"""
import logging

from chatapp import create_app
from chatapp.config import API_DEBUG, API_HOST, API_PORT, REDIS_URL

logger = logging.getLogger(__name__)

# 创建Flask应用实例 - 为gunicorn提供
app = create_app()

# 直接运行此脚本时启动Flask开发服务器
if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    logger.info(f"应用配置: HOST={API_HOST}, PORT={API_PORT}, DEBUG={API_DEBUG}")
    logger.info(f"Redis URL: {REDIS_URL or '未配置 (NullCache)'}")
    app.run(host=API_HOST, port=API_PORT, debug=API_DEBUG)
