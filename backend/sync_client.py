#!/usr/bin/env python
# -*- coding: utf-8 -*-
"""
无界面同步客户端

使用方法：
1. 单次同步：python sync_client.py
2. 持续同步 (按 CACHE_VERSION_POLL_INTERVAL 轮询缓存版本)：python sync_client.py watch

连接参数来自 .env：CHAT_API_BASE_URL、CHAT_API_TOKEN、LOCAL_STORE_PATH。
"""
import logging
import sys
import time

from chatapp.client import ChatApiClient, LocalStore, SyncEngine
from chatapp.config import CACHE_VERSION_POLL_INTERVAL, CHAT_API_BASE_URL, LOCAL_STORE_PATH

logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(name)s: %(message)s')
logger = logging.getLogger(__name__)


def build_engine():
    store = LocalStore(LOCAL_STORE_PATH)
    api = ChatApiClient(CHAT_API_BASE_URL)
    return SyncEngine(store, api, background=lambda fn, *args: fn(*args))


def main(argv):
    engine = build_engine()
    logger.info(f"本地存储: {LOCAL_STORE_PATH}, 服务端: {CHAT_API_BASE_URL}")

    engine.hydrate(sync=False)
    engine.check_for_changes()
    for conversation in engine.conversations:
        logger.info(f"{conversation.id}  {conversation.title}  last_message_at={conversation.last_message_at}")

    if len(argv) > 1 and argv[1] == 'watch':
        engine.start_polling(CACHE_VERSION_POLL_INTERVAL)
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            logger.info("停止同步")
        finally:
            engine.stop_polling()
    engine.store.close()
    return 0


if __name__ == '__main__':
    sys.exit(main(sys.argv))
