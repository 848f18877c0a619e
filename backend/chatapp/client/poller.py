"""
跨设备变更检测。

ChangeFeed 只有一个方法 current_version()；VersionPoller 在后台守护线程中按固定间隔
(默认 5 分钟) 调用同步引擎的 check_for_changes()。轮询失败只记录日志，不会终止线程。
"""
import logging
import threading

from chatapp import config

logger = logging.getLogger(__name__)


class ChangeFeed:
    """Source of the global cache version."""

    def current_version(self):
        raise NotImplementedError


class VersionPoller:

    def __init__(self, check, interval=None):
        self.check = check
        self.interval = interval if interval is not None else config.CACHE_VERSION_POLL_INTERVAL
        self._stop = threading.Event()
        self._thread = None

    @property
    def running(self):
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='cache-version-poller', daemon=True)
        self._thread.start()
        logger.info(f"缓存版本轮询已启动，间隔 {self.interval}s")

    def stop(self, timeout=None):
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def poll_once(self):
        try:
            return self.check()
        except Exception as e:
            logger.warning(f"缓存版本轮询失败: {e}")
            return False

    def _run(self):
        while not self._stop.wait(self.interval):
            self.poll_once()
