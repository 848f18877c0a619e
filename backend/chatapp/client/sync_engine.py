"""
同步引擎 (客户端内存状态)。

界面可见数据的唯一来源，协调本地存储、服务端以及尚在途中的乐观更新。
主要功能:
- 状态机 uninitialized -> hydrating -> hydrated：先从本地存储加载并立即标记 hydrated
  (界面只依赖本地数据即可解除阻塞)，随后在后台与服务端对账
- 对账：服务端对共享字段 (标题、last_message_at、收藏、归档、公开、revision) 具有权威，本地独有字段保留；
  本地存在而服务端缺失的已确认会话被删除 (墓碑传播)；从未被服务端确认的会话 (revision 为 None)
  不删除，而是连同本地消息通过幂等接口重新提交
- 统一的变更协议：记录旧值 -> 更新内存 -> 写本地存储 (失败则回滚内存并中止) -> 请求服务端；
  创建会话时等待服务端返回，其余写操作 fire-and-forget，失败只记录日志
- 通过 ChangeFeed 轮询缓存版本号，版本号任何变化都触发全量重新同步；版本号为 0 表示服务端未启用
  版本跟踪，此时每次轮询都重新同步
- 标题生成：会话第一条用户消息且标题仍为默认值时在后台生成，loading 标记无论成败都会清除
- 当前会话、消息加载、消息本地更新、项目及会话-项目关联操作

所有内存状态的读写都在同一把可重入锁内完成，后台线程看到的集合要么是变更前、要么是变更后。

注意: 如果新增、删除或修改功能，必须在这开头的注释中同步修改，如发现功能与注释描述不同，也可以在确定后修改。
"""
import logging
import threading
import uuid

from chatapp.client.poller import VersionPoller
from chatapp.client.records import DEFAULT_TITLE, Conversation, Message, Project
from chatapp.exceptions import ChatAppError, LocalStoreError
from chatapp.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

UNINITIALIZED = 'uninitialized'
HYDRATING = 'hydrating'
HYDRATED = 'hydrated'

_MISSING = object()
DELETE = object()


def run_in_thread(fn, *args, **kwargs):
    """默认的后台执行器：守护线程"""
    thread = threading.Thread(target=fn, args=args, kwargs=kwargs, daemon=True)
    thread.start()
    return thread


def conversation_sort_key(conversation):
    # last_message_at 倒序，None 视为最旧；同值按 created_at 倒序
    last = conversation.last_message_at
    return (last is not None, last or conversation.created_at, conversation.created_at)


class SyncEngine:

    def __init__(self, store, api, background=None, change_feed=None):
        self.store = store
        self.api = api
        self.change_feed = change_feed or api
        self.background = background or run_in_thread

        self.state = UNINITIALIZED
        self.active_conversation_id = None
        self.last_version = None
        self.title_loading_ids = set()

        self._conversations = {}
        self._projects = {}
        self._messages = {}
        self._conversation_projects = {}

        self._lock = threading.RLock()
        self._sync_lock = threading.Lock()
        self._poller = None

    # -- read side --------------------------------------------------------

    @property
    def is_hydrated(self):
        return self.state == HYDRATED

    @property
    def conversations(self):
        with self._lock:
            return sorted(self._conversations.values(), key=conversation_sort_key, reverse=True)

    @property
    def projects(self):
        with self._lock:
            return sorted(self._projects.values(), key=lambda p: p.updated_at, reverse=True)

    def get_conversation(self, conversation_id):
        with self._lock:
            return self._conversations.get(conversation_id)

    def messages(self, conversation_id):
        with self._lock:
            return sorted(self._messages.get(conversation_id, {}).values(), key=lambda m: m.created_at)

    def is_title_loading(self, conversation_id):
        with self._lock:
            return conversation_id in self.title_loading_ids

    def set_active_conversation(self, conversation_id):
        with self._lock:
            self.active_conversation_id = conversation_id

    # -- plumbing ---------------------------------------------------------

    def _apply_optimistically(self, collection, key, value, persist, action):
        """
        记录旧值、更新内存、写本地存储；本地存储失败时恢复旧值并返回 False。

        value 为 DELETE 时从集合中移除该键。
        """
        with self._lock:
            previous = collection.get(key, _MISSING)
            if value is DELETE:
                collection.pop(key, None)
            else:
                collection[key] = value
        try:
            persist()
        except LocalStoreError as e:
            logger.error(f"{action} 写入本地存储失败，已回滚: {e}")
            with self._lock:
                if previous is _MISSING:
                    collection.pop(key, None)
                else:
                    collection[key] = previous
            return False
        return True

    def _fire_and_forget(self, action, fn, *args):
        def task():
            try:
                fn(*args)
            except Exception as e:
                logger.error(f"{action} 同步到服务端失败: {e}")

        self.background(task)

    # -- hydration & sync -------------------------------------------------

    def hydrate(self, sync=True):
        """从本地存储加载并立即标记为 hydrated；sync 为 True 时随后在后台与服务端对账"""
        with self._lock:
            self.state = HYDRATING
        conversations, projects = self.store.hydrate()
        with self._lock:
            self._conversations = {c.id: c for c in conversations}
            self._projects = {p.id: p for p in projects}
            self.state = HYDRATED
        logger.info(f"本地数据已加载: {len(conversations)} 个会话, {len(projects)} 个项目")
        if sync:
            self.background(self.sync_with_server)

    def sync_with_server(self):
        """拉取服务端全部会话并与本地合并；成功返回 True"""
        with self._sync_lock:
            try:
                remote = self.api.fetch_all_conversations(archived=False)
                remote += self.api.fetch_all_conversations(archived=True)
            except ChatAppError as e:
                logger.warning(f"从服务端拉取会话失败，保留本地数据: {e}")
                return False

            remote_by_id = {c.id: c for c in remote}
            changed = []
            tombstoned = []
            unacknowledged = []
            with self._lock:
                for conversation_id, server_copy in remote_by_id.items():
                    current = self._conversations.get(conversation_id)
                    merged = current.merged_with_server(server_copy) if current else server_copy
                    if merged != current:
                        self._conversations[conversation_id] = merged
                        changed.append(merged)
                for conversation_id, conversation in list(self._conversations.items()):
                    if conversation_id in remote_by_id:
                        continue
                    if conversation.revision is None:
                        unacknowledged.append(conversation)
                        continue
                    tombstoned.append(conversation_id)
                    self._forget_conversation(conversation_id)

            try:
                for conversation in changed:
                    self.store.create_conversation(conversation)
                for conversation_id in tombstoned:
                    self.store.delete_conversation(conversation_id)
            except LocalStoreError as e:
                logger.error(f"同步结果写入本地存储失败: {e}")

            for conversation in unacknowledged:
                self._resubmit(conversation)

            logger.info(
                f"同步完成: 服务端 {len(remote_by_id)} 个会话, 更新 {len(changed)}, "
                f"删除 {len(tombstoned)}, 重新提交 {len(unacknowledged)}"
            )
            return True

    def _forget_conversation(self, conversation_id):
        self._conversations.pop(conversation_id, None)
        self._messages.pop(conversation_id, None)
        self._conversation_projects.pop(conversation_id, None)
        self.title_loading_ids.discard(conversation_id)
        if self.active_conversation_id == conversation_id:
            self.active_conversation_id = None

    def _acknowledge(self, conversation_id, revision):
        if revision is None:
            return
        with self._lock:
            current = self._conversations.get(conversation_id)
            if current is None or current.revision is not None:
                return
            self._conversations[conversation_id] = current.copy(revision=revision)
        try:
            self.store.update_conversation(conversation_id, {'revision': revision, 'updated_at': current.updated_at})
        except LocalStoreError as e:
            logger.warning(f"记录会话 {conversation_id} 的 revision 失败: {e}")

    def _resubmit(self, conversation):
        """把服务端从未确认过的会话及其本地消息重新提交 (接口均为幂等)"""
        try:
            acknowledged = self.api.create_conversation(conversation)
            for message in self.store.get_messages_by_conversation(conversation.id):
                self.api.create_message(message)
        except (ChatAppError, LocalStoreError) as e:
            logger.warning(f"重新提交会话 {conversation.id} 失败，下次同步时重试: {e}")
            return False
        self._acknowledge(conversation.id, acknowledged.revision)
        return True

    def check_for_changes(self):
        """读取缓存版本号，与上次不同 (或为 0) 时全量重新同步；返回是否执行了同步"""
        try:
            version = self.change_feed.current_version()
        except ChatAppError as e:
            logger.warning(f"获取缓存版本失败: {e}")
            return False
        if version != 0 and version == self.last_version:
            return False
        logger.info(f"缓存版本变化 {self.last_version} -> {version}，重新同步")
        if not self.sync_with_server():
            return False
        self.last_version = version
        return True

    def start_polling(self, interval=None):
        if self._poller is None:
            self._poller = VersionPoller(self.check_for_changes, interval)
        self._poller.start()
        return self._poller

    def stop_polling(self):
        if self._poller is not None:
            self._poller.stop()

    # -- conversations ----------------------------------------------------

    def new_conversation(self, title=DEFAULT_TITLE, model_id=None):
        conversation = Conversation(id=str(uuid.uuid4()), title=title, model_id=model_id)
        return conversation if self.add_conversation(conversation) else None

    def add_conversation(self, conversation):
        persisted = self._apply_optimistically(
            self._conversations, conversation.id, conversation,
            lambda: self.store.create_conversation(conversation),
            f"创建会话 {conversation.id}",
        )
        if not persisted:
            return False

        # 首条消息写入前服务端必须已有该会话
        try:
            acknowledged = self.api.create_conversation(conversation)
        except ChatAppError as e:
            logger.error(f"创建会话 {conversation.id} 同步到服务端失败: {e}")
            return True
        self._acknowledge(conversation.id, acknowledged.revision)
        return True

    def update_conversation(self, conversation_id, updates):
        original = self.get_conversation(conversation_id)
        if original is None:
            return False
        changes = dict(updates)
        changes['updated_at'] = utcnow()
        updated = original.copy(**changes)

        persisted = self._apply_optimistically(
            self._conversations, conversation_id, updated,
            lambda: self.store.update_conversation(conversation_id, changes),
            f"更新会话 {conversation_id}",
        )
        if not persisted:
            return False

        self._fire_and_forget(f"更新会话 {conversation_id}", self.api.update_conversation,
                              conversation_id, dict(updates))
        return True

    def delete_conversation(self, conversation_id):
        if self.get_conversation(conversation_id) is None:
            return False
        persisted = self._apply_optimistically(
            self._conversations, conversation_id, DELETE,
            lambda: self.store.delete_conversation(conversation_id),
            f"删除会话 {conversation_id}",
        )
        if not persisted:
            return False

        with self._lock:
            self._forget_conversation(conversation_id)
        self._fire_and_forget(f"删除会话 {conversation_id}", self.api.delete_conversation, conversation_id)
        return True

    # -- messages ---------------------------------------------------------

    def load_messages(self, conversation_id, fetch_remote=False):
        """从本地存储加载消息；本地为空且 fetch_remote 时从服务端拉取并写入本地"""
        try:
            messages = self.store.get_messages_by_conversation(conversation_id)
        except LocalStoreError as e:
            logger.error(f"加载会话 {conversation_id} 的消息失败: {e}")
            messages = []

        if not messages and fetch_remote:
            try:
                messages = self.api.fetch_messages(conversation_id)
            except ChatAppError as e:
                logger.warning(f"从服务端拉取会话 {conversation_id} 的消息失败: {e}")
                messages = []
            try:
                for message in messages:
                    self.store.create_message(message)
            except LocalStoreError as e:
                logger.error(f"缓存服务端消息失败: {e}")

        with self._lock:
            self._messages[conversation_id] = {m.id: m for m in messages}
        return self.messages(conversation_id)

    def add_message(self, message):
        with self._lock:
            bucket = self._messages.setdefault(message.conversation_id, {})
        persisted = self._apply_optimistically(
            bucket, message.id, message,
            lambda: self.store.create_message(message),
            f"写入消息 {message.id}",
        )
        if not persisted:
            return False

        start_title = False
        with self._lock:
            conversation = self._conversations.get(message.conversation_id)
            if conversation is not None:
                conversation = conversation.copy(
                    last_message_at=message.created_at, updated_at=message.created_at
                )
                self._conversations[message.conversation_id] = conversation
                start_title = (
                    message.role == 'user'
                    and conversation.title == DEFAULT_TITLE
                    and message.conversation_id not in self.title_loading_ids
                    and sum(1 for m in bucket.values() if m.role == 'user') == 1
                )
                if start_title:
                    self.title_loading_ids.add(message.conversation_id)

        self._fire_and_forget(f"写入消息 {message.id}", self.api.create_message, message)
        if start_title:
            self.background(self.generate_title, message.conversation_id, message.content)
        return True

    def send_user_message(self, conversation_id, content, client_id=None):
        message = Message(
            id=str(uuid.uuid4()), conversation_id=conversation_id, role='user',
            content=content, client_id=client_id,
        )
        return message if self.add_message(message) else None

    def update_message(self, message_id, updates):
        """只更新本地 (内存 + 本地存储)，不请求服务端"""
        with self._lock:
            bucket = next((b for b in self._messages.values() if message_id in b), None)
            original = bucket.get(message_id) if bucket is not None else None
        if original is None:
            return False
        return self._apply_optimistically(
            bucket, message_id, original.copy(**updates),
            lambda: self.store.update_message(message_id, updates),
            f"更新消息 {message_id}",
        )

    def generate_title(self, conversation_id, user_message):
        with self._lock:
            self.title_loading_ids.add(conversation_id)
        try:
            title = self.api.generate_title(user_message, conversation_id)
            if not title or title == DEFAULT_TITLE:
                return
            with self._lock:
                conversation = self._conversations.get(conversation_id)
                if conversation is None:
                    return
                now = utcnow()
                self._conversations[conversation_id] = conversation.copy(title=title, updated_at=now)
            self.store.update_conversation(conversation_id, {'title': title, 'updated_at': now})
        except (ChatAppError, LocalStoreError) as e:
            logger.warning(f"会话 {conversation_id} 标题生成失败，保留默认标题: {e}")
        finally:
            with self._lock:
                self.title_loading_ids.discard(conversation_id)

    # -- projects ---------------------------------------------------------

    def create_project(self, name):
        project = Project(id=str(uuid.uuid4()), name=name)
        persisted = self._apply_optimistically(
            self._projects, project.id, project,
            lambda: self.store.create_project(project),
            f"创建项目 {name}",
        )
        if not persisted:
            return None
        self._fire_and_forget(f"创建项目 {project.id}", self.api.create_project, project)
        return project

    def rename_project(self, project_id, name):
        with self._lock:
            original = self._projects.get(project_id)
        if original is None:
            return False
        now = utcnow()
        persisted = self._apply_optimistically(
            self._projects, project_id, original.copy(name=name, updated_at=now),
            lambda: self.store.update_project(project_id, {'name': name, 'updated_at': now}),
            f"重命名项目 {project_id}",
        )
        if persisted:
            self._fire_and_forget(f"重命名项目 {project_id}", self.api.update_project, project_id, {'name': name})
        return persisted

    def delete_project(self, project_id):
        with self._lock:
            if project_id not in self._projects:
                return False
        persisted = self._apply_optimistically(
            self._projects, project_id, DELETE,
            lambda: self.store.delete_project(project_id),
            f"删除项目 {project_id}",
        )
        if not persisted:
            return False
        with self._lock:
            for conversation_id, project_ids in list(self._conversation_projects.items()):
                if project_id in project_ids:
                    self._conversation_projects[conversation_id] = project_ids - {project_id}
        self._fire_and_forget(f"删除项目 {project_id}", self.api.delete_project, project_id)
        return True

    def projects_for_conversation(self, conversation_id):
        with self._lock:
            cached = self._conversation_projects.get(conversation_id)
        if cached is not None:
            return cached
        try:
            project_ids = frozenset(self.store.get_projects_for_conversation(conversation_id))
        except LocalStoreError as e:
            logger.error(f"读取会话 {conversation_id} 的项目失败: {e}")
            return frozenset()
        with self._lock:
            return self._conversation_projects.setdefault(conversation_id, project_ids)

    def add_conversation_to_project(self, conversation_id, project_id):
        current = self.projects_for_conversation(conversation_id)
        persisted = self._apply_optimistically(
            self._conversation_projects, conversation_id, current | {project_id},
            lambda: self.store.add_conversation_to_project(conversation_id, project_id),
            f"把会话 {conversation_id} 加入项目 {project_id}",
        )
        if persisted:
            self._fire_and_forget(f"把会话 {conversation_id} 加入项目 {project_id}",
                                  self.api.add_conversation_to_project, conversation_id, project_id)
        return persisted

    def remove_conversation_from_project(self, conversation_id, project_id):
        current = self.projects_for_conversation(conversation_id)
        persisted = self._apply_optimistically(
            self._conversation_projects, conversation_id, current - {project_id},
            lambda: self.store.remove_conversation_from_project(conversation_id, project_id),
            f"把会话 {conversation_id} 移出项目 {project_id}",
        )
        if persisted:
            self._fire_and_forget(f"把会话 {conversation_id} 移出项目 {project_id}",
                                  self.api.remove_conversation_from_project, conversation_id, project_id)
        return persisted
