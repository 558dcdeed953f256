"""引擎事件桥接：把异步命名事件转换为带类型的回调。

引擎在工作线程中通过 ``emit`` 发布事件，事件先进入线程安全队列，再由持有
状态的线程调用 :meth:`EventBridge.dispatch_pending` 逐个投递。每个事件带有
会话代号 (generation)，只会投递给同一代号的订阅。
"""

from __future__ import annotations

import itertools
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from image_crunch.core.models import BatchStatistics, ProcessingResult
from image_crunch.core.progress import ProgressSnapshot

LOGGER = logging.getLogger(__name__)

PROGRESS_EVENT = "processing-progress"
RESULT_EVENT = "processing-result"
COMPLETE_EVENT = "processing-complete"

# 提交调用结束时由控制器自身发布，与引擎事件走同一队列以保证先后顺序。
SUBMIT_RESOLVED_EVENT = "submit-resolved"
SUBMIT_REJECTED_EVENT = "submit-rejected"

PAYLOAD_PARSERS: Dict[str, Callable[[Any], Any]] = {
    PROGRESS_EVENT: ProgressSnapshot.from_payload,
    RESULT_EVENT: ProcessingResult.from_payload,
    COMPLETE_EVENT: BatchStatistics.from_payload,
}

EventHandler = Callable[[Any], None]
Emitter = Callable[[str, Any], None]


@dataclass(slots=True)
class EventEnvelope:
    """队列中的单个事件。"""

    name: str
    payload: Any
    generation: Optional[int] = None


class Subscription:
    """订阅句柄；release 可重复调用，也可作为上下文管理器使用。"""

    def __init__(self, bridge: "EventBridge", name: str, token: int, generation: Optional[int]) -> None:
        self._bridge = bridge
        self.name = name
        self.token = token
        self.generation = generation
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def release(self) -> None:
        if not self._active:
            return
        self._active = False
        self._bridge._unsubscribe(self)

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class EventBridge:
    """命名事件的订阅与投递。"""

    def __init__(self) -> None:
        self._queue: "queue.Queue[EventEnvelope]" = queue.Queue()
        self._listeners: Dict[str, Dict[int, tuple[Optional[int], EventHandler]]] = {}
        self._tokens = itertools.count(1)
        self._lock = threading.Lock()

    def listen(self, name: str, handler: EventHandler, generation: Optional[int] = None) -> Subscription:
        """注册回调，返回订阅句柄。

        指定 generation 时，只接收同一代号的事件。
        """

        token = next(self._tokens)
        with self._lock:
            self._listeners.setdefault(name, {})[token] = (generation, handler)
        LOGGER.debug("订阅事件 %s (token=%d, generation=%s)", name, token, generation)
        return Subscription(self, name, token, generation)

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            listeners = self._listeners.get(subscription.name)
            if listeners is None:
                return
            listeners.pop(subscription.token, None)
            if not listeners:
                del self._listeners[subscription.name]
        LOGGER.debug("取消订阅 %s (token=%d)", subscription.name, subscription.token)

    def listener_count(self, name: Optional[str] = None) -> int:
        with self._lock:
            if name is not None:
                return len(self._listeners.get(name, {}))
            return sum(len(listeners) for listeners in self._listeners.values())

    def post(self, name: str, payload: Any, generation: Optional[int] = None) -> None:
        """线程安全地发布事件，投递在 dispatch_pending 中进行。"""

        self._queue.put(EventEnvelope(name=name, payload=payload, generation=generation))

    def emitter(self, generation: Optional[int]) -> Emitter:
        """返回绑定会话代号的发布函数，交给引擎使用。"""

        def emit(name: str, payload: Any) -> None:
            self.post(name, payload, generation)

        return emit

    def dispatch_pending(self, timeout: Optional[float] = None) -> int:
        """投递队列中的全部事件，返回处理的事件数。

        timeout 为 None 时不等待；否则最多等待 timeout 秒以获取第一个事件。
        """

        dispatched = 0
        try:
            if timeout is None:
                envelope = self._queue.get_nowait()
            else:
                envelope = self._queue.get(timeout=timeout)
            while True:
                self._deliver(envelope)
                dispatched += 1
                envelope = self._queue.get_nowait()
        except queue.Empty:
            pass
        return dispatched

    def _deliver(self, envelope: EventEnvelope) -> None:
        with self._lock:
            targets = [
                handler
                for generation, handler in self._listeners.get(envelope.name, {}).values()
                if generation is None or envelope.generation is None or generation == envelope.generation
            ]
        if not targets:
            LOGGER.debug("事件 %s (generation=%s) 无订阅者，已丢弃", envelope.name, envelope.generation)
            return

        parser = PAYLOAD_PARSERS.get(envelope.name)
        try:
            payload = parser(envelope.payload) if parser else envelope.payload
        except (AttributeError, KeyError, TypeError, ValueError) as exc:
            LOGGER.warning("事件 %s 的数据格式错误，已丢弃: %s", envelope.name, exc)
            return
        for handler in targets:
            handler(payload)
