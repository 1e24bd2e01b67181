"""
状态变更通知模块。

把引擎产生的状态变更事件分发给订阅者。发布方永远不会因为订阅者处理缓慢
而阻塞：每个订阅有固定大小的缓冲区，溢出时丢弃最旧的事件。
"""

import threading
from collections import deque
from typing import Iterator, List, Optional

from sdkvm.core.interfaces import IChangeNotifier
from sdkvm.core.models import StateChangeEvent
from sdkvm.utils.logger import get_logger

logger = get_logger()

DEFAULT_BUFFER_SIZE = 256


class Subscription:
    """
    单个订阅。

    可以直接迭代（阻塞等待下一个事件，订阅关闭后结束），
    也可以用 get(timeout) 轮询。
    """

    def __init__(self, notifier: "ChangeNotifier", buffer_size: int):
        self._notifier = notifier
        self._events: deque = deque(maxlen=buffer_size)
        self._condition = threading.Condition()
        self._closed = False
        self.dropped = 0

    @property
    def closed(self) -> bool:
        return self._closed

    def _push(self, event: StateChangeEvent) -> None:
        with self._condition:
            if self._closed:
                return
            if len(self._events) == self._events.maxlen:
                self.dropped += 1
            self._events.append(event)
            self._condition.notify_all()

    def get(self, timeout: Optional[float] = None) -> Optional[StateChangeEvent]:
        """
        获取下一个事件。

        参数:
            timeout: 最长等待时间（秒），None 表示一直等待

        返回:
            事件，超时或订阅已关闭且没有剩余事件时返回 None
        """
        with self._condition:
            self._condition.wait_for(lambda: self._events or self._closed, timeout=timeout)
            if self._events:
                return self._events.popleft()
            return None

    def drain(self) -> List[StateChangeEvent]:
        """取出当前缓冲的全部事件，不等待。"""
        with self._condition:
            events = list(self._events)
            self._events.clear()
            return events

    def close(self) -> None:
        """关闭订阅，已缓冲的事件仍然可以取出。"""
        with self._condition:
            if self._closed:
                return
            self._closed = True
            self._condition.notify_all()
        self._notifier._unsubscribe(self)

    def __iter__(self) -> Iterator[StateChangeEvent]:
        while True:
            event = self.get()
            if event is None:
                return
            yield event

    def __enter__(self) -> "Subscription":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


class ChangeNotifier(IChangeNotifier):
    """状态变更通知器类。"""

    def __init__(self, buffer_size: int = DEFAULT_BUFFER_SIZE):
        """
        初始化通知器。

        参数:
            buffer_size: 订阅未指定时使用的缓冲区大小
        """
        if buffer_size < 1:
            raise ValueError("buffer_size 必须大于 0")
        self.buffer_size = buffer_size
        self._lock = threading.Lock()
        self._subscriptions: List[Subscription] = []
        self._closed = False

    def subscribe(self, buffer_size: Optional[int] = None) -> Subscription:
        """
        创建新的订阅，只接收订阅之后发布的事件。

        参数:
            buffer_size: 缓冲区大小，默认使用通知器的设置

        返回:
            Subscription 实例
        """
        size = buffer_size or self.buffer_size
        if size < 1:
            raise ValueError("buffer_size 必须大于 0")
        subscription = Subscription(self, size)
        with self._lock:
            if self._closed:
                subscription._closed = True
                return subscription
            self._subscriptions.append(subscription)
        return subscription

    def publish(self, event: StateChangeEvent) -> None:
        """
        向所有订阅发布事件。

        参数:
            event: 状态变更事件
        """
        with self._lock:
            subscriptions = list(self._subscriptions)
        logger.debug(f"发布事件 {event.kind.value}: {event.candidate} {event.version or ''}")
        for subscription in subscriptions:
            subscription._push(event)

    def _unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    def close(self) -> None:
        """结束全部订阅，之后发布的事件会被忽略。"""
        with self._lock:
            self._closed = True
            subscriptions = list(self._subscriptions)
        for subscription in subscriptions:
            subscription.close()
