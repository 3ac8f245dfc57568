""" What tracking needs from the mapping and loop closing back ends, plus the back ends shipped here.
Calls from tracking are fire and forget or polls, none of them blocks tracking for long. """
import logging
import queue
import threading
from typing import List, Optional, Protocol

import attr

from dwslam.keyframe import KeyFrame
from dwslam.map import Map
from dwslam.retrieval import KeyFrameDatabase

log = logging.getLogger(__name__)


class ILocalMapper(Protocol):
    def insert_keyframe(self, keyframe: KeyFrame):
        ...

    def interrupt_ba(self):
        ...

    def accept_keyframes(self) -> bool:
        ...

    def is_stopped(self) -> bool:
        ...

    def stop_requested(self) -> bool:
        ...

    def request_reset(self):
        ...


class ILoopCloser(Protocol):
    def insert_keyframe(self, keyframe: KeyFrame):
        ...

    def request_reset(self):
        ...


@attr.define
class NullLoopCloser:
    """ No loop detection, keyframes are only counted """
    n_keyframes_seen: int = 0
    n_resets: int = 0

    def insert_keyframe(self, keyframe: KeyFrame):
        self.n_keyframes_seen += 1

    def request_reset(self):
        self.n_keyframes_seen = 0
        self.n_resets += 1


@attr.define
class InlineLocalMapper:
    """ Processes each keyframe right away on the caller's thread: the keyframe joins the map,
    the covisibility graph and the retrieval index, then goes to loop closing. No local bundle adjustment. """
    map: Map
    database: Optional[KeyFrameDatabase] = None
    loop_closer: ILoopCloser = attr.Factory(NullLoopCloser)

    processed: List[KeyFrame] = attr.Factory(list)
    n_interrupts: int = 0
    n_resets: int = 0
    stopped: bool = False
    stop_was_requested: bool = False

    def process_keyframe(self, keyframe: KeyFrame):
        if keyframe.is_bad:
            return
        self.map.add_keyframe(keyframe)
        keyframe.update_connections()
        if self.database is not None:
            self.database.add(keyframe)
        self.loop_closer.insert_keyframe(keyframe)
        self.processed.append(keyframe)
        log.debug(f"Mapped keyframe {keyframe.keyframe_id}, {self.map.keyframes_in_map()} keyframes in map")

    def insert_keyframe(self, keyframe: KeyFrame):
        self.process_keyframe(keyframe)

    def interrupt_ba(self):
        self.n_interrupts += 1

    def accept_keyframes(self) -> bool:
        return not self.stopped

    def is_stopped(self) -> bool:
        return self.stopped

    def stop_requested(self) -> bool:
        return self.stop_was_requested

    def request_reset(self):
        self.processed = []
        self.n_resets += 1


@attr.define
class ThreadedLocalMapper:
    """ The same processing on a worker thread fed by a queue. While it is working on a keyframe
    it does not accept new ones, the tracker then interrupts it instead of inserting. """
    worker: InlineLocalMapper
    poll_interval: float = 0.005

    _queue: queue.Queue = attr.ib(factory=queue.Queue, init=False, repr=False)
    _busy: threading.Event = attr.ib(factory=threading.Event, init=False, repr=False)
    _abort_ba: threading.Event = attr.ib(factory=threading.Event, init=False, repr=False)
    _stop_requested: threading.Event = attr.ib(factory=threading.Event, init=False, repr=False)
    _stopped: threading.Event = attr.ib(factory=threading.Event, init=False, repr=False)
    _finish: threading.Event = attr.ib(factory=threading.Event, init=False, repr=False)
    _reset_requested: threading.Event = attr.ib(factory=threading.Event, init=False, repr=False)
    _thread: Optional[threading.Thread] = attr.ib(default=None, init=False, repr=False)

    def start(self):
        self._thread = threading.Thread(target=self.run, name='local-mapping', daemon=True)
        self._thread.start()

    def run(self):
        while not self._finish.is_set():
            if self._reset_requested.is_set():
                self._drain()
                self.worker.request_reset()
                self._reset_requested.clear()

            if self._stop_requested.is_set():
                self._stopped.set()
                self._finish.wait(self.poll_interval)
                continue
            self._stopped.clear()

            try:
                keyframe = self._queue.get(timeout=self.poll_interval)
            except queue.Empty:
                continue

            self._busy.set()
            self._abort_ba.clear()
            try:
                self.worker.process_keyframe(keyframe)
            finally:
                self._busy.clear()

    def _drain(self):
        while True:
            try:
                self._queue.get_nowait()
            except queue.Empty:
                return

    def insert_keyframe(self, keyframe: KeyFrame):
        self._queue.put(keyframe)
        self._abort_ba.set()

    def interrupt_ba(self):
        self._abort_ba.set()

    def accept_keyframes(self) -> bool:
        return not self._busy.is_set() and not self._stopped.is_set()

    def is_stopped(self) -> bool:
        return self._stopped.is_set()

    def stop_requested(self) -> bool:
        return self._stop_requested.is_set()

    def request_stop(self):
        self._stop_requested.set()

    def release(self):
        self._stop_requested.clear()
        self._stopped.clear()

    def request_reset(self):
        """ Blocks until the worker has dropped its queue, polling """
        self._reset_requested.set()
        if self._thread is None or not self._thread.is_alive():
            self._drain()
            self.worker.request_reset()
            self._reset_requested.clear()
            return
        while self._reset_requested.is_set():
            self._finish.wait(self.poll_interval)

    def has_pending(self) -> bool:
        return not self._queue.empty() or self._busy.is_set()

    def shutdown(self, timeout: float = 5.0):
        self._finish.set()
        if self._thread is not None:
            self._thread.join(timeout)
