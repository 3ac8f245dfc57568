""" Cross-thread signals between tracking and the rest of the pipeline. """
import logging
import threading
from typing import Optional, Union

import attr

from dwslam.transforms import Sim3
from dwslam.types import TransformSE3

log = logging.getLogger(__name__)


@attr.define
class PauseHandshake:
    """ Reset protocol with the consumers of tracking output (publishers, viewers).

    The tracker raises a pause and waits until every registered consumer acknowledged it, does its reset,
    then finishes. A consumer calls check_pause() from its own loop: if a pause is pending it acknowledges
    and holds until the reset is finished. With no consumers registered the tracker never waits. """
    n_consumers: int = 0
    pausing: bool = False
    n_acknowledged: int = 0
    _condition: threading.Condition = attr.ib(factory=threading.Condition, init=False, repr=False)

    def register_consumer(self):
        with self._condition:
            self.n_consumers += 1

    def unregister_consumer(self):
        with self._condition:
            self.n_consumers = max(0, self.n_consumers - 1)
            self._condition.notify_all()

    def request_pause(self):
        with self._condition:
            self.pausing = True
            self.n_acknowledged = 0

    def wait_acknowledged(self, poll_interval: float = 0.002):
        """ Blocks until all consumers are holding. There is no timeout, only a bounded wake up interval. """
        with self._condition:
            while self.pausing and self.n_acknowledged < self.n_consumers:
                self._condition.wait(timeout=poll_interval)

    def finish(self):
        with self._condition:
            self.pausing = False
            self.n_acknowledged = 0
            self._condition.notify_all()

    def check_pause(self, poll_interval: float = 0.001) -> bool:
        """ Consumer side, returns whether we had to hold """
        with self._condition:
            if not self.pausing:
                return False
            self.n_acknowledged += 1
            self._condition.notify_all()
            while self.pausing:
                self._condition.wait(timeout=poll_interval)
            return True


Correction = Union[Sim3, TransformSE3]


@attr.define
class RelocalizationRequest:
    correction: Correction       # new world from old world
    frame_id: int                # id of the frame being tracked when the request was posted


@attr.define
class RelocalizationMailbox:
    """ Holds at most one forced relocalization request, a newer one replaces an older one.
    take() hands it over and clears it atomically. """
    _request: Optional[RelocalizationRequest] = None
    _lock: threading.Lock = attr.ib(factory=threading.Lock, init=False, repr=False)

    def post(self, correction: Correction, frame_id: int):
        with self._lock:
            if self._request is not None:
                log.debug(f"Forced relocalization request of frame {self._request.frame_id} replaced")
            self._request = RelocalizationRequest(correction=correction, frame_id=frame_id)

    def pending(self) -> bool:
        with self._lock:
            return self._request is not None

    def take(self) -> Optional[RelocalizationRequest]:
        with self._lock:
            request, self._request = self._request, None
            return request

    def clear(self):
        with self._lock:
            self._request = None
