import threading

import attr


@attr.define
class IdGenerator:
    """ Monotonic id source. One per id space, owned by the Map, rewound only on reset. """
    next_id: int = 0
    _lock: threading.Lock = attr.ib(factory=threading.Lock, init=False, repr=False)

    def __call__(self) -> int:
        with self._lock:
            out = self.next_id
            self.next_id += 1
            return out

    def reset(self, start: int = 0):
        with self._lock:
            self.next_id = start

    def peek(self) -> int:
        return self.next_id


@attr.define
class MapIdGenerators:
    frames: IdGenerator = attr.Factory(IdGenerator)
    keyframes: IdGenerator = attr.Factory(IdGenerator)
    landmarks: IdGenerator = attr.Factory(IdGenerator)

    def reset(self):
        for generator in (self.frames, self.keyframes, self.landmarks):
            generator.reset()
