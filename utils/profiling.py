import contextlib
import logging
import time
from collections import defaultdict
from typing import Dict, List, Tuple

import attr

logger = logging.getLogger(__name__)

_JUST_TIME_IT_DEPTH = 0


@contextlib.contextmanager
def just_time(what='timer', verbose=True):
    """ Time a block. Elapsed seconds land in the yielded dict under 'elapsed'. """
    global _JUST_TIME_IT_DEPTH
    depth = _JUST_TIME_IT_DEPTH
    _JUST_TIME_IT_DEPTH += 1
    resu_state = {}
    if verbose:
        logger.debug('%sEntering: %s ...', ' ' * 4 * depth, what)
    start_time = time.perf_counter()
    try:
        yield resu_state
    finally:
        _JUST_TIME_IT_DEPTH -= 1
        elapsed = time.perf_counter() - start_time
        resu_state['elapsed'] = elapsed
        if verbose:
            logger.debug('%s... Elapsed %.4gs in: %s', ' ' * 4 * depth, elapsed, what)


@attr.define
class StageTimer:
    """ Collects just_time measurements per named stage, across frames """
    elapsed: Dict[str, List[float]] = attr.Factory(lambda: defaultdict(list))

    @contextlib.contextmanager
    def stage(self, what: str):
        with just_time(what) as state:
            yield state
        self.elapsed[what].append(state['elapsed'])

    def summary(self) -> Dict[str, Tuple[int, float]]:
        """ stage -> (number of calls, mean seconds) """
        return {what: (len(times), sum(times) / len(times)) for what, times in self.elapsed.items() if times}

    def clear(self):
        self.elapsed.clear()

    def log_summary(self):
        for what, (count, mean) in sorted(self.summary().items()):
            logger.info('%s: %d calls, %.4gs mean', what, count, mean)
