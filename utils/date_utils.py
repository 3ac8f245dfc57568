import datetime as dtm

import pytz


def get_now_datetime_as_string() -> str:
    """ E.g. 2022-06-11--12-21-37, in UTC so that runs on different machines sort together """
    return dtm.datetime.now(tz=pytz.utc).strftime("%Y-%m-%d--%H-%M-%S")


def seconds_as_clock_string(seconds: float) -> str:
    """ Sequence time for humans, e.g. 83.25 -> 0:01:23.25 """
    if seconds < 0:
        raise ValueError("Negative duration", seconds)
    hundredths = int(round(seconds * 100))
    return f"{dtm.timedelta(seconds=hundredths // 100)}.{hundredths % 100:02d}"
