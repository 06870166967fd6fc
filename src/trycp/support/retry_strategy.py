import time

from trycp.support.mixins import CommonEqualityMixin


class RetryStrategy:
    def __call__(self, current_time=None, dry_run=False):
        return 0


class PeriodRetryStrategy(RetryStrategy, CommonEqualityMixin):

    def __init__(self, retry_period, last_tried=None):
        """
        :param retry_period: The retry period in seconds.
        """
        self.last_tried = last_tried         # the time last tried
        self.retry_period = retry_period

    def __call__(self, current_time=None, dry_run=False):
        """return the length of time until an operation should be retried
            :param current_time: the current time. Defaults to time.monotonic()
            :param dry_run: when True, the last tried time is not updated
        """
        if current_time is None:
            current_time = time.monotonic()
        result = self._time_to_retry(current_time)
        if not dry_run and result <= 0:
            self.last_tried = current_time
        return result

    def _time_to_retry(self, current_time):
        """
        Determines how long until the next try
        :param current_time: The current time.
        :return: the number of seconds to wait. Zero or less means try now.
        """
        return 0 if self.last_tried is None else self.retry_period - (current_time - self.last_tried)


class Deadline:
    """
    Tracks a fixed point in time after which an operation should give up.
    """

    def __init__(self, timeout, clock=time.monotonic):
        self.clock = clock
        self.expires = clock() + timeout

    @property
    def remaining(self):
        return max(0.0, self.expires - self.clock())

    @property
    def expired(self):
        return self.clock() >= self.expires
