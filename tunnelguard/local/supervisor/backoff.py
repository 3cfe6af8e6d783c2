import random


class BackoffPolicy:
    """
    Exponential backoff between launch attempts.

    `delay(n) = min(initial_delay * 2 ** (n - 1), max_delay)`. With a non-zero
    `jitter` ratio the result is spread by up to +/- that fraction, never past
    `max_delay`.
    """

    def __init__(self, initial_delay: float, max_delay: float, jitter: float = 0.0):
        if initial_delay <= 0 or max_delay < initial_delay:
            raise ValueError("initial_delay must be positive and not larger than max_delay")
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.jitter = jitter

    def delay(self, attempt: int) -> float:
        """
        Returns the wait in seconds after failed attempt number `attempt`.

        :param attempt: 1-based attempt number.
        :raises ValueError: If attempt is lower than 1.
        """
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt}")
        # Stop doubling once past the cap to keep the exponent bounded.
        base = self.initial_delay
        for _ in range(attempt - 1):
            base *= 2
            if base >= self.max_delay:
                break
        base = min(base, self.max_delay)
        if self.jitter:
            base *= 1 + random.uniform(-self.jitter, self.jitter)
            base = min(base, self.max_delay)
        return base
