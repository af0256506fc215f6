"""Reconnection backoff for stream clients."""

from __future__ import annotations

from termrelay.config import ClientConfig


class ReconnectBackoff:
    """Exponential delay between reconnect attempts.

    ``next_delay()`` returns the delay to wait before the upcoming attempt
    and grows it for the one after; ``reset()`` is called after every
    successful connection::

        2.0, 3.0, 4.5, 6.75, ... capped at 30.0
    """

    def __init__(
        self, initial: float = 2.0, multiplier: float = 1.5, maximum: float = 30.0
    ) -> None:
        if initial <= 0 or multiplier < 1 or maximum < initial:
            raise ValueError(
                f"Invalid backoff: initial={initial}, multiplier={multiplier}, max={maximum}"
            )
        self.initial = initial
        self.multiplier = multiplier
        self.maximum = maximum
        self._delay = initial
        self._attempts = 0

    @classmethod
    def from_config(cls, config: ClientConfig) -> ReconnectBackoff:
        return cls(
            config.reconnect_initial, config.reconnect_multiplier, config.reconnect_max
        )

    @property
    def delay(self) -> float:
        """Delay the next call to ``next_delay()`` will return."""
        return self._delay

    @property
    def attempts(self) -> int:
        return self._attempts

    def next_delay(self) -> float:
        delay = self._delay
        self._attempts += 1
        self._delay = min(self._delay * self.multiplier, self.maximum)
        return delay

    def reset(self) -> None:
        self._delay = self.initial
        self._attempts = 0
