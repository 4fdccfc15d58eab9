"""
Trigger sources: a fixed-interval timer or the new-block header feed.

Each runs on its own daemon thread and calls `callback(TriggerEvent)`; the
callback (SweepAgent.on_trigger) returns immediately, so a slow attempt never
delays the next tick.
"""

import logging
import threading
from abc import ABC, abstractmethod
from typing import Callable, Optional

from .errors import ConnectivityError
from .models import TriggerEvent


class _TriggerSource(ABC):
    source = "trigger"

    def __init__(self, callback: Callable[[TriggerEvent], object], stop_event: Optional[threading.Event] = None):
        self.callback = callback
        self.stop_event = stop_event or threading.Event()
        self.sequence = 0

    def _fire(self, **kwargs):
        self.sequence += 1
        event = TriggerEvent(source=self.source, sequence=self.sequence, **kwargs)
        try:
            self.callback(event)
        except Exception as e:
            logging.error(f"Trigger callback failed on {self.source} #{self.sequence}: {e}")

    @abstractmethod
    def run(self):
        """Blocks delivering events until stop_event is set."""

    def start(self) -> threading.Thread:
        thread = threading.Thread(target=self.run, name=f"{self.source}-trigger", daemon=True)
        thread.start()
        return thread

    def stop(self):
        self.stop_event.set()


class IntervalTrigger(_TriggerSource):
    source = "interval"

    def __init__(self, period: float, callback, stop_event=None):
        super().__init__(callback, stop_event)
        if period <= 0:
            raise ValueError("period must be positive")
        self.period = period

    def run(self):
        logging.info(f"Checking balance every {self.period}s")
        while not self.stop_event.is_set():
            self._fire()
            if self.stop_event.wait(self.period):
                break


class BlockTrigger(_TriggerSource):
    """Fires once per new block header. Reconnects if the feed drops."""

    source = "block"

    def __init__(self, chain, callback, stop_event=None, reconnect_delay: float = 2.0):
        super().__init__(callback, stop_event)
        self.chain = chain
        self.reconnect_delay = reconnect_delay

    def _on_block(self, block_number):
        if self.stop_event.is_set():
            return True
        self._fire(block_number=block_number)
        return None

    def run(self):
        logging.info("Subscribed to new block headers")
        while not self.stop_event.is_set():
            try:
                self.chain.subscribe_new_blocks(self._on_block)
                continue
            except ConnectivityError as e:
                logging.warning(f"{e}. Reconnecting...")
            except Exception as e:
                logging.error(f"Block feed failed: {type(e).__name__}: {e}. Reconnecting...")

            if self.stop_event.wait(self.reconnect_delay):
                break
            try:
                self.chain.reconnect()
            except Exception as e:
                logging.error(f"Block feed reconnect failed: {e}")
