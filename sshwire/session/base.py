"""
Abstract session interface.
"""

from __future__ import annotations
from abc import ABC, abstractmethod
from enum import Enum, auto
from typing import Optional


class SessionState(Enum):
    """Session lifecycle states."""
    DISCONNECTED = auto()
    CONNECTING = auto()
    AUTHENTICATING = auto()
    CONNECTED = auto()
    FAILED = auto()


class BaseSession(ABC):
    """
    Abstract session interface.

    Plain sessions and jump sessions both present this lifecycle. Channel,
    SFTP and SCP code only needs ``the_session()`` to reach a transport.
    """

    @property
    @abstractmethod
    def state(self) -> SessionState:
        """Current session state."""
        pass

    @property
    @abstractmethod
    def connected(self) -> bool:
        """Is session currently connected and usable? Never blocks."""
        pass

    @abstractmethod
    def connect(self, timeout: Optional[float] = None) -> None:
        """
        Connect and authenticate. Blocks until done.
        No-op when already connected.
        """
        pass

    @abstractmethod
    def disconnect(self) -> None:
        """Tear down. Safe to call repeatedly."""
        pass

    @abstractmethod
    def the_session(self):
        """The underlying connected Session that channels are opened on."""
        pass

    def __enter__(self):
        if not self.connected:
            self.connect()
        return self

    def __exit__(self, *exc):
        self.disconnect()
