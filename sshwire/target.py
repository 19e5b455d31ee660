"""
What an operation runs against: a hostname, a session or an open channel.

Public entry points accept any of the three and call ``as_target`` once;
everything below works with the resulting tagged value.
"""

from __future__ import annotations
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Iterator, Optional, Union

from .channel import Channel
from .context import SshContext
from .session.base import BaseSession
from .session.ssh import session, with_connection


@dataclass(frozen=True)
class HostTarget:
    """A host reached through an implicit session, closed after use."""
    hostname: str
    options: dict = field(default_factory=dict)


@dataclass(frozen=True)
class SessionTarget:
    session: BaseSession


@dataclass(frozen=True)
class ChannelTarget:
    channel: Channel


Target = Union[HostTarget, SessionTarget, ChannelTarget]


def as_target(value, **options) -> Target:
    """
    Tag a hostname, session or channel.

    ``options`` only apply to hostnames; they become the implicit session's
    fields and SSH options.
    """
    if isinstance(value, (HostTarget, SessionTarget, ChannelTarget)):
        return value
    if isinstance(value, str):
        return HostTarget(value, dict(options))
    if isinstance(value, BaseSession):
        return SessionTarget(value)
    if isinstance(value, Channel):
        return ChannelTarget(value)
    raise TypeError(f"Expected a hostname, session or channel, got {type(value).__name__}")


@contextmanager
def target_session(target: Target, context: Optional[SshContext] = None) -> Iterator[BaseSession]:
    """
    Yield a connected session for the target.

    Implicit sessions, and sessions that were not connected on entry, are
    disconnected on exit.
    """
    if isinstance(target, HostTarget):
        implicit = session(None, target.hostname, context=context, **target.options)
        with with_connection(implicit):
            yield implicit
    elif isinstance(target, SessionTarget):
        if target.session.connected:
            yield target.session
        else:
            with with_connection(target.session):
                yield target.session
    else:
        raise TypeError("A channel target has no session to connect")
