"""
Process-wide defaults and transport log-level remapping.

Every public call accepts ``context=``; when omitted, the process default
from ``default_context()`` is used. The default is built from the persisted
ClientSettings on first use and reused afterwards.
"""

from __future__ import annotations
import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field, replace
from typing import Iterator, Mapping, Optional

from .config import ClientSettings, get_settings
from .identity import SshAgent, add_identity, ssh_agent
from .passphrase import console_passphrase

logger = logging.getLogger(__name__)

TRACE = 5
logging.addLevelName(TRACE, "TRACE")

# paramiko is chatty at DEBUG; shift it one level down by default
DEFAULT_TRANSPORT_LOG_LEVELS: dict[int, int] = {
    logging.DEBUG: TRACE,
    logging.INFO: logging.DEBUG,
    logging.WARNING: logging.WARNING,
    logging.ERROR: logging.ERROR,
    logging.CRITICAL: logging.CRITICAL,
}

TRANSPORT_LOGGERS = (
    "paramiko",
    "paramiko.transport",
    "paramiko.transport.sftp",
    "paramiko.agent",
)


@dataclass
class SshContext:
    """
    Defaults threaded through sessions, channels and transfers.

    ``agent`` is created on first access when not given.
    """
    agent: Optional[SshAgent] = None
    session_options: dict[str, str] = field(default_factory=dict)
    piped_stream_buffer_size: int = 10 * 1024
    poll_interval: float = 0.1
    connect_timeout: Optional[float] = None
    settings: Optional[ClientSettings] = field(default=None, repr=False)

    @classmethod
    def from_settings(cls, settings: ClientSettings) -> SshContext:
        return cls(
            session_options=dict(settings.session_options),
            piped_stream_buffer_size=settings.piped_stream_buffer_size,
            poll_interval=settings.poll_interval,
            connect_timeout=settings.connect_timeout,
            settings=settings,
        )

    def get_agent(self) -> SshAgent:
        if self.agent is None:
            self.agent = self._create_agent()
        return self.agent

    def _create_agent(self) -> SshAgent:
        settings = self.settings or ClientSettings()
        agent = ssh_agent(
            use_system_agent=settings.use_system_agent,
            known_hosts_path=settings.known_hosts_path,
            passphrase_resolver=console_passphrase,
        )
        for path in settings.identities:
            try:
                add_identity(agent, private_key_path=path)
            except OSError as e:
                logger.warning(f"Could not load identity {path}: {e}")
        return agent

    def derive(self, **changes) -> SshContext:
        """Copy with some fields replaced. The agent is shared unless replaced."""
        if "agent" not in changes:
            changes["agent"] = self.get_agent()
        return replace(self, **changes)


_default_context: Optional[SshContext] = None
_default_lock = threading.Lock()


def default_context() -> SshContext:
    """Create or reuse the process-wide context."""
    global _default_context
    with _default_lock:
        if _default_context is None:
            _default_context = SshContext.from_settings(get_settings())
            logger.debug("Created default context")
        return _default_context


def set_default_context(context: SshContext) -> None:
    global _default_context
    with _default_lock:
        _default_context = context


def reset_default_context() -> None:
    """Drop the process-wide context, closing its agent."""
    global _default_context
    with _default_lock:
        previous, _default_context = _default_context, None
    if previous is not None and previous.agent is not None:
        previous.agent.close()


def resolve_context(context: Optional[SshContext]) -> SshContext:
    return context if context is not None else default_context()


@contextmanager
def using_agent(agent: SshAgent, context: Optional[SshContext] = None) -> Iterator[SshContext]:
    """Yield a context bound to ``agent``. The process default is untouched."""
    yield resolve_context(context).derive(agent=agent)


@contextmanager
def using_session_options(context: Optional[SshContext] = None, **options) -> Iterator[SshContext]:
    """Yield a context whose default session options include ``options``."""
    base = resolve_context(context)
    merged = dict(base.session_options)
    merged.update(options)
    yield base.derive(session_options=merged)


# =============================================================================
# Transport log levels
# =============================================================================

class TransportLogFilter(logging.Filter):
    """Re-level records from the transport library through a level map."""

    def __init__(self, levels: Mapping[int, int]):
        super().__init__()
        self.levels = dict(levels)

    def filter(self, record: logging.LogRecord) -> bool:
        level = self.levels.get(record.levelno)
        if level is not None and level != record.levelno:
            record.levelno = level
            record.levelname = logging.getLevelName(level)
        return True


_transport_filter = TransportLogFilter(DEFAULT_TRANSPORT_LOG_LEVELS)


def install_transport_log_filter() -> None:
    """Attach the level filter to the transport library's loggers."""
    names = set(TRANSPORT_LOGGERS)
    names.update(
        name for name in logging.root.manager.loggerDict
        if name.startswith("paramiko.")
    )
    for name in names:
        target = logging.getLogger(name)
        if _transport_filter not in target.filters:
            target.addFilter(_transport_filter)


def get_transport_log_levels() -> dict[int, int]:
    return dict(_transport_filter.levels)


def set_transport_log_levels(levels: Mapping[int, int]) -> None:
    _transport_filter.levels = dict(levels)


@contextmanager
def transport_log_levels(levels: Mapping[int, int]) -> Iterator[None]:
    """Temporarily override the transport level map."""
    previous = get_transport_log_levels()
    set_transport_log_levels(levels)
    try:
        yield
    finally:
        set_transport_log_levels(previous)


install_transport_log_filter()
