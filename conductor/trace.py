"""File trace channels.

Two channels, both appended to plain text files:
- Application trace: CONDUCTOR_TRACE_LOG (sessions, dispatcher, MCP, hooks)
- Provider trace: CONDUCTOR_PROVIDER_TRACE (model provider traffic)

An empty env value disables a channel. When unset, a file in the system temp
directory is used. The path is resolved on every write, so a test or an
embedding application can redirect a channel at runtime.

Usage:
    from conductor.trace import trace, provider_trace

    trace("SessionManager", "turn started")
    provider_trace("anthropic", "stream opened", include_traceback=True)
"""

import os
import tempfile
import traceback
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Set


_created_dirs: Set[str] = set()


def resolve_trace_path(
    *env_vars: str,
    default_filename: str = "conductor_trace.log",
) -> Optional[str]:
    """Return the first configured path among ``env_vars``.

    Returns None when the first variable that is present is empty, and the
    temp-directory default when none is present.
    """
    for name in env_vars:
        if name not in os.environ:
            continue
        return os.environ[name] or None
    return os.path.join(tempfile.gettempdir(), default_filename)


def _format(component: str, msg: str, include_traceback: bool) -> List[str]:
    stamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
    prefix = f"[{stamp}] [{component}]"
    lines = [f"{prefix} {msg}\n"]
    if include_traceback:
        tb = traceback.format_exc()
        if tb.strip() != "NoneType: None":
            lines.append(f"{prefix} Traceback:\n{tb}\n")
    return lines


def trace_write(
    component: str,
    msg: str,
    trace_path: Optional[str],
    *,
    include_traceback: bool = False,
) -> None:
    """Append one entry to ``trace_path``. A None path is a no-op; never raises."""
    if not trace_path:
        return
    lines = _format(component, msg, include_traceback)
    try:
        parent = os.path.dirname(os.path.abspath(trace_path))
        if parent not in _created_dirs:
            os.makedirs(parent, exist_ok=True)
            _created_dirs.add(parent)
        with open(trace_path, "a", encoding="utf-8") as f:
            f.writelines(lines)
    except OSError:
        pass


@dataclass(frozen=True)
class TraceChannel:
    """A trace file selected by an environment variable."""
    env_var: str
    default_filename: str

    @property
    def path(self) -> Optional[str]:
        return resolve_trace_path(self.env_var, default_filename=self.default_filename)

    def write(self, component: str, msg: str, include_traceback: bool = False) -> None:
        trace_write(component, msg, self.path, include_traceback=include_traceback)


APP_CHANNEL = TraceChannel("CONDUCTOR_TRACE_LOG", "conductor_trace.log")
PROVIDER_CHANNEL = TraceChannel("CONDUCTOR_PROVIDER_TRACE", "conductor_provider_trace.log")


def trace(component: str, msg: str, *, include_traceback: bool = False) -> None:
    APP_CHANNEL.write(component, msg, include_traceback)


def provider_trace(component: str, msg: str, *, include_traceback: bool = False) -> None:
    PROVIDER_CHANNEL.write(component, msg, include_traceback)
