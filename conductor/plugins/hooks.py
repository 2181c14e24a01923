"""Plugin hook pipeline.

Hooks are registered per ``HookPoint`` and run as an ordered chain in
registration order (plugin load order). Each hook is called as
``hook(payload, context)``.

- Transforming points (on_prompt, on_response): a non-None return value
  replaces the payload seen by the next hook and returned by ``run``.
- Observer points: the return value is ignored.
- A raising hook is isolated: a ``HookError`` is recorded on the pipeline and
  on the context, the hook's effect is skipped and the chain continues.
- ``HookVeto`` raised from an on_prompt hook propagates to the caller.
"""

import logging
import threading
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Deque, Dict, List, Optional, Tuple, Union

from ..errors import HookError, HookVeto, PluginValidationError
from ..trace import trace
from .base import Hook, HookPoint
from .model_provider.types import CodeBlockSegment, TextSegment, ToolCallSegment

logger = logging.getLogger(__name__)

_RESPONSE_SEGMENT_TYPES = (TextSegment, CodeBlockSegment, ToolCallSegment)

# Errors kept on the pipeline when nobody drains them
MAX_RECORDED_ERRORS = 200


@dataclass
class HookContext:
    """What a hook sees besides its payload.

    Attributes:
        session_id: Session the hook runs for (None for on_load).
        scratch: The session's key/value scratch state, shared by plugins.
        model: Active model selection.
        agent: Active agent name.
        errors: HookErrors recorded while running hooks for this context.
    """
    session_id: Optional[str] = None
    scratch: Dict[str, Any] = field(default_factory=dict)
    model: Optional[str] = None
    agent: Optional[str] = None
    errors: List[HookError] = field(default_factory=list)


@dataclass
class _Registration:
    hook: Hook
    owner: Optional[str]


class HookPipeline:
    """Per-point ordered hook chains with error isolation.

    Usage:
        pipeline = HookPipeline()
        pipeline.register(redact_secrets, HookPoint.ON_PROMPT, owner="redactor")
        prompt = pipeline.run(HookPoint.ON_PROMPT, prompt, context)
    """

    def __init__(self):
        self._chains: Dict[HookPoint, List[_Registration]] = {point: [] for point in HookPoint}
        self._errors: Deque[HookError] = deque(maxlen=MAX_RECORDED_ERRORS)
        self._lock = threading.Lock()

    @staticmethod
    def _coerce_point(point: Union[HookPoint, str]) -> HookPoint:
        try:
            return HookPoint(point)
        except ValueError:
            valid = ", ".join(p.value for p in HookPoint)
            raise PluginValidationError(f"Unknown hook point '{point}'. Valid points: {valid}")

    def register(self, hook: Hook, point: Union[HookPoint, str], owner: Optional[str] = None) -> None:
        """Append ``hook`` to the chain for ``point``.

        Raises:
            PluginValidationError: ``hook`` is not callable or ``point`` is unknown.
        """
        point = self._coerce_point(point)
        if not callable(hook):
            raise PluginValidationError(f"Hook for {point.value} from '{owner}' is not callable")
        with self._lock:
            self._chains[point].append(_Registration(hook, owner))
        logger.debug("Registered %s hook from %s", point.value, owner or "<anonymous>")

    def unregister_owner(self, owner: str) -> int:
        """Remove every hook registered by ``owner``. Returns how many were removed."""
        removed = 0
        with self._lock:
            for point, chain in self._chains.items():
                kept = [r for r in chain if r.owner != owner]
                removed += len(chain) - len(kept)
                self._chains[point] = kept
        return removed

    def registered(self, point: Union[HookPoint, str]) -> List[Tuple[Optional[str], Hook]]:
        """(owner, hook) pairs for ``point`` in execution order."""
        point = self._coerce_point(point)
        with self._lock:
            return [(r.owner, r.hook) for r in self._chains[point]]

    def run(
        self,
        point: Union[HookPoint, str],
        payload: Any,
        context: Optional[HookContext] = None,
    ) -> Any:
        """Run the chain for ``point`` and return the (possibly replaced) payload.

        Raises:
            HookVeto: An on_prompt hook rejected the prompt.
        """
        point = self._coerce_point(point)
        if context is None:
            context = HookContext()

        with self._lock:
            chain = list(self._chains[point])

        original = payload
        for registration in chain:
            try:
                result = registration.hook(payload, context)
            except HookVeto:
                if point == HookPoint.ON_PROMPT:
                    trace("HookPipeline", f"prompt vetoed by {registration.owner}")
                    raise
                self._record(point, registration.owner,
                             TypeError("HookVeto is only honoured at on_prompt"), context)
                continue
            except Exception as exc:
                self._record(point, registration.owner, exc, context)
                continue

            if not point.transforms or result is None:
                continue
            problem = self._validate_replacement(point, result, original)
            if problem:
                self._record(point, registration.owner, TypeError(problem), context)
                continue
            payload = result

        return payload

    @staticmethod
    def _validate_replacement(point: HookPoint, result: Any, original: Any) -> Optional[str]:
        if point == HookPoint.ON_PROMPT and not isinstance(result, str):
            return f"on_prompt hook returned {type(result).__name__}, expected str"
        if point == HookPoint.ON_RESPONSE:
            if not isinstance(result, (list, tuple)):
                return f"on_response hook returned {type(result).__name__}, expected a segment list"
            requested = {s.call_id for s in original or () if isinstance(s, ToolCallSegment)}
            call_ids = set()
            for seg in result:
                if not isinstance(seg, _RESPONSE_SEGMENT_TYPES):
                    return f"on_response hook returned a non-segment item: {type(seg).__name__}"
                if isinstance(seg, ToolCallSegment):
                    if not seg.call_id:
                        return f"on_response hook returned tool call '{seg.name}' without a call id"
                    if seg.call_id in call_ids:
                        return f"on_response hook returned duplicate tool call id '{seg.call_id}'"
                    if seg.call_id not in requested:
                        return f"on_response hook added tool call '{seg.call_id}' the model did not request"
                    call_ids.add(seg.call_id)
        return None

    def _record(
        self,
        point: HookPoint,
        owner: Optional[str],
        exc: BaseException,
        context: HookContext,
    ) -> None:
        error = HookError(point.value, owner, exc)
        logger.warning("%s", error)
        trace("HookPipeline", str(error))
        context.errors.append(error)
        self._errors.append(error)

    @property
    def errors(self) -> List[HookError]:
        """Recorded hook errors, oldest first."""
        return list(self._errors)

    def drain_errors(self) -> List[HookError]:
        """Return and clear the recorded hook errors."""
        with self._lock:
            drained = list(self._errors)
            self._errors.clear()
        return drained
