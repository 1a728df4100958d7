"""Reply actions: named callbacks bound to a message and run when a user replies.

A message stores only ``{"name": ..., "args": [...]}``; the callable is looked
up by name at dispatch time, so the record survives restarts and deploys.
"""
import inspect
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

ActionHandler = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class ReplyAction:
    name: str
    args: List[Any] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "args": list(self.args)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ReplyAction":
        return cls(name=data["name"], args=list(data.get("args") or []))


class ActionRegistry:
    def __init__(self):
        self._handlers: Dict[str, ActionHandler] = {}

    def register(self, name: str, handler: ActionHandler) -> None:
        if name in self._handlers and self._handlers[name] is not handler:
            raise ValueError(f"reply action {name} is already registered")
        self._handlers[name] = handler

    def __contains__(self, name: str) -> bool:
        return name in self._handlers

    def bind(self, name: str, *args: Any) -> ReplyAction:
        """Build a ReplyAction, checking the handler exists and accepts ``args``."""
        handler = self._handlers.get(name)
        if handler is None:
            raise ValueError(f"reply action {name} is not registered")
        try:
            # The first parameter is the reply context supplied at dispatch.
            inspect.signature(handler).bind(None, *args)
        except TypeError as e:
            raise ValueError(f"reply action {name} does not accept {len(args)} args: {e}") from e
        try:
            json.dumps(list(args))
        except TypeError as e:
            raise ValueError(f"reply action {name} args are not serializable: {e}") from e
        return ReplyAction(name=name, args=list(args))

    async def dispatch(self, action: ReplyAction, ctx: Any) -> Optional[Any]:
        handler = self._handlers.get(action.name)
        if handler is None:
            logger.error(f"Reply action {action.name} is not registered, dropping reply")
            return None
        logger.info(f"Dispatching reply action {action.name}")
        return await handler(ctx, *action.args)
