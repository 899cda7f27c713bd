"""Per-request view handed to every condition and predicate."""

from typing import Any, Dict, List, Mapping, Optional

from pydantic import BaseModel, Field

from unirouter.routing.providers import ProviderConfig


class RouteContext(BaseModel):
    """Everything a rule may look at while routing one request.

    Built once per :meth:`UnifiedRouter.evaluate` call and never shared.

    Attributes:
        token_count: Pre-computed prompt token count.
        messages: Request ``messages`` (empty list if absent).
        system: Request ``system`` entries (empty list if absent).
        tools: Request ``tools`` (empty list if absent).
        session_id: Caller session identifier, if any.
        last_usage: Usage stats of the previous turn, if supplied.
        event: Opaque event payload from the entry point.
        request: The raw request body.
        providers: Provider catalog in effect for this call.
    """

    token_count: int = 0
    messages: List[Any] = Field(default_factory=list)
    system: List[Any] = Field(default_factory=list)
    tools: List[Any] = Field(default_factory=list)
    session_id: Optional[str] = None
    last_usage: Any = None
    event: Any = None
    request: Dict[str, Any] = Field(default_factory=dict)
    providers: List[ProviderConfig] = Field(default_factory=list)

    @classmethod
    def from_request(
        cls,
        request: Mapping[str, Any],
        token_count: int,
        providers: Optional[List[ProviderConfig]] = None,
        last_usage: Any = None,
        session_id: Optional[str] = None,
        event: Any = None,
    ) -> "RouteContext":
        """Build a context from a request body, defaulting list fields."""
        body = dict(request or {})
        system = body.get("system") or []
        if isinstance(system, str):
            system = [{"type": "text", "text": system}]
        return cls(
            token_count=token_count,
            messages=list(body.get("messages") or []),
            system=list(system),
            tools=list(body.get("tools") or []),
            session_id=session_id if session_id is not None else body.get("session_id"),
            last_usage=last_usage,
            event=event,
            request=body,
            providers=list(providers or []),
        )

    @property
    def requested_model(self) -> Optional[str]:
        """The model string exactly as the caller sent it."""
        model = self.request.get("model")
        return model if isinstance(model, str) else None
