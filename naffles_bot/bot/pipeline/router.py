"""Handler registry for commands and components.

Component custom IDs follow a ``verb_noun_<id>`` scheme. A route is
registered either for an exact name (``unlink_community``) or as a prefix
route (``complete_task``) in which case the remainder after ``<verb>_`` is
handed to the handler as ``ctx.argument``.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from naffles_bot.bot.pipeline.context import InteractionContext

logger = logging.getLogger(__name__)

Handler = Callable[[InteractionContext], Awaitable[None]]


@dataclass(frozen=True)
class Route:
    """A registered handler.

    Attributes:
        category: Interaction category the route answers
        verb: Exact name or prefix verb
        handler: Coroutine taking an :class:`InteractionContext`
        prefix: Whether ``verb`` matches ``<verb>_<argument>`` names
        permission: Permission policy key, defaults to ``verb``
        operation: Degradation key used by the fallback responder
    """

    category: str
    verb: str
    handler: Handler
    prefix: bool = False
    permission: Optional[str] = None
    operation: str = ""

    @property
    def permission_key(self) -> str:
        return self.permission or self.verb


@dataclass(frozen=True)
class RouteMatch:
    route: Route
    argument: Optional[str] = None


class DuplicateRouteError(ValueError):
    """Raised when two handlers claim the same (category, verb)."""
    pass


class HandlerRegistry:
    """Routes ``(category, name)`` pairs to handlers."""

    def __init__(self):
        self._exact: dict[tuple[str, str], Route] = {}
        self._prefix: dict[tuple[str, str], Route] = {}

    def add(self, route: Route) -> Route:
        table = self._prefix if route.prefix else self._exact
        key = (route.category, route.verb)
        if key in table:
            raise DuplicateRouteError(f"Handler already registered for {route.category}:{route.verb}")
        table[key] = route
        logger.debug(f"Registered {route.category} handler {route.verb}{'_*' if route.prefix else ''}")
        return route

    def register(
        self,
        category: str,
        verb: str,
        *,
        prefix: bool = False,
        permission: Optional[str] = None,
        operation: str = "",
    ) -> Callable[[Handler], Handler]:
        """Decorator form of :meth:`add`."""

        def decorator(handler: Handler) -> Handler:
            self.add(Route(category, verb, handler, prefix, permission, operation))
            return handler

        return decorator

    def remove_category_routes(self, verbs: set[str]) -> None:
        """Drop every route whose verb is in ``verbs`` (plugin unload)."""
        for table in (self._exact, self._prefix):
            for key in [key for key in table if key[1] in verbs]:
                del table[key]

    def resolve(self, category: str, name: str) -> Optional[RouteMatch]:
        """Find the route for an interaction name.

        Exact routes win; otherwise the longest prefix verb whose
        ``<verb>_`` starts the name is used.
        """
        route = self._exact.get((category, name))
        if route is not None:
            return RouteMatch(route)

        best: Optional[Route] = None
        for (route_category, verb), candidate in self._prefix.items():
            if route_category != category or not name.startswith(f"{verb}_"):
                continue
            if best is None or len(verb) > len(best.verb):
                best = candidate
        if best is None:
            return None

        argument = name[len(best.verb) + 1:]
        if not argument:
            return None
        return RouteMatch(best, argument)

    def routes(self) -> list[Route]:
        return [*self._exact.values(), *self._prefix.values()]

    def __len__(self) -> int:
        return len(self._exact) + len(self._prefix)
