"""Channel categories and the selector tracking the active one."""
from __future__ import annotations

from enum import Enum
from typing import Any, Callable, Mapping, Optional
from urllib.parse import parse_qs, urlparse

from .errors import InvalidCategoryError
from .logging_utils import get_logger

log = get_logger(__name__)

CategoryListener = Callable[["Category"], None]


class Category(str, Enum):
    """The three independent channel namespaces served by a relay."""

    MESSAGES = "messages"
    RESPONSES = "responses"
    GEMINI = "gemini"

    @classmethod
    def parse(cls, value: object) -> "Category":
        """Return the category for *value* or raise :class:`InvalidCategoryError`."""

        if isinstance(value, cls):
            return value
        if isinstance(value, str):
            normalized = value.strip().lower()
            for category in cls:
                if category.value == normalized:
                    return category
        raise InvalidCategoryError(f"Unknown channel category: {value!r}")

    @classmethod
    def try_parse(cls, value: object) -> Optional["Category"]:
        """Like :meth:`parse` but return ``None`` for unknown values."""

        try:
            return cls.parse(value)
        except InvalidCategoryError:
            return None

    @property
    def label(self) -> str:
        return self.value.capitalize()


DEFAULT_CATEGORY = Category.MESSAGES


def _first(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return value[0] if value else None
    return value


def category_from_route(
    path: str,
    params: Optional[Mapping[str, Any]] = None,
    query: Optional[Mapping[str, Any]] = None,
) -> Optional[Category]:
    """Map a navigation location to a category.

    ``/channels/<type>`` and ``/monitor?type=<type>`` name a category
    explicitly; ``/`` redirects to the default one. Anything else, including
    an unknown ``<type>``, yields ``None``.
    """

    normalized = "/" + path.strip().strip("/") if path.strip() else "/"
    if normalized == "/":
        return DEFAULT_CATEGORY
    if normalized.startswith("/channels/"):
        candidate = _first((params or {}).get("type"))
        if candidate is None:
            candidate = normalized[len("/channels/"):].split("/", 1)[0]
        return Category.try_parse(candidate)
    if normalized == "/monitor":
        return Category.try_parse(_first((query or {}).get("type")))
    return None


class CategorySelector:
    """Hold the active category and follow navigation signals.

    Reads never block and invalid signals leave the current value alone.
    Direct selection through :meth:`select` fails loudly on bad input.
    """

    def __init__(self, initial: Category | str = DEFAULT_CATEGORY) -> None:
        self._current = Category.parse(initial)
        self._listeners: list[CategoryListener] = []

    @property
    def current(self) -> Category:
        return self._current

    def subscribe(self, listener: CategoryListener) -> Callable[[], None]:
        """Register *listener* for category changes and return an unsubscribe callable."""

        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def select(self, category: Category | str) -> Category:
        """Make *category* the active one."""

        resolved = Category.parse(category)
        self._set(resolved)
        return resolved

    def apply_route(
        self,
        path: str,
        params: Optional[Mapping[str, Any]] = None,
        query: Optional[Mapping[str, Any]] = None,
    ) -> Optional[Category]:
        """Update the category from a navigation signal.

        Returns the category the signal mapped to, or ``None`` when the
        signal was ignored.
        """

        resolved = category_from_route(path, params, query)
        if resolved is None:
            log.debug("Ignoring navigation signal %s", path)
            return None
        self._set(resolved)
        return resolved

    def apply_url(self, url: str) -> Optional[Category]:
        """Parse *url* (absolute or a bare path) and apply it as a route."""

        parsed = urlparse(url)
        return self.apply_route(parsed.path or "/", query=parse_qs(parsed.query))

    def _set(self, category: Category) -> None:
        if category is self._current:
            return
        previous = self._current
        self._current = category
        log.info("Active category changed from %s to %s", previous.value, category.value)
        for listener in list(self._listeners):
            try:
                listener(category)
            except Exception:
                log.exception("Category listener %r failed", listener)


__all__ = [
    "Category",
    "CategorySelector",
    "DEFAULT_CATEGORY",
    "category_from_route",
]
