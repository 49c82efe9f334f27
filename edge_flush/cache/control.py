"""
Cache-Control Decision Engine

Decides, per response, whether the edge may cache it and renders the
Cache-Control header for the chosen strategy.

Cachability is the AND of eight factors (the "matrix"):
1. enabled                  - feature flag
2. is_frontend              - running a front-end render
3. not_valid_form           - no session-bound (CSRF) form in the body
4. middleware_allow_caching - route did not opt out
5. route_is_cachable        - route name allow/deny lists (glob)
6. response_is_cachable     - response class allow/deny lists
7. method_is_cachable       - HTTP method allow/deny lists
8. status_code_is_cachable  - status code allow/deny lists

Usage:
    cache_control = CacheControl(settings, request)
    cache_control.set_max_age(300)
    response = cache_control.make_response(response)
"""

import importlib
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Callable, Dict, Iterable, Optional, Union

from starlette.requests import Request
from starlette.responses import FileResponse, Response, StreamingResponse

from edge_flush.cache.config import EdgeFlushSettings
from edge_flush.cache.exceptions import FrontendCheckerError
from edge_flush.utils.patterns import matches_any


logger = logging.getLogger(__name__)

CSRF_PLACEHOLDER = "%CSRF_TOKEN%"

UNSUPPORTED_DIRECTIVES = (
    "max-stale",
    "min-fresh",
    "stale-while-revalidate",
    "stale-if-error",
)

MAX_AGE_DIRECTIVES = ("max-age", "s-maxage")

DO_NOT_CACHE_STATE = "edge_flush_do_not_cache"


def do_not_cache_response(request: Request) -> None:
    """
    Route dependency opting a route out of edge caching.

    Usage:
        @router.get("/account", dependencies=[Depends(do_not_cache_response)])
    """
    setattr(request.state, DO_NOT_CACHE_STATE, True)


# =============================================================================
# FRONT-END CHECKERS
# =============================================================================

class FrontendChecker(ABC):
    """Answers whether the current execution context is a front-end render."""

    @abstractmethod
    def running_on_frontend(self) -> bool:
        ...


class StaticFrontendChecker(FrontendChecker):
    def __init__(self, value: bool):
        self.value = value

    def running_on_frontend(self) -> bool:
        return self.value


class CallableFrontendChecker(FrontendChecker):
    def __init__(self, predicate: Callable[[], bool]):
        self.predicate = predicate

    def running_on_frontend(self) -> bool:
        return bool(self.predicate())


class DelegateFrontendChecker(FrontendChecker):
    """Wraps any object exposing running_on_frontend()."""

    def __init__(self, delegate: Any):
        self.delegate = delegate

    def running_on_frontend(self) -> bool:
        return bool(self.delegate.running_on_frontend())


def make_frontend_checker(value: Any) -> FrontendChecker:
    """
    Resolve the configured check once.

    Accepts a bool, a zero-argument callable, an object or class with
    running_on_frontend(), or a dotted path to such a class.
    """
    if isinstance(value, FrontendChecker):
        return value

    if isinstance(value, bool):
        return StaticFrontendChecker(value)

    if isinstance(value, str):
        # Environment variables arrive as strings
        lowered = value.strip().lower()
        if lowered in ("true", "false", "1", "0"):
            return StaticFrontendChecker(lowered in ("true", "1"))

        module_name, _, class_name = value.strip().rpartition(".")
        try:
            value = getattr(importlib.import_module(module_name), class_name)
        except (ImportError, AttributeError, ValueError):
            raise FrontendCheckerError.unsupported_type("str")

    if isinstance(value, type) and hasattr(value, "running_on_frontend"):
        value = value()

    if hasattr(value, "running_on_frontend"):
        return DelegateFrontendChecker(value)

    if callable(value):
        return CallableFrontendChecker(value)

    raise FrontendCheckerError.unsupported_type(type(value).__name__)


def passes_lists(value: Any, allowed: Iterable[Any], denied: Iterable[Any]) -> bool:
    """Allowed (or empty allow-list) and not denied. Compared as strings."""
    allowed = [str(item) for item in allowed or []]
    denied = [str(item) for item in denied or []]
    value = str(value)

    return (not allowed or value in allowed) and value not in denied


# =============================================================================
# CACHE CONTROL
# =============================================================================

class CacheControl:
    """
    Request-scoped cache decision engine.

    Not shared between requests: it memoizes the cachability result and the
    minified response content.
    """

    def __init__(
        self,
        settings: EdgeFlushSettings,
        request: Optional[Request] = None,
        frontend_checker: Optional[FrontendChecker] = None,
    ):
        self.settings = settings
        self.request = request
        self.frontend_checker = frontend_checker or make_frontend_checker(settings.frontend_checker)

        self._is_cachable: Optional[bool] = None
        self._content: Optional[str] = None
        self.strategy: Optional[str] = None
        self.max_age: Optional[int] = None

    def make_response(self, response: Response) -> Response:
        """Set the Cache-Control header on the response."""
        response.headers["Cache-Control"] = self.get_cache_strategy(response)
        return response

    # -------------------------------------------------------------------------
    # Cachability
    # -------------------------------------------------------------------------

    def is_cachable(self, response: Optional[Response] = None) -> bool:
        if self._is_cachable is not None:
            return self._is_cachable

        matrix = self.get_cachable_matrix(response)

        self._is_cachable = all(matrix.values())

        logger.debug(f"Cachable matrix: {matrix}")

        return self._is_cachable

    def get_cachable_matrix(self, response: Optional[Response]) -> Dict[str, bool]:
        """All eight factors, fully evaluated."""
        return {
            "enabled": self.settings.enabled,
            "is_frontend": self.is_frontend(),
            "not_valid_form": self.does_not_contain_a_valid_form(response),
            "middleware_allow_caching": self.middlewares_allow_caching(),
            "route_is_cachable": self.route_is_cachable(),
            "response_is_cachable": self.response_is_cachable(response),
            "method_is_cachable": self.method_is_cachable(),
            "status_code_is_cachable": self.status_code_is_cachable(response),
        }

    def is_frontend(self) -> bool:
        return self.frontend_checker.running_on_frontend()

    def does_not_contain_a_valid_form(self, response: Optional[Response]) -> bool:
        forms = self.settings.valid_forms

        if not forms.enabled or not forms.strings:
            return True

        token = self.csrf_token()

        has_form = all(
            self.content_contains(response, string.replace(CSRF_PLACEHOLDER, token))
            for string in forms.strings
        )

        return not has_form

    def middlewares_allow_caching(self) -> bool:
        if self.request is None:
            return True

        if getattr(self.request.state, DO_NOT_CACHE_STATE, False):
            return False

        route = self.request.scope.get("route")
        dependencies = getattr(route, "dependencies", None) or []

        return not any(
            getattr(dependency, "dependency", None) is do_not_cache_response
            for dependency in dependencies
        )

    def route_is_cachable(self) -> bool:
        route = self.request.scope.get("route") if self.request is not None else None
        name = getattr(route, "name", None)

        if not name:
            return self.settings.routes.cache_nameless_routes

        routes = self.settings.routes

        return (
            (not routes.cachable or matches_any(routes.cachable, name))
            and not matches_any(routes.not_cachable, name)
        )

    def response_is_cachable(self, response: Optional[Response]) -> bool:
        responses = self.settings.responses
        response_class = type(response)

        names = {response_class.__name__, f"{response_class.__module__}.{response_class.__qualname__}"}

        allowed = [str(item) for item in responses.cachable]
        denied = [str(item) for item in responses.not_cachable]

        return (
            (not allowed or bool(names.intersection(allowed)))
            and not names.intersection(denied)
        )

    def method_is_cachable(self) -> bool:
        method = self.request.method if self.request is not None else ""

        return passes_lists(method, self.settings.methods.cachable, self.settings.methods.not_cachable)

    def status_code_is_cachable(self, response: Optional[Response]) -> bool:
        status = getattr(response, "status_code", "")

        return passes_lists(status, self.settings.statuses.cachable, self.settings.statuses.not_cachable)

    # -------------------------------------------------------------------------
    # Content scanning
    # -------------------------------------------------------------------------

    def csrf_token(self) -> str:
        if self.request is None:
            return ""

        token = getattr(self.request.state, "csrf_token", None)

        if token is None:
            token = self.request.cookies.get(self.settings.csrf_cookie_name)

        return token or ""

    def get_content(self, response: Optional[Response]) -> str:
        if self._content is None:
            self._content = self.minify_content(self.response_body(response))

        return self._content

    @staticmethod
    def response_body(response: Optional[Response]) -> str:
        """Response body as text. File and streaming bodies are never materialized."""
        if response is None or isinstance(response, (FileResponse, StreamingResponse)):
            return ""

        body = getattr(response, "body", b"") or b""

        if isinstance(body, bytes):
            return body.decode(getattr(response, "charset", None) or "utf-8", errors="ignore")

        return str(body)

    def content_contains(self, response: Optional[Response], string: str) -> bool:
        return self.minify_content(string) in self.get_content(response)

    @staticmethod
    def minify_content(content: str) -> str:
        return re.sub(r"\s+", "", content)

    # -------------------------------------------------------------------------
    # Strategies
    # -------------------------------------------------------------------------

    def get_cache_strategy(self, response: Optional[Response]) -> str:
        if self.strategy:
            return self.build_strategy(self.strategy)

        return (
            self.build_strategy("cache")
            if self.is_cachable(response)
            else self.build_strategy("do-not-cache")
        )

    def build_strategy(self, strategy: str) -> str:
        """
        Render a named strategy, e.g. "max-age=604800, public".

        Directives are sorted so the header is byte-identical between renders.
        """
        directives = []

        for directive in self.settings.strategies.get(strategy, []):
            value = self.get_header_value(directive)

            directives.append(directive if value == directive else f"{directive}={value}")

        return ", ".join(sorted(directives))

    def get_header_value(self, directive: str) -> Union[int, str]:
        if directive in MAX_AGE_DIRECTIVES:
            return self.get_max_age()

        if directive in UNSUPPORTED_DIRECTIVES:
            return "unsupported"

        return directive

    def get_strategy(self) -> Optional[str]:
        return self.strategy

    def set_strategy(self, strategy: str) -> "CacheControl":
        self.strategy = strategy
        return self

    # -------------------------------------------------------------------------
    # Max age
    # -------------------------------------------------------------------------

    def set_max_age(self, max_age: Optional[int]) -> "CacheControl":
        """
        Propose a max-age. Several layers may propose one:
        - "min": the smallest proposal (or default) wins
        - "last": the latest proposal wins
        """
        if not max_age:
            return self

        merge = self.settings.max_age.strategy

        if merge == "min":
            current = self.max_age if self.max_age is not None else self.get_default_max_age()
            self.max_age = min(int(max_age), current)

        elif merge == "last":
            self.max_age = int(max_age)

        return self

    def get_max_age(self) -> int:
        if self.max_age is not None:
            return self.max_age

        return self.get_default_max_age()

    def get_default_max_age(self) -> int:
        return int(self.settings.max_age.default)
