"""
Resource host interface.

A host owns the real execution resources (browser pages) the pool hands
out. The pool and the executor only talk to resources through this
interface so the browser can be swapped for an in-process double.
"""

import asyncio
import inspect
import itertools
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Optional, Union

from ...schema.messages import CollectPageDataRequest
from ..core.exceptions import ResourceDefunct
from ..core.types import ReadyState

BLANK_URL = "about:blank"
BLANK_URLS = frozenset({BLANK_URL, "chrome://newtab/"})


class ResourceHost(ABC):
    """Provides, inspects and drives pooled resources"""

    @abstractmethod
    async def create(self) -> str:
        """Create a blank resource and return its handle"""

    @abstractmethod
    async def exists(self, resource_id: str) -> bool:
        pass

    @abstractmethod
    async def is_blank(self, resource_id: str) -> bool:
        """Whether the resource shows a blank page and can be reused as-is"""

    @abstractmethod
    async def navigate(self, resource_id: str, url: str) -> None:
        """Start loading ``url``. Returns once navigation has begun, not when it finishes."""

    @abstractmethod
    async def ready_state(self, resource_id: str) -> ReadyState:
        pass

    @abstractmethod
    async def send_message(self, resource_id: str, message: CollectPageDataRequest) -> Optional[Dict[str, Any]]:
        """
        Deliver a request to the resource's execution context.

        Returns the raw response (``{success, data?, error?}``) or None when
        the context did not answer.
        """

    async def reset(self, resource_id: str) -> None:
        """Return the resource to a blank page"""
        await self.navigate(resource_id, BLANK_URL)

    async def close(self) -> None:
        pass


CollectResponse = Optional[Dict[str, Any]]
CollectHandler = Callable[[str, CollectPageDataRequest], Union[CollectResponse, Awaitable[CollectResponse]]]


@dataclass
class _InMemoryPage:
    url: str = BLANK_URL
    ready_at: Optional[float] = 0.0


class InMemoryHost(ResourceHost):
    """
    Scriptable in-process host.

    Pages "load" after ``load_delay`` seconds; a ``load_delay`` of None
    means navigations never complete. ``collect_handler`` produces the
    COLLECT_PAGE_DATA response for a page URL.
    """

    def __init__(
        self,
        load_delay: Optional[float] = 0.0,
        collect_handler: Optional[CollectHandler] = None,
        fail_creates: int = 0,
    ):
        self.load_delay = load_delay
        self.collect_handler = collect_handler
        self.fail_creates = fail_creates
        self.pages: Dict[str, _InMemoryPage] = {}
        self.navigations: Dict[str, list] = {}
        self._ids = itertools.count(1)
        self.closed = False

    async def create(self) -> str:
        if self.fail_creates > 0:
            self.fail_creates -= 1
            raise RuntimeError("resource creation failed")
        resource_id = f"page-{next(self._ids)}"
        self.pages[resource_id] = _InMemoryPage()
        self.navigations[resource_id] = []
        return resource_id

    def adopt(self, resource_id: str, url: str = BLANK_URL) -> None:
        """Register a pre-existing page, as if it survived a restart"""
        self.pages[resource_id] = _InMemoryPage(url=url)
        self.navigations.setdefault(resource_id, [])

    def destroy(self, resource_id: str) -> None:
        """Simulate the page being closed outside the agent"""
        self.pages.pop(resource_id, None)

    def _page(self, resource_id: str) -> _InMemoryPage:
        page = self.pages.get(resource_id)
        if page is None:
            raise ResourceDefunct(resource_id)
        return page

    async def exists(self, resource_id: str) -> bool:
        return resource_id in self.pages

    async def is_blank(self, resource_id: str) -> bool:
        return self._page(resource_id).url in BLANK_URLS

    async def navigate(self, resource_id: str, url: str) -> None:
        page = self._page(resource_id)
        page.url = url
        self.navigations[resource_id].append(url)
        if url in BLANK_URLS:
            page.ready_at = 0.0
        elif self.load_delay is None:
            page.ready_at = None
        else:
            page.ready_at = asyncio.get_running_loop().time() + self.load_delay

    async def ready_state(self, resource_id: str) -> ReadyState:
        page = self._page(resource_id)
        if page.ready_at is not None and asyncio.get_running_loop().time() >= page.ready_at:
            return ReadyState.COMPLETE
        return ReadyState.LOADING

    async def send_message(self, resource_id: str, message: CollectPageDataRequest) -> Optional[Dict[str, Any]]:
        page = self._page(resource_id)
        if self.collect_handler is None:
            return {"success": True, "data": {"pageInfo": {"url": page.url}, "jobId": message.job_id}}
        response = self.collect_handler(page.url, message)
        if inspect.isawaitable(response):
            response = await response
        return response

    async def close(self) -> None:
        self.closed = True
