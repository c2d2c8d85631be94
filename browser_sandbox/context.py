from __future__ import annotations

import dataclasses
import fnmatch
import json
import logging
from dataclasses import dataclass, field
from typing import Any

from playwright.async_api import BrowserContext, Page, Route

from browser_sandbox.errors import ContextError
from browser_sandbox.session import BrowserSession


LOGGER = logging.getLogger("script-runner.context")

DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)

DEFAULT_EXTRA_HEADERS: dict[str, str] = {
    "Accept-Language": "en-US,en;q=0.9",
    "Accept": "text/html,application/xhtml+xml,application/xml;q=0.9,image/webp,*/*;q=0.8",
    "Upgrade-Insecure-Requests": "1",
}


def build_stealth_script(locale: str) -> str:
    """Fingerprint masking injected before any page script runs."""
    primary = str(locale or "en-US").strip() or "en-US"
    languages = [primary]
    base = primary.split("-", 1)[0]
    if base and base != primary:
        languages.append(base)
    return "\n".join(
        [
            "Object.defineProperty(navigator, 'webdriver', { get: () => undefined });",
            "Object.defineProperty(navigator, 'plugins', { get: () => [1, 2, 3, 4, 5] });",
            f"Object.defineProperty(navigator, 'languages', {{ get: () => {json.dumps(languages)} }});",
            "window.chrome = window.chrome || { runtime: {} };",
        ]
    )


@dataclass(frozen=True)
class ResourceBlockPolicy:
    resource_types: frozenset[str] = frozenset()
    url_patterns: tuple[str, ...] = ()

    @property
    def enabled(self) -> bool:
        return bool(self.resource_types or self.url_patterns)

    def should_block(self, resource_type: str, url: str) -> bool:
        if str(resource_type or "").lower() in self.resource_types:
            return True
        return any(fnmatch.fnmatchcase(url or "", pattern) for pattern in self.url_patterns)


@dataclass(frozen=True)
class ContextOptions:
    locale: str = "en-US"
    user_agent: str = DEFAULT_USER_AGENT
    viewport_width: int = 1920
    viewport_height: int = 1080
    extra_http_headers: dict[str, str] = field(default_factory=lambda: dict(DEFAULT_EXTRA_HEADERS))
    ignore_https_errors: bool = True
    stealth: bool = True
    block: ResourceBlockPolicy = field(default_factory=ResourceBlockPolicy)

    def with_overrides(
        self,
        *,
        locale: str | None = None,
        user_agent: str | None = None,
        viewport_width: int | None = None,
        viewport_height: int | None = None,
        extra_http_headers: dict[str, str] | None = None,
        stealth: bool | None = None,
        block_resource_types: list[str] | None = None,
        block_url_patterns: list[str] | None = None,
    ) -> ContextOptions:
        changes: dict[str, Any] = {}
        if locale is not None:
            changes["locale"] = locale
        if user_agent is not None:
            changes["user_agent"] = user_agent
        if viewport_width is not None:
            changes["viewport_width"] = int(viewport_width)
        if viewport_height is not None:
            changes["viewport_height"] = int(viewport_height)
        if extra_http_headers is not None:
            # Request headers extend the defaults rather than replace them.
            changes["extra_http_headers"] = {**self.extra_http_headers, **extra_http_headers}
        if stealth is not None:
            changes["stealth"] = bool(stealth)
        if block_resource_types is not None or block_url_patterns is not None:
            changes["block"] = ResourceBlockPolicy(
                resource_types=(
                    frozenset(str(t).strip().lower() for t in block_resource_types if str(t).strip())
                    if block_resource_types is not None
                    else self.block.resource_types
                ),
                url_patterns=(
                    tuple(str(p).strip() for p in block_url_patterns if str(p).strip())
                    if block_url_patterns is not None
                    else self.block.url_patterns
                ),
            )
        return dataclasses.replace(self, **changes) if changes else self


@dataclass
class ExecutionContext:
    """An isolated browsing context owned by exactly one request."""

    session: BrowserSession
    context: BrowserContext
    page: Page

    async def close(self) -> None:
        try:
            await self.page.close()
        except Exception:
            LOGGER.debug("Page close failed", exc_info=True)
        try:
            await self.context.close()
        except Exception:
            LOGGER.debug("Context close failed", exc_info=True)


def _route_filter(policy: ResourceBlockPolicy):
    async def _handler(route: Route) -> None:
        try:
            request = route.request
            if policy.should_block(request.resource_type, request.url):
                await route.abort()
                return
        except Exception:
            LOGGER.debug("Resource block check failed", exc_info=True)
        await route.continue_()

    return _handler


async def new_context(session: BrowserSession, options: ContextOptions | None = None) -> ExecutionContext:
    opts = options or ContextOptions()
    context: BrowserContext | None = None
    try:
        context = await session.browser.new_context(
            viewport={"width": int(opts.viewport_width), "height": int(opts.viewport_height)},
            user_agent=opts.user_agent,
            locale=opts.locale,
            extra_http_headers=dict(opts.extra_http_headers),
            ignore_https_errors=bool(opts.ignore_https_errors),
        )
        if opts.stealth:
            await context.add_init_script(build_stealth_script(opts.locale))
        if opts.block.enabled:
            await context.route("**/*", _route_filter(opts.block))
        page = await context.new_page()
    except Exception as exc:
        if context is not None:
            try:
                await context.close()
            except Exception:
                LOGGER.debug("Context close failed after setup error", exc_info=True)
        raise ContextError(f"browser_context_error: {type(exc).__name__}: {exc}") from exc

    return ExecutionContext(session=session, context=context, page=page)
