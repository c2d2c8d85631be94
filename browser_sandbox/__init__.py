"""Browser sandbox for client-submitted Playwright scripts.

The HTTP layer (`browser_api`) hands script text to `ScriptExecutor`, which
gets a browser from `SessionProvider`, derives an isolated context for the
request and tears it down again on every exit path.
"""
