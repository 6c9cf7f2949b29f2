"""Helpers shared by the scenario workflows."""

from typing import Any


class ApiCallError(RuntimeError):
    """An application API answered with a non-2xx status."""

    def __init__(self, action: str, status: int, body: str = ""):
        self.action = action
        self.status = status
        self.body = body
        super().__init__(f"{action} failed with HTTP {status}: {body[:200]}")


async def read_json(response: Any, action: str) -> Any:
    """Return the JSON body of a Playwright ``APIResponse`` or raise."""
    if not response.ok:
        raise ApiCallError(action, response.status, await response.text())
    return await response.json()
