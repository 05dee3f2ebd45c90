"""
Cooperative cancellation tokens for asyncio code.

A token is cancelled once and stays cancelled. `CancelToken.any_of` links tokens
so the combined token fires as soon as any parent does.
"""

from __future__ import annotations

import asyncio


class CancelToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self._children: list[CancelToken] = []
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()
        children, self._children = self._children, []
        for child in children:
            child.cancel(reason)

    async def wait(self) -> None:
        await self._event.wait()

    @classmethod
    def any_of(cls, *tokens: CancelToken | None) -> CancelToken:
        """A token cancelled as soon as any of `tokens` is."""
        combined = cls()
        for token in tokens:
            if token is None:
                continue
            if token.cancelled:
                combined.cancel(token.reason or "cancelled")
            else:
                token._children.append(combined)
        return combined

    def detach(self, *parents: CancelToken | None) -> None:
        """Stop listening to `parents`; a no-op for tokens that were never linked."""
        for parent in parents:
            if parent is not None and self in parent._children:
                parent._children.remove(self)
