import asyncio
from typing import AsyncIterator, Dict

from advisor.models import EventStatus, ProgressEvent

_CLOSED = object()


class ProgressStream:
    """Ordered, one-directional channel of progress events for one request.

    The pipeline pushes events with `emit` (never blocks) and calls `close`
    when it is done; the transport side drains them with `events()`. Events
    emitted after `close` are dropped. `sections` keeps the latest status line
    per agent so a caller can `render()` a compact overview.
    """

    def __init__(self):
        self.queue: asyncio.Queue = asyncio.Queue()
        self.sections: Dict[str, str] = {}
        self.closed = False
        self.emitted = 0
        self._icons = {
            "running": "[~]",
            "done": "[+]",
            "error": "[!]",
            "skipped": "[-]",
        }

    def emit(self, event: ProgressEvent):
        if self.closed:
            return
        if event.status == EventStatus.EXECUTING_AGENTS:
            for agent_id in event.data.get("agents", []):
                self.sections[agent_id] = "running"
        elif event.status == EventStatus.AGENT_COMPLETED:
            out = event.data.get("output") or {}
            if out.get("success"):
                status = "done"
            else:
                status = "skipped" if out.get("skipped") else "error"
            self.sections[out.get("agent_id", "?")] = status
        self.queue.put_nowait(event)
        self.emitted += 1

    def close(self):
        if self.closed:
            return
        self.closed = True
        self.queue.put_nowait(_CLOSED)

    def render(self) -> str:
        lines = ["Agents:"]
        for agent_id, status in self.sections.items():
            lines.append(f"{self._icons.get(status, '[ ]')} {agent_id}: {status}")
        return "\n".join(lines)

    async def events(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self.queue.get()
            if item is _CLOSED:
                return
            yield item
