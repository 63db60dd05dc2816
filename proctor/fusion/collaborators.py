from __future__ import annotations
from collections import defaultdict
from typing import Any, Dict, List, Optional, Protocol
import logging

import httpx

from proctor.scoring.integrity_report import IntegrityReporter

log = logging.getLogger("proctor.collaborators")

EventDicts = List[Dict[str, Any]]


class AnalysisClient(Protocol):
    async def analyze(self, session_id: str, events: EventDicts) -> Dict[str, Any]: ...


class PersistenceClient(Protocol):
    async def save_events(self, session_id: str, events: EventDicts) -> None: ...

    async def save_report(self, session_id: str, report: Dict[str, Any]) -> None: ...


class InMemoryStore:
    """Process-local persistence; what the service uses when no store URL is configured."""

    def __init__(self):
        self.events: Dict[str, EventDicts] = defaultdict(list)
        self.reports: Dict[str, List[Dict[str, Any]]] = defaultdict(list)

    async def save_events(self, session_id: str, events: EventDicts) -> None:
        self.events[session_id].extend(events)

    async def save_report(self, session_id: str, report: Dict[str, Any]) -> None:
        self.reports[session_id].append(report)


class LocalAnalysisClient:
    def __init__(self, reporter: Optional[IntegrityReporter] = None):
        self.reporter = reporter or IntegrityReporter()

    async def analyze(self, session_id: str, events: EventDicts) -> Dict[str, Any]:
        out = self.reporter.report(events)
        out["session_id"] = session_id
        return out


class _HttpClient:
    def __init__(self, base_url: str, timeout: float = 30.0, token: Optional[str] = None,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.token = token
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Authorization": f"Bearer {self.token}"} if self.token else None
        return httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout, headers=headers,
                                 transport=self.transport)

    async def _post(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        async with self._client() as client:
            response = await client.post(path, json=payload)
            response.raise_for_status()
            return response


class HttpAnalysisClient(_HttpClient):
    """POST {base}/analyze with {session_id, events}; the JSON body is the report."""

    async def analyze(self, session_id: str, events: EventDicts) -> Dict[str, Any]:
        response = await self._post("/analyze", {"session_id": session_id, "events": events})
        report = response.json()
        log.info("analysis ok session=%s events=%d", session_id, len(events))
        return report


class HttpPersistenceClient(_HttpClient):
    async def save_events(self, session_id: str, events: EventDicts) -> None:
        await self._post(f"/sessions/{session_id}/events", {"events": events})

    async def save_report(self, session_id: str, report: Dict[str, Any]) -> None:
        await self._post(f"/sessions/{session_id}/report", {"report": report})
