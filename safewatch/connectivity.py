import asyncio
import logging
from typing import Awaitable, Callable

import httpx

from safewatch import config
from safewatch.ticker import Ticker

logger = logging.getLogger(__name__)

ConnectivityListener = Callable[[bool], Awaitable[None]]


class ConnectivitySignal:
    """Online/offline flag with change notification."""

    def __init__(self, online: bool = True) -> None:
        self._online = bool(online)
        self._listeners: list[ConnectivityListener] = []

    @property
    def is_online(self) -> bool:
        return self._online

    def add_listener(self, listener: ConnectivityListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    async def set_online(self, online: bool) -> None:
        online = bool(online)
        if online == self._online:
            return
        self._online = online
        logger.info("CONNECTIVITY_CHANGED online=%s", online)
        for listener in list(self._listeners):
            try:
                await listener(online)
            except Exception as exc:
                logger.error("CONNECTIVITY_LISTENER_FAILED error=%s", exc, exc_info=True)


class ConnectivityProbe:
    """Periodically checks reachability of a URL and feeds the signal."""

    def __init__(self, signal: ConnectivitySignal, *, url: str | None = None, every_sec: float | None = None) -> None:
        self.signal = signal
        self.url = url or config.CONNECTIVITY_PROBE_URL
        self._client = httpx.AsyncClient(timeout=httpx.Timeout(3.0), headers={"User-Agent": "safewatch/1.0"})
        self._ticker = Ticker("connectivity-probe", every_sec or config.CONNECTIVITY_PROBE_EVERY_SEC, self.check, first=0)

    async def check(self) -> bool:
        try:
            response = await self._client.head(self.url)
            online = response.status_code < 500
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            logger.debug("CONNECTIVITY_PROBE_FAILED url=%s error=%s", self.url, exc)
            online = False
        await self.signal.set_online(online)
        return online

    def start(self) -> None:
        self._ticker.start()

    async def aclose(self) -> None:
        await self._ticker.stop()
        await self._client.aclose()
