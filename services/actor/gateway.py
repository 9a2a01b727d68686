import asyncio
from typing import Any, Optional, Sequence

import httpx

from runtime.version import user_agent
from services.actor.errors import ChatError, ErrorKind, classify
from shared.logging.logger import get_logger

log = get_logger("actor.gateway")


class ActorGateway:
    """
    Single handle to the remote chat actor.

    Responsibilities:
    - Lazily open the HTTP session on first use, then reuse it
    - Share one connection attempt between concurrent first callers
    - Expose `ready` for dependents that must defer reads
    - Dispatch method calls and classify every failure

    Wire shape:
        GET  {url}/api/status                    -> 2xx when the actor is up
        POST {url}/api/{method} {"args": [...]}  -> {"ok": value} | {"err": text}
    """

    STATUS_PATH = "/api/status"
    METHOD_PATH = "/api/{method}"

    def __init__(
        self,
        *,
        base_url: str,
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if not base_url:
            raise RuntimeError("actor base_url is required")

        self.base_url = base_url.rstrip("/")
        self.timeout = timeout

        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None
        self._connecting: Optional[asyncio.Task] = None
        self._ready = False

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    @property
    def ready(self) -> bool:
        return self._ready

    async def connect(self) -> None:
        """
        Open the session if needed. Concurrent callers await the same attempt.
        """
        if self._ready:
            return
        await asyncio.shield(self._start_connect())

    def _start_connect(self) -> asyncio.Task:
        if self._connecting is None or self._connecting.done():
            self._connecting = asyncio.create_task(self._connect())
            self._connecting.add_done_callback(self._connect_finished)
        return self._connecting

    async def _connect(self) -> None:
        client = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=self.timeout,
            transport=self._transport,
            headers={
                "User-Agent": user_agent(),
                "Accept": "application/json",
            },
        )

        try:
            await self._probe(client)
        except BaseException:
            # Also reached when close() cancels a pending attempt.
            await client.aclose()
            raise

        self._client = client
        self._ready = True
        log.info(f"[Gateway] Connected to actor at {self.base_url}")

    async def _probe(self, client: httpx.AsyncClient) -> None:
        try:
            response = await client.get(self.STATUS_PATH)
            response.raise_for_status()
        except httpx.TransportError as e:
            raise classify(e) from e
        except httpx.HTTPStatusError as e:
            raise ChatError(
                ErrorKind.BACKEND_NOT_READY,
                f"Backend not initialized (status={e.response.status_code})",
            ) from e

    def _connect_finished(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            log.warning(f"[Gateway] Connection attempt failed: {error}")

    async def close(self) -> None:
        connecting = self._connecting
        self._connecting = None
        if connecting is not None and not connecting.done():
            connecting.cancel()
            await asyncio.gather(connecting, return_exceptions=True)

        if self._client is not None:
            await self._client.aclose()
            self._client = None

        self._ready = False
        log.debug("[Gateway] Closed")

    # ------------------------------------------------------------------ #
    # Dispatch
    # ------------------------------------------------------------------ #

    async def call(self, method: str, args: Sequence[Any] = ()) -> Any:
        """
        Write path: connect on demand, then dispatch.
        """
        await self.connect()
        return await self._dispatch(method, args)

    async def query(self, method: str, args: Sequence[Any] = ()) -> Any:
        """
        Read path: never waits for the connection.

        A read issued before the actor is reachable fails with
        BACKEND_NOT_READY (and kicks off a connection attempt) so that
        "not connected" is never mistaken for an empty result.
        """
        if not self._ready:
            self._start_connect()
            raise ChatError(
                ErrorKind.BACKEND_NOT_READY,
                f"Backend not initialized ({method})",
            )
        return await self._dispatch(method, args)

    async def _dispatch(self, method: str, args: Sequence[Any]) -> Any:
        client = self._client
        if client is None:
            raise ChatError(ErrorKind.BACKEND_NOT_READY, f"Backend not initialized ({method})")

        try:
            response = await client.post(
                self.METHOD_PATH.format(method=method),
                json={"args": list(args)},
            )
        except httpx.TransportError as e:
            log.debug(f"[Gateway] {method} transport error: {e}")
            raise classify(e) from e

        try:
            payload = response.json()
        except ValueError:
            payload = None

        if isinstance(payload, dict) and "err" in payload:
            raise classify(str(payload["err"]))

        if response.is_server_error:
            # Proxy or gateway failure without an actor payload.
            raise ChatError(
                ErrorKind.NETWORK_UNAVAILABLE,
                f"{method} failed [{response.status_code}]: {response.text[:200]}",
            )

        if response.is_error:
            raise classify(f"{method} failed [{response.status_code}]: {response.text[:200]}")

        if not isinstance(payload, dict) or "ok" not in payload:
            raise ChatError(ErrorKind.UNKNOWN, f"{method}: malformed actor response")

        return payload["ok"]
