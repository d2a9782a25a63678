"""Slack transport: RTM v2 event stream plus async Web API calls (slack_sdk)."""

from __future__ import annotations

import asyncio
import threading
from typing import Any

import aiohttp
from loguru import logger
from slack_sdk.errors import SlackApiError
from slack_sdk.rtm_v2 import RTMClient
from slack_sdk.web.async_client import AsyncWebClient
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from slackrelay.adapters.base import TransportHandler

# auth.test errors that no amount of retrying will fix
FATAL_AUTH_ERRORS = frozenset({"invalid_auth", "not_authed", "account_inactive", "token_revoked"})

# Transient Web API failures: 3 attempts, exponential backoff 1-10s
WEB_RETRY = retry(
    stop=stop_after_attempt(3),
    wait=wait_exponential(multiplier=1, min=1, max=10),
    retry=retry_if_exception_type((aiohttp.ClientConnectionError, asyncio.TimeoutError)),
    reraise=True,
)

_CHANNEL_TYPES = "public_channel,private_channel"


class SlackTransport:
    """Real-time Slack client for one token.

    RTM callbacks arrive on slack_sdk worker threads and are handed to the
    event loop with call_soon_threadsafe.
    """

    def __init__(
        self,
        token: str,
        *,
        web_client: AsyncWebClient | None = None,
        rtm_factory: Any = None,
    ) -> None:
        self._token = token
        self._web = web_client or AsyncWebClient(token=token)
        self._rtm_factory = rtm_factory or RTMClient
        self._rtm: RTMClient | None = None
        self._handler: TransportHandler | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._task: asyncio.Task | None = None
        self._refresh_task: asyncio.Task | None = None
        self._channels: dict[str, str] = {}
        self._stopped = False
        # Guards _stopped/_rtm between stop() and the RTM connect worker
        self._rtm_lock = threading.Lock()

    def start(self, handler: TransportHandler) -> None:
        """Schedule the connect sequence on the running loop."""
        self._handler = handler
        self._loop = asyncio.get_running_loop()
        self._task = self._loop.create_task(self._run())

    async def _run(self) -> None:
        assert self._handler is not None
        handler = self._handler
        handler.on_connecting()

        try:
            auth = await self._auth_test()
        except SlackApiError as exc:
            error = exc.response.get("error") if exc.response is not None else None
            handler.on_unable_to_start(exc, error not in FATAL_AUTH_ERRORS)
            return
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            handler.on_unable_to_start(exc, True)
            return
        except Exception as exc:
            logger.exception("Slack auth.test failed unexpectedly: {}", exc)
            handler.on_unable_to_start(exc, True)
            return

        handler.on_authenticated(
            {"id": auth.get("user_id"), "name": auth.get("user"), "bot_id": auth.get("bot_id")},
            {"id": auth.get("team_id"), "name": auth.get("team"), "url": auth.get("url")},
        )
        await self._refresh_directory_quietly()

        if self._stopped:
            return
        rtm = self._build_rtm()
        try:
            assert self._loop is not None
            await self._loop.run_in_executor(None, self._connect_rtm, rtm)
        except Exception as exc:
            logger.warning("RTM connect failed: {}", exc)
            handler.on_unable_to_start(exc, True)

    def _connect_rtm(self, rtm: RTMClient) -> None:
        # Runs in the executor; outlives a cancelled _run, so it settles close itself
        rtm.connect()
        with self._rtm_lock:
            if not self._stopped:
                self._rtm = rtm
                return
        self._close_rtm(rtm)

    @WEB_RETRY
    async def _auth_test(self) -> Any:
        return await self._web.auth_test()

    def _build_rtm(self) -> RTMClient:
        rtm = self._rtm_factory(
            token=self._token,
            on_error_listeners=[self._on_rtm_error],
            on_close_listeners=[self._on_rtm_close],
        )

        # RTMClient.on() requires plain (client, event) callables
        def on_hello(client: Any, event: dict) -> None:
            self._dispatch(self._opened)

        def on_message(client: Any, event: dict) -> None:
            if self._handler is not None:
                self._dispatch(self._handler.on_message, event)

        rtm.on("hello")(on_hello)
        rtm.on("message")(on_message)
        return rtm

    def _dispatch(self, callback: Any, *args: Any) -> None:
        loop = self._loop
        if self._stopped or loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)

    def _opened(self) -> None:
        if self._handler is None or self._stopped:
            return
        self._handler.on_connection_opened()
        # Reconnects can follow channel renames; refresh in the background
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.ensure_future(self._refresh_directory_quietly())

    def _on_rtm_error(self, error: Exception) -> None:
        logger.warning("RTM error: {}", error)

    def _on_rtm_close(self, code: int, reason: str | None = None) -> None:
        if self._handler is not None:
            self._dispatch(self._handler.on_disconnect, reason, code)

    # -- Directory -----------------------------------------------------------

    @WEB_RETRY
    async def refresh_directory(self) -> int:
        """Reload the channel/group name -> id snapshot. Returns its size."""
        names: dict[str, str] = {}
        cursor: str | None = None
        while True:
            resp = await self._web.conversations_list(
                types=_CHANNEL_TYPES,
                exclude_archived=True,
                limit=200,
                cursor=cursor,
            )
            for channel in resp.get("channels") or []:
                if channel.get("name") and channel.get("id"):
                    names[channel["name"]] = channel["id"]
            cursor = (resp.get("response_metadata") or {}).get("next_cursor") or None
            if not cursor:
                break
        self._channels = names
        logger.debug("Slack directory: {} channels", len(names))
        return len(names)

    async def _refresh_directory_quietly(self) -> None:
        try:
            await self.refresh_directory()
        except (SlackApiError, aiohttp.ClientError, asyncio.TimeoutError) as exc:
            logger.warning("Slack directory refresh failed, keeping previous snapshot: {}", exc)

    def channel_id_by_name(self, name: str) -> str | None:
        return self._channels.get(name)

    # -- Operations ----------------------------------------------------------

    async def send(self, text: str, channel_id: str) -> None:
        await self._web.chat_postMessage(channel=channel_id, text=text)

    async def search(self, query: str) -> list[dict[str, Any]]:
        resp = await self._web.search_messages(query=query)
        messages = resp.get("messages") or {}
        return list(messages.get("matches") or [])

    def stop(self) -> None:
        with self._rtm_lock:
            if self._stopped:
                return
            self._stopped = True
            # None while connect is still running; _connect_rtm closes it then
            rtm, self._rtm = self._rtm, None
        for task in (self._task, self._refresh_task):
            if task is not None and not task.done():
                task.cancel()
        if rtm is not None:
            threading.Thread(
                target=self._close_rtm,
                args=(rtm,),
                name="slackrelay-rtm-close",
                daemon=True,
            ).start()

    @staticmethod
    def _close_rtm(rtm: RTMClient) -> None:
        # RTMClient.close() joins worker threads; never call it on the loop
        try:
            rtm.close()
        except Exception as exc:
            logger.warning("RTM close failed: {}", exc)
